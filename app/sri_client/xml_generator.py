"""
Generador de XML para comprobantes electrónicos SRI

Factura v2.0.0 y nota de crédito v1.1.0. El XML resultante no contiene
tags auto-cerrados (<tag/>): el validador del SRI los rechaza.
"""
from __future__ import annotations

import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from lxml import etree

from .exceptions import SriValidationError
from .models import (
    DetalleCalculado,
    DocumentoFiscal,
    LineaDetalle,
    TipoDocumento,
    TotalImpuesto,
    Totales,
)

logger = logging.getLogger(__name__)

DOS = Decimal("0.01")
SEIS = Decimal("0.000001")
CERO = Decimal("0")

# codigoPorcentaje IVA -> tarifa
TARIFAS_IVA = {
    "0": Decimal("0"),
    "2": Decimal("12"),
    "3": Decimal("14"),
    "4": Decimal("15"),
    "5": Decimal("5"),
    "6": Decimal("0"),  # no objeto de impuesto
    "7": Decimal("0"),  # exento
}
TARIFA_DEFAULT = Decimal("15")

FORMAS_PAGO = {
    "EFECTIVO": "01",
    "TRANSFERENCIA": "20",
    "TARJETA": "19",
}

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WS_RE = re.compile(r"\s+")
_TRADUCCION = str.maketrans(
    {
        "\u2018": "'",
        "\u2019": "'",
        "\u201a": "'",
        "\u201b": "'",
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u201f": '"',
        "\u2013": "-",
        "\u2014": "-",
        "\u2015": "-",
        "\u2026": "...",
        "\u00a0": " ",
        "\u00ad": None,
    }
)


def tarifa_iva(codigo: str) -> Decimal:
    """Tarifa (%) para un codigoPorcentaje de IVA del SRI."""
    return TARIFAS_IVA.get(codigo, TARIFA_DEFAULT)


def codigo_porcentaje_iva(iva_porcentaje: Decimal) -> str:
    """codigoPorcentaje para el % de IVA guardado en la línea."""
    pct = Decimal(iva_porcentaje)
    if pct <= 0:
        return "0"
    for codigo in ("4", "5", "2", "3"):
        if TARIFAS_IVA[codigo] == pct:
            return codigo
    return "4"


def forma_pago_sri(forma_pos: str) -> str:
    return FORMAS_PAGO.get((forma_pos or "").strip().upper(), "01")


def normalizar_texto(texto: Optional[str]) -> str:
    """
    Normaliza texto libre para el parser del SRI: quita caracteres de
    control, pasa comillas/guiones/elipsis tipográficos a ASCII y colapsa
    espacios.
    """
    if not texto:
        return ""
    s = _CONTROL_RE.sub("", texto).translate(_TRADUCCION)
    return _WS_RE.sub(" ", s.strip())


def _money(valor: Decimal) -> Decimal:
    return Decimal(valor).quantize(DOS, rounding=ROUND_HALF_UP)


def _fmt2(valor: Decimal) -> str:
    return str(_money(valor))


def _fmt6(valor: Decimal) -> str:
    return str(Decimal(valor).quantize(SEIS, rounding=ROUND_HALF_UP))


def calcular_totales(lineas: Iterable[LineaDetalle]) -> Totales:
    """
    Calcula base e IVA por línea y los agrupa por codigoPorcentaje.

    Los totales del documento son la suma de los valores ya redondeados
    de cada línea, así el SRI siempre puede re-sumarlos.
    """
    detalles: List[DetalleCalculado] = []
    bases: Dict[str, Decimal] = {}
    valores: Dict[str, Decimal] = {}
    total_descuento = CERO

    for linea in lineas:
        codigo = codigo_porcentaje_iva(linea.iva_porcentaje)
        tarifa = tarifa_iva(codigo)
        descuento = _money(linea.descuento)
        base = _money(Decimal(linea.cantidad) * Decimal(linea.precio_unitario) - descuento)
        valor = _money(base * tarifa / Decimal("100"))
        detalles.append(
            DetalleCalculado(
                linea=linea,
                codigo_porcentaje=codigo,
                tarifa=tarifa,
                precio_total_sin_impuesto=base,
                valor_iva=valor,
            )
        )
        bases[codigo] = bases.get(codigo, CERO) + base
        valores[codigo] = valores.get(codigo, CERO) + valor
        total_descuento += descuento

    impuestos = [
        TotalImpuesto(codigo_porcentaje=codigo, base_imponible=bases[codigo], valor=valores[codigo])
        for codigo in sorted(bases)
    ]
    total_sin_impuestos = sum(bases.values(), CERO)
    iva_total = sum(valores.values(), CERO)
    return Totales(
        detalles=detalles,
        impuestos=impuestos,
        total_sin_impuestos=total_sin_impuestos,
        total_descuento=total_descuento,
        iva_total=iva_total,
        importe_total=total_sin_impuestos + iva_total,
    )


def _tag(parent: etree._Element, name: str, value: Optional[str]) -> etree._Element:
    el = etree.SubElement(parent, name)
    # text "" se serializa como <x></x>, nunca <x/>
    el.text = value or ""
    return el


def _info_tributaria(root: etree._Element, doc: DocumentoFiscal) -> None:
    perfil = doc.perfil
    it = etree.SubElement(root, "infoTributaria")
    _tag(it, "ambiente", doc.ambiente.value)
    _tag(it, "tipoEmision", "1")
    _tag(it, "razonSocial", normalizar_texto(perfil.razon_social))
    _tag(it, "nombreComercial", normalizar_texto(perfil.nombre_comercial))
    _tag(it, "ruc", perfil.ruc)
    _tag(it, "claveAcceso", doc.clave_acceso)
    _tag(it, "codDoc", doc.tipo.value)
    _tag(it, "estab", perfil.establecimiento)
    _tag(it, "ptoEmi", perfil.punto_emision)
    _tag(it, "secuencial", doc.secuencial_texto)
    _tag(it, "dirMatriz", normalizar_texto(perfil.direccion_matriz))
    if perfil.contribuyente_rimpe:
        _tag(it, "contribuyenteRimpe", perfil.contribuyente_rimpe)


def _total_con_impuestos(parent: etree._Element, totales: Totales) -> None:
    tci = etree.SubElement(parent, "totalConImpuestos")
    for imp in totales.impuestos:
        ti = etree.SubElement(tci, "totalImpuesto")
        _tag(ti, "codigo", imp.codigo)
        _tag(ti, "codigoPorcentaje", imp.codigo_porcentaje)
        _tag(ti, "baseImponible", _fmt2(imp.base_imponible))
        _tag(ti, "valor", _fmt2(imp.valor))


def _detalles(root: etree._Element, totales: Totales, codigo_tag: str) -> None:
    dets = etree.SubElement(root, "detalles")
    for det in totales.detalles:
        d = etree.SubElement(dets, "detalle")
        _tag(d, codigo_tag, normalizar_texto(det.linea.codigo) or "SIN-COD")
        _tag(d, "descripcion", normalizar_texto(det.linea.descripcion))
        _tag(d, "cantidad", _fmt6(det.linea.cantidad))
        _tag(d, "precioUnitario", _fmt6(det.linea.precio_unitario))
        _tag(d, "descuento", _fmt2(det.linea.descuento))
        _tag(d, "precioTotalSinImpuesto", _fmt2(det.precio_total_sin_impuesto))
        imps = etree.SubElement(d, "impuestos")
        imp = etree.SubElement(imps, "impuesto")
        _tag(imp, "codigo", "2")
        _tag(imp, "codigoPorcentaje", det.codigo_porcentaje)
        _tag(imp, "tarifa", _fmt2(det.tarifa))
        _tag(imp, "baseImponible", _fmt2(det.precio_total_sin_impuesto))
        _tag(imp, "valor", _fmt2(det.valor_iva))


def _info_adicional(root: etree._Element, doc: DocumentoFiscal) -> None:
    campos = []
    email = normalizar_texto(doc.comprador.email)
    if email:
        campos.append(("email", email))
    direccion = normalizar_texto(doc.comprador.direccion)
    if direccion:
        campos.append(("direccion", direccion))
    if not campos:
        return
    ia = etree.SubElement(root, "infoAdicional")
    for nombre, valor in campos:
        campo = _tag(ia, "campoAdicional", valor)
        campo.set("nombre", nombre)


def _info_factura(root: etree._Element, doc: DocumentoFiscal, totales: Totales) -> None:
    perfil = doc.perfil
    comprador = doc.comprador
    inf = etree.SubElement(root, "infoFactura")
    _tag(inf, "fechaEmision", doc.fecha_emision.strftime("%d/%m/%Y"))
    _tag(inf, "dirEstablecimiento", normalizar_texto(perfil.direccion_establecimiento))
    _tag(inf, "obligadoContabilidad", perfil.obligado_contabilidad)
    _tag(inf, "tipoIdentificacionComprador", comprador.codigo_tipo)
    _tag(inf, "razonSocialComprador", normalizar_texto(comprador.nombre) or "CONSUMIDOR FINAL")
    _tag(inf, "identificacionComprador", comprador.identificacion_sri)
    direccion = normalizar_texto(comprador.direccion)
    if direccion:
        _tag(inf, "direccionComprador", direccion)
    _tag(inf, "totalSinImpuestos", _fmt2(totales.total_sin_impuestos))
    _tag(inf, "totalDescuento", _fmt2(totales.total_descuento))
    _total_con_impuestos(inf, totales)
    _tag(inf, "propina", "0.00")
    _tag(inf, "importeTotal", _fmt2(totales.importe_total))
    _tag(inf, "moneda", "DOLAR")
    pagos = etree.SubElement(inf, "pagos")
    pago = etree.SubElement(pagos, "pago")
    _tag(pago, "formaPago", forma_pago_sri(doc.forma_pago))
    _tag(pago, "total", _fmt2(totales.importe_total))


def _info_nota_credito(root: etree._Element, doc: DocumentoFiscal, totales: Totales) -> None:
    if doc.modificado is None:
        raise SriValidationError("Nota de crédito sin documento modificado")
    perfil = doc.perfil
    comprador = doc.comprador
    inf = etree.SubElement(root, "infoNotaCredito")
    _tag(inf, "fechaEmision", doc.fecha_emision.strftime("%d/%m/%Y"))
    _tag(inf, "dirEstablecimiento", normalizar_texto(perfil.direccion_establecimiento))
    _tag(inf, "tipoIdentificacionComprador", comprador.codigo_tipo)
    _tag(inf, "razonSocialComprador", normalizar_texto(comprador.nombre) or "CONSUMIDOR FINAL")
    _tag(inf, "identificacionComprador", comprador.identificacion_sri)
    _tag(inf, "obligadoContabilidad", perfil.obligado_contabilidad)
    _tag(inf, "codDocModificado", doc.modificado.cod_doc)
    _tag(inf, "numDocModificado", doc.modificado.numero)
    _tag(inf, "fechaEmisionDocSustento", doc.modificado.fecha_emision.strftime("%d/%m/%Y"))
    _tag(inf, "totalSinImpuestos", _fmt2(totales.total_sin_impuestos))
    _tag(inf, "valorModificacion", _fmt2(totales.importe_total))
    _tag(inf, "moneda", "DOLAR")
    _total_con_impuestos(inf, totales)
    _tag(inf, "motivo", normalizar_texto(doc.modificado.motivo) or "DEVOLUCION")


def build_comprobante(doc: DocumentoFiscal, totales: Optional[Totales] = None) -> etree._Element:
    """Arma el árbol lxml del comprobante (sin firma)."""
    totales = totales or calcular_totales(doc.lineas)
    root = etree.Element(doc.tipo.root_tag, id="comprobante", version=doc.tipo.version)
    _info_tributaria(root, doc)
    if doc.tipo is TipoDocumento.FACTURA:
        _info_factura(root, doc, totales)
        _detalles(root, totales, "codigoPrincipal")
    else:
        _info_nota_credito(root, doc, totales)
        _detalles(root, totales, "codigoInterno")
    _info_adicional(root, doc)
    return root


def generar_xml(doc: DocumentoFiscal, totales: Optional[Totales] = None) -> bytes:
    """
    Genera el XML UTF-8 del comprobante listo para firmar.

    Raises:
        SriValidationError: si el documento no tiene líneas o la
            serialización produjo un tag auto-cerrado
    """
    if not doc.lineas:
        raise SriValidationError(f"El comprobante {doc.numero_documento} no tiene detalles")
    root = build_comprobante(doc, totales)
    xml_bytes = etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)
    if b"/>" in xml_bytes:
        raise SriValidationError("El XML generado contiene tags auto-cerrados")
    logger.debug(f"XML {doc.tipo.root_tag} {doc.numero_documento} generado ({len(xml_bytes)} bytes)")
    return xml_bytes
