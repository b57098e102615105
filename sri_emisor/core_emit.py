from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Tuple

from app.sri_client.clave_acceso import descomponer_clave, generar_clave_acceso
from app.sri_client.config import Ambiente, PerfilTributario
from app.sri_client.exceptions import (
    SriEntitlementError,
    SriException,
    SriSignatureError,
    SriStateError,
    SriTransportError,
    SriValidationError,
)
from app.sri_client.models import (
    Comprador,
    DocumentoFiscal,
    DocumentoModificado,
    EstadoSri,
    EstadoSuscripcion,
    ResultadoEmision,
    ResultadoSri,
    TipoDocumento,
)
from app.sri_client.soap_client import SoapClient
from app.sri_client.store import SriStore
from app.sri_client.suscripcion import (
    PLAN_PAQUETE,
    PLANES_CALENDARIO,
    PREFIJO_LICENCIA,
    PREFIJO_SUSCRIPCION,
    EntitlementCache,
    ServidorLicencias,
    ServidorSuscripcion,
)
from app.sri_client.xml_generator import generar_xml
from app.sri_client.xml_signer import NodeXadesSigner, SigningPort

from sri_emisor.guards import assert_clave_acceso, assert_comprobante_firmado

logger = logging.getLogger(__name__)

# Un documento no se emite dos veces a la vez en el proceso; el secuencial lo serializa la base.
_DOC_LOCKS: Dict[Tuple[str, int], threading.Lock] = {}
_DOC_LOCKS_GUARD = threading.Lock()

MSG_AUTORIZADA = {
    TipoDocumento.FACTURA: "Factura autorizada correctamente",
    TipoDocumento.NOTA_CREDITO: "Nota de credito autorizada correctamente",
}
MSG_YA_AUTORIZADA = {
    TipoDocumento.FACTURA: "Esta factura ya fue autorizada por el SRI",
    TipoDocumento.NOTA_CREDITO: "Esta nota de credito ya fue autorizada por el SRI",
}


def _doc_lock(tipo: TipoDocumento, doc_id: int) -> threading.Lock:
    with _DOC_LOCKS_GUARD:
        return _DOC_LOCKS.setdefault((tipo.value, doc_id), threading.Lock())


def _parse_fecha_db(valor: Optional[str], campo: str) -> date:
    """'yyyy-mm-dd' o 'yyyy-mm-dd HH:MM:SS' tal como las guarda el POS."""
    texto = (valor or "").strip()
    try:
        return datetime.strptime(texto[:10], "%Y-%m-%d").date()
    except ValueError as e:
        raise SriValidationError(f"Fecha inválida en {campo}: {texto!r}") from e


def _comprador(row: Dict[str, Any]) -> Comprador:
    return Comprador(
        tipo_identificacion=row.get("tipo_identificacion") or "CONSUMIDOR_FINAL",
        identificacion=row.get("identificacion"),
        nombre=row.get("cliente_nombre") or "CONSUMIDOR FINAL",
        direccion=row.get("cliente_direccion"),
        email=row.get("cliente_email"),
    )


class EmisorSri:
    """
    Máquina de estados de emisión de comprobantes.

    NO_APLICA -> PENDIENTE -> AUTORIZADA | RECHAZADA; PENDIENTE se reanuda
    reenviando exactamente el mismo XML firmado con la misma clave.
    """

    def __init__(
        self,
        store: SriStore,
        firmador: Optional[SigningPort] = None,
        gateway_factory: Optional[Callable[[Ambiente], SoapClient]] = None,
        suscripcion: Optional[ServidorSuscripcion] = None,
        licencias: Optional[ServidorLicencias] = None,
        hoy: Callable[[], date] = date.today,
    ):
        self.store = store
        self.firmador = firmador or NodeXadesSigner()
        self._gateway_factory = gateway_factory or (lambda ambiente: SoapClient(ambiente))
        self._suscripcion = suscripcion
        self._licencias = licencias
        self._hoy = hoy

    @property
    def suscripcion(self) -> ServidorSuscripcion:
        if self._suscripcion is None:
            self._suscripcion = ServidorSuscripcion()
        return self._suscripcion

    @property
    def licencias(self) -> ServidorLicencias:
        if self._licencias is None:
            self._licencias = ServidorLicencias()
        return self._licencias

    # --- operaciones públicas ---------------------------------------------------

    def emitir_factura(self, venta_id: int) -> ResultadoEmision:
        with _doc_lock(TipoDocumento.FACTURA, venta_id):
            return self._emitir(TipoDocumento.FACTURA, venta_id)

    def emitir_nota_credito(self, nc_id: int) -> ResultadoEmision:
        with _doc_lock(TipoDocumento.NOTA_CREDITO, nc_id):
            return self._emitir(TipoDocumento.NOTA_CREDITO, nc_id)

    def cache_suscripcion(self) -> EntitlementCache:
        return EntitlementCache(
            self.store, PREFIJO_SUSCRIPCION, lambda: self.suscripcion.validar(), hoy=self._hoy
        )

    def cache_licencia(self) -> EntitlementCache:
        return EntitlementCache(
            self.store,
            PREFIJO_LICENCIA,
            lambda: self.licencias.validar_licencia(),
            hoy=self._hoy,
            validar_cache=lambda snap: self.licencias.validar_cache(snap),
        )

    def verificar_suscripcion(self) -> EstadoSuscripcion:
        return self.cache_suscripcion().check()

    def verificar_licencia(self) -> EstadoSuscripcion:
        return self.cache_licencia().check()

    def consultar_estado(self) -> Dict[str, Any]:
        """Estado del módulo SRI para la pantalla de configuración."""
        cfg = self.store.all_config()
        ambiente = Ambiente.desde_config(cfg.get("sri_ambiente"))
        cert = self.store.obtener_certificado()
        gratis = self.store.get_int("sri_facturas_gratis", 10)
        usadas = self.store.get_int("sri_facturas_usadas", 0)
        cache = self.cache_suscripcion().leer_cache()
        return {
            "ambiente": ambiente.nombre_config,
            "certificado_cargado": cert is not None,
            "certificado_nombre": cert["nombre"] if cert is not None else None,
            "certificado_expira": cert["fecha_expiracion"] if cert is not None else None,
            "facturas_gratis": gratis,
            "facturas_usadas": usadas,
            "facturas_prueba_restantes": max(0, gratis - usadas),
            "secuencial_factura": self.store.leer_secuencial(TipoDocumento.FACTURA, ambiente),
            "secuencial_nota_credito": self.store.leer_secuencial(TipoDocumento.NOTA_CREDITO, ambiente),
            "suscripcion": cache.to_dict() if cache is not None else None,
        }

    def cambiar_ambiente(self, valor: str) -> Ambiente:
        raw = (valor or "").strip().lower()
        if raw not in ("pruebas", "produccion"):
            raise SriValidationError(f"Ambiente inválido: {valor!r}. Usar 'pruebas' o 'produccion'.")
        ambiente = Ambiente.desde_config(raw)
        self.store.set_config("sri_ambiente", ambiente.nombre_config)
        logger.info(f"Ambiente SRI cambiado a {ambiente.nombre_config}")
        return ambiente

    # --- flujo interno ------------------------------------------------------------

    def _cargar(self, tipo: TipoDocumento, doc_id: int) -> Dict[str, Any]:
        if tipo is TipoDocumento.FACTURA:
            row = self.store.obtener_venta(doc_id)
            if row is None:
                raise SriValidationError(f"Venta {doc_id} no encontrada")
            if (row.get("tipo_documento") or "").upper() != "FACTURA":
                raise SriValidationError("Solo se pueden emitir facturas electronicas")
            return row
        row = self.store.obtener_nota_credito(doc_id)
        if row is None:
            raise SriValidationError(f"Nota de crédito {doc_id} no encontrada")
        return row

    def _emitir(self, tipo: TipoDocumento, doc_id: int) -> ResultadoEmision:
        row = self._cargar(tipo, doc_id)
        estado = EstadoSri.desde_db(row.get("estado_sri"))
        if estado is EstadoSri.AUTORIZADA:
            raise SriStateError(MSG_YA_AUTORIZADA[tipo])

        clave = (row.get("clave_acceso") or "").strip()
        xml_firmado = row.get("xml_firmado") or ""
        if estado is EstadoSri.PENDIENTE:
            if clave and xml_firmado:
                return self._reanudar(tipo, doc_id, clave, xml_firmado.encode("utf-8"))
            if clave or xml_firmado:
                raise SriStateError(
                    f"Documento {doc_id} PENDIENTE con datos incompletos "
                    f"(clave={'si' if clave else 'no'}, xml={'si' if xml_firmado else 'no'}). "
                    "Revise el registro antes de reemitir."
                )
        return self._primera_emision(tipo, doc_id, row)

    def _primera_emision(self, tipo: TipoDocumento, doc_id: int, row: Dict[str, Any]) -> ResultadoEmision:
        if tipo is TipoDocumento.FACTURA:
            self._verificar_acceso()

        perfil = PerfilTributario.desde_config(self.store.all_config())
        cert = self.store.obtener_certificado()
        if cert is None:
            raise SriSignatureError("No hay certificado digital cargado. Cargue un P12 primero.")

        ambiente = perfil.ambiente
        secuencial = self.store.reservar_secuencial(tipo, doc_id, ambiente)
        try:
            doc = self._documento(tipo, doc_id, row, perfil, secuencial)
            logger.info(f"Emitiendo {tipo.root_tag} {doc.numero_documento} ({ambiente.nombre_config})")

            xml = generar_xml(doc)
            firmado = self.firmador.firmar(xml, bytes(cert["p12_data"]), cert["password"], tipo.root_tag)
            assert_comprobante_firmado(firmado, root_tag=tipo.root_tag, clave_acceso=doc.clave_acceso)
        except Exception:
            # nada salió hacia el SRI con este número
            self.store.liberar_secuencial(tipo, doc_id, ambiente, secuencial)
            raise

        gateway = self._gateway_factory(ambiente)
        try:
            resultado = gateway.enviar_comprobante(firmado, doc.clave_acceso)
        except SriTransportError as e:
            # firmado y con número: queda PENDIENTE para reanudar
            self.store.registrar_resultado(
                tipo,
                doc_id,
                estado=EstadoSri.PENDIENTE,
                clave_acceso=doc.clave_acceso,
                xml_firmado=firmado.decode("utf-8"),
                numero_documento=doc.numero_documento,
            )
            raise SriTransportError(
                f"{e.message}. El comprobante {doc.numero_documento} quedo PENDIENTE; reintente la emision."
            ) from e

        salida = self._finalizar(tipo, doc_id, resultado, firmado, doc.numero_documento)
        if not resultado.exito and not resultado.en_proceso:
            self.store.liberar_secuencial(tipo, doc_id, ambiente, secuencial)
        return salida

    def _reanudar(self, tipo: TipoDocumento, doc_id: int, clave: str, firmado: bytes) -> ResultadoEmision:
        """PENDIENTE: nunca se regenera clave ni XML."""
        assert_clave_acceso(clave, context=f"doc_id={doc_id}")
        campos = descomponer_clave(clave)
        ambiente = Ambiente(campos["ambiente"])
        numero = f"{campos['estab']}-{campos['pto_emi']}-{campos['secuencial']}"
        gateway = self._gateway_factory(ambiente)
        logger.info(f"Reanudando {tipo.root_tag} {numero} con clave {clave}")

        try:
            previo = gateway.consultar_autorizacion(clave)
        except SriTransportError as e:
            logger.warning(f"Consulta previa de {clave} falló ({e.message}); se reenvía")
            previo = None
        if previo is not None and previo.exito:
            return self._finalizar(tipo, doc_id, previo, firmado, numero)

        resultado = gateway.enviar_comprobante(firmado, clave)
        return self._finalizar(tipo, doc_id, resultado, firmado, numero)

    def _finalizar(
        self,
        tipo: TipoDocumento,
        doc_id: int,
        resultado: ResultadoSri,
        firmado: bytes,
        numero: str,
    ) -> ResultadoEmision:
        es_factura = tipo is TipoDocumento.FACTURA
        codigo = None

        if resultado.exito:
            estado_sri = EstadoSri.AUTORIZADA.value
            self.store.registrar_resultado(
                tipo,
                doc_id,
                estado=EstadoSri.AUTORIZADA,
                clave_acceso=resultado.clave_acceso,
                xml_firmado=firmado.decode("utf-8"),
                numero_autorizacion=resultado.numero_autorizacion,
                fecha_autorizacion=resultado.fecha_autorizacion,
                numero_documento=numero,
                contar_uso=es_factura,
            )
            mensaje = MSG_AUTORIZADA[tipo]
            logger.info(f"{tipo.root_tag} {numero} AUTORIZADA ({resultado.numero_autorizacion})")
            if es_factura:
                self._consumir_paquete(resultado.clave_acceso)
        elif resultado.en_proceso:
            # la venta queda PENDIENTE; al llamador se le informa EN_PROCESO
            estado_sri = resultado.estado
            self.store.registrar_resultado(
                tipo,
                doc_id,
                estado=EstadoSri.PENDIENTE,
                clave_acceso=resultado.clave_acceso,
                xml_firmado=firmado.decode("utf-8"),
                numero_documento=numero,
            )
            mensaje = resultado.mensaje or "Comprobante en procesamiento"
            logger.warning(f"{tipo.root_tag} {numero} EN_PROCESO")
        else:
            estado_sri = EstadoSri.RECHAZADA.value
            codigo = resultado.codigo or resultado.estado
            self.store.registrar_resultado(
                tipo,
                doc_id,
                estado=EstadoSri.RECHAZADA,
                clave_acceso=resultado.clave_acceso,
                xml_firmado=None,
            )
            mensaje = resultado.mensaje or "Comprobante rechazado por el SRI"
            logger.warning(f"{tipo.root_tag} {numero} RECHAZADA ({codigo}): {mensaje}")

        return ResultadoEmision(
            exito=resultado.exito,
            estado_sri=estado_sri,
            clave_acceso=resultado.clave_acceso,
            mensaje=mensaje,
            numero_autorizacion=resultado.numero_autorizacion,
            fecha_autorizacion=resultado.fecha_autorizacion,
            numero_documento=numero,
            codigo=codigo,
        )

    def _documento(
        self,
        tipo: TipoDocumento,
        doc_id: int,
        row: Dict[str, Any],
        perfil: PerfilTributario,
        secuencial: int,
    ) -> DocumentoFiscal:
        if tipo is TipoDocumento.FACTURA:
            lineas = self.store.lineas_venta(doc_id)
            modificado = None
        else:
            lineas = self.store.lineas_nota_credito(doc_id)
            modificado = DocumentoModificado(
                numero=row.get("num_doc_modificado") or "",
                fecha_emision=_parse_fecha_db(row.get("fecha_doc_modificado"), "venta original"),
                motivo=row.get("motivo") or "",
            )
        fecha = _parse_fecha_db(row.get("fecha"), f"documento {doc_id}")
        clave = generar_clave_acceso(
            fecha_emision=fecha,
            cod_doc=tipo.value,
            ruc=perfil.ruc,
            ambiente=perfil.ambiente.value,
            establecimiento=perfil.establecimiento,
            punto_emision=perfil.punto_emision,
            secuencial=f"{secuencial:09d}",
        )
        return DocumentoFiscal(
            tipo=tipo,
            perfil=perfil,
            secuencial=secuencial,
            fecha_emision=fecha,
            comprador=_comprador(row),
            lineas=lineas,
            clave_acceso=clave,
            forma_pago=row.get("forma_pago") or "EFECTIVO",
            modificado=modificado,
        )

    def _verificar_acceso(self) -> None:
        """Prueba gratuita primero; agotada, se exige suscripción vigente."""
        gratis = self.store.get_int("sri_facturas_gratis", 10)
        usadas = self.store.get_int("sri_facturas_usadas", 0)
        if usadas < gratis:
            return

        cache = self.cache_suscripcion()
        snap = cache.check()
        if snap.autorizado:
            return

        plan = (snap.plan or "").strip().lower()
        dias = cache.dias_sin_validar(snap)
        if snap.offline and (dias is None or dias > cache.grace_days):
            mensaje = (
                "No se puede verificar su suscripcion SRI. Conectese a internet para validar su plan."
            )
        elif not plan:
            mensaje = (
                f"Su prueba gratuita ha terminado ({gratis} facturas). "
                "Adquiera un plan para seguir emitiendo facturas electronicas."
            )
        elif plan in PLANES_CALENDARIO:
            mensaje = f"Su suscripcion SRI ({plan}) expiro el {snap.fecha_hasta or '-'}. Renueve su plan."
        elif plan == PLAN_PAQUETE:
            mensaje = "Ha agotado sus documentos del paquete. Adquiera un nuevo paquete."
        else:
            mensaje = snap.mensaje or "Sin suscripcion activa"
        raise SriEntitlementError(mensaje, code="SUSCRIPCION")

    def _consumir_paquete(self, clave: str) -> None:
        """Descuento best-effort; un fallo nunca invalida el comprobante ya autorizado."""
        plan = (self.store.get_config(f"{PREFIJO_SUSCRIPCION}plan") or "").strip().lower()
        if plan != PLAN_PAQUETE:
            return
        try:
            respuesta = self.suscripcion.consumir(clave)
        except SriException as e:
            logger.warning(f"No se pudo descontar el documento del paquete: {e.message}")
            return
        if respuesta.get("ok") and respuesta.get("docs_restantes") is not None:
            self.store.set_config(f"{PREFIJO_SUSCRIPCION}docs_restantes", str(respuesta["docs_restantes"]))
            logger.info(f"Paquete: quedan {respuesta['docs_restantes']} documentos")
