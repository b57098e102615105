from __future__ import annotations

import copy
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from app.sri_client.clave_acceso import generar_clave_acceso
from app.sri_client.config import Ambiente, PerfilTributario
from app.sri_client.exceptions import SriTransportError
from app.sri_client.models import (
    Comprador,
    DocumentoFiscal,
    DocumentoModificado,
    EN_PROCESO,
    EstadoSuscripcion,
    LineaDetalle,
    ResultadoSri,
    TipoDocumento,
)
from app.sri_client.store import SriStore

RUC = "1790012345001"

CONFIG_EMISOR = {
    "ruc": RUC,
    "nombre_negocio": "Tienda Ejemplo S.A.",
    "nombre_comercial": "Tienda Ejemplo",
    "direccion": "Av. Amazonas N34-120",
    "establecimiento": "001",
    "punto_emision": "001",
    "regimen": "GENERAL",
    "obligado_contabilidad": "NO",
    "sri_ambiente": "pruebas",
}


def perfil(**overrides) -> PerfilTributario:
    cfg = dict(CONFIG_EMISOR)
    cfg.update(overrides)
    return PerfilTributario.desde_config(cfg)


def lineas_ejemplo() -> List[LineaDetalle]:
    return [
        LineaDetalle("P001", "Cuaderno \u201cuniversitario\u201d", Decimal("3"), Decimal("1.333333"), Decimal("0"), Decimal("15")),
        LineaDetalle("P002", "Pan", Decimal("1"), Decimal("10"), Decimal("1"), Decimal("0")),
        LineaDetalle("P003", "Esfero", Decimal("2"), Decimal("2.505"), Decimal("0"), Decimal("15")),
    ]


def documento(
    tipo: TipoDocumento = TipoDocumento.FACTURA,
    lineas: Optional[List[LineaDetalle]] = None,
    comprador: Optional[Comprador] = None,
    **perfil_overrides,
) -> DocumentoFiscal:
    p = perfil(**perfil_overrides)
    fecha = date(2026, 10, 19)
    clave = generar_clave_acceso(
        fecha, tipo.value, p.ruc, p.ambiente.value, p.establecimiento, p.punto_emision, "000000001",
        codigo_numerico=12345678,
    )
    modificado = None
    if tipo is TipoDocumento.NOTA_CREDITO:
        modificado = DocumentoModificado("001-001-000000005", date(2026, 10, 1), "Devolución parcial")
    return DocumentoFiscal(
        tipo=tipo,
        perfil=p,
        secuencial=1,
        fecha_emision=fecha,
        comprador=comprador or Comprador("CEDULA", "1712345678", "Juan Pérez", "Quito", "juan@example.com"),
        lineas=lineas if lineas is not None else lineas_ejemplo(),
        clave_acceso=clave,
        modificado=modificado,
    )


def crear_store(tmp_path: Path, **config) -> SriStore:
    store = SriStore(tmp_path / "sri.db")
    store.init_db()
    for key, value in {**CONFIG_EMISOR, **config}.items():
        store.set_config(key, value)
    with store.connect() as con:
        con.execute(
            "INSERT INTO clientes(id, tipo_identificacion, identificacion, nombre, direccion, email) "
            "VALUES (1, 'CEDULA', '1712345678', 'Juan Pérez', 'Quito', 'juan@example.com')"
        )
        con.execute("INSERT INTO productos(id, codigo, nombre) VALUES (1, 'P001', 'Cuaderno')")
        con.execute("INSERT INTO productos(id, codigo, nombre) VALUES (2, 'P002', 'Pan')")
        con.commit()
    return store


def crear_venta(store: SriStore, venta_id: int = 1, tipo_documento: str = "FACTURA", **cols) -> int:
    with store.connect() as con:
        con.execute(
            "INSERT INTO ventas(id, numero, cliente_id, fecha, tipo_documento) VALUES (?, ?, 1, ?, ?)",
            (venta_id, f"V-{venta_id:05d}", "2026-10-19 10:30:00", tipo_documento),
        )
        con.execute(
            "INSERT INTO venta_detalles(venta_id, producto_id, cantidad, precio_unitario, descuento, iva_porcentaje) "
            "VALUES (?, 1, 2, 5.5, 0, 15)",
            (venta_id,),
        )
        con.execute(
            "INSERT INTO venta_detalles(venta_id, producto_id, cantidad, precio_unitario, descuento, iva_porcentaje) "
            "VALUES (?, 2, 1, 1.25, 0, 0)",
            (venta_id,),
        )
        for col, value in cols.items():
            con.execute(f"UPDATE ventas SET {col} = ? WHERE id = ?", (value, venta_id))
        con.commit()
    return venta_id


def crear_nota_credito(store: SriStore, venta_id: int, nc_id: int = 1) -> int:
    with store.connect() as con:
        con.execute(
            "INSERT INTO notas_credito(id, numero, venta_id, motivo, fecha) VALUES (?, ?, ?, ?, ?)",
            (nc_id, f"NC-{nc_id:05d}", venta_id, "Devolución de producto", "2026-10-20"),
        )
        con.execute(
            "INSERT INTO nota_credito_detalles(nota_credito_id, producto_id, cantidad, precio_unitario, descuento, iva_porcentaje) "
            "VALUES (?, 1, 1, 5.5, 0, 15)",
            (nc_id,),
        )
        con.commit()
    return nc_id


def cargar_certificado_falso(store: SriStore) -> None:
    store.guardar_certificado(b"p12-falso", "secreto", "CN=EMISOR PRUEBA", "2030-01-01")


def autorizado(clave: str) -> ResultadoSri:
    return ResultadoSri(
        exito=True,
        estado="AUTORIZADO",
        clave_acceso=clave,
        numero_autorizacion=clave,
        fecha_autorizacion="2026-10-19T10:31:00-05:00",
    )


def en_proceso(clave: str) -> ResultadoSri:
    return ResultadoSri(exito=False, estado=EN_PROCESO, clave_acceso=clave, mensaje="en proceso")


def rechazado(clave: str) -> ResultadoSri:
    return ResultadoSri(
        exito=False,
        estado="DEVUELTA",
        clave_acceso=clave,
        mensaje="Error 35 - ARCHIVO NO CUMPLE ESTRUCTURA XML",
        codigo="35",
    )


class FakeGateway:
    """Gateway con respuestas programadas: cada entrada es f(clave) -> ResultadoSri, o una excepción."""

    def __init__(self, envios=None, consultas=None):
        self.envios = list(envios or [])
        self.consultas = list(consultas or [])
        self.enviados = []
        self.consultados = []
        self.ambientes = []

    def factory(self, ambiente: Ambiente) -> "FakeGateway":
        self.ambientes.append(ambiente)
        return self

    @staticmethod
    def _next(cola, clave):
        item = cola.pop(0)
        if isinstance(item, Exception):
            raise item
        return item(clave)

    def enviar_comprobante(self, xml_firmado: bytes, clave_acceso: str) -> ResultadoSri:
        self.enviados.append((xml_firmado, clave_acceso))
        return self._next(self.envios, clave_acceso)

    def consultar_autorizacion(self, clave_acceso: str) -> ResultadoSri:
        self.consultados.append(clave_acceso)
        if not self.consultas:
            return en_proceso(clave_acceso)
        return self._next(self.consultas, clave_acceso)


class FakeServidor:
    """Servidor de suscripciones en memoria"""

    def __init__(self, snap: Optional[EstadoSuscripcion] = None, offline: bool = False, docs_restantes: int = 4):
        self.snap = snap
        self.offline = offline
        self.docs_restantes = docs_restantes
        self.consumidos = []

    def validar(self) -> EstadoSuscripcion:
        if self.offline or self.snap is None:
            raise SriTransportError("sin red")
        return copy.deepcopy(self.snap)

    def consumir(self, clave_acceso: str):
        self.consumidos.append(clave_acceso)
        return {"ok": True, "docs_restantes": self.docs_restantes}
