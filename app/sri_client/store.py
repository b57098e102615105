"""
Persistencia sqlite del emisor SRI

Tablas del POS que este módulo lee (ventas, clientes, productos, notas de
crédito) y escribe (estado SRI, tabla config con contadores y caché de
suscripción, certificado). El secuencial se reserva antes de firmar en una
transacción BEGIN IMMEDIATE; cada resultado de emisión se guarda en una sola
transacción junto con el contador de uso.
"""
import logging
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .config import Ambiente, get_db_path
from .models import EstadoSri, LineaDetalle, TipoDocumento

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS clientes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tipo_identificacion TEXT NOT NULL DEFAULT 'CONSUMIDOR_FINAL',
    identificacion TEXT,
    nombre TEXT NOT NULL,
    direccion TEXT,
    email TEXT
);

CREATE TABLE IF NOT EXISTS productos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    codigo TEXT,
    nombre TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ventas (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    numero TEXT NOT NULL,
    numero_factura TEXT,
    cliente_id INTEGER REFERENCES clientes(id),
    fecha TEXT NOT NULL,
    descuento REAL NOT NULL DEFAULT 0,
    forma_pago TEXT NOT NULL DEFAULT 'EFECTIVO',
    tipo_documento TEXT NOT NULL DEFAULT 'NOTA_VENTA',
    estado_sri TEXT NOT NULL DEFAULT 'NO_APLICA',
    clave_acceso TEXT,
    xml_firmado TEXT,
    autorizacion_sri TEXT,
    fecha_autorizacion TEXT,
    secuencial_reservado INTEGER,
    ambiente_reservado TEXT
);

CREATE TABLE IF NOT EXISTS venta_detalles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    venta_id INTEGER NOT NULL REFERENCES ventas(id),
    producto_id INTEGER NOT NULL REFERENCES productos(id),
    cantidad REAL NOT NULL,
    precio_unitario REAL NOT NULL,
    descuento REAL NOT NULL DEFAULT 0,
    iva_porcentaje REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS notas_credito (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    numero TEXT NOT NULL,
    venta_id INTEGER NOT NULL REFERENCES ventas(id),
    cliente_id INTEGER REFERENCES clientes(id),
    motivo TEXT NOT NULL,
    fecha TEXT NOT NULL,
    estado_sri TEXT NOT NULL DEFAULT 'PENDIENTE',
    clave_acceso TEXT,
    xml_firmado TEXT,
    autorizacion_sri TEXT,
    fecha_autorizacion TEXT,
    numero_factura_nc TEXT,
    secuencial_reservado INTEGER,
    ambiente_reservado TEXT
);

CREATE TABLE IF NOT EXISTS nota_credito_detalles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    nota_credito_id INTEGER NOT NULL REFERENCES notas_credito(id),
    producto_id INTEGER NOT NULL REFERENCES productos(id),
    cantidad REAL NOT NULL,
    precio_unitario REAL NOT NULL,
    descuento REAL NOT NULL DEFAULT 0,
    iva_porcentaje REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sri_certificado (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    p12_data BLOB NOT NULL,
    password TEXT NOT NULL,
    nombre TEXT,
    fecha_expiracion TEXT,
    cargado_en TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

DEFAULT_CONFIG = {
    "secuencial_factura": "1",
    "secuencial_factura_pruebas": "1",
    "secuencial_nota_credito": "1",
    "secuencial_nota_credito_pruebas": "1",
    "sri_facturas_gratis": "10",
    "sri_facturas_usadas": "0",
    "sri_ambiente": "pruebas",
    "sri_suscripcion_autorizado": "0",
    "sri_suscripcion_plan": "",
    "sri_suscripcion_fecha_hasta": "",
    "sri_suscripcion_docs_restantes": "",
    "sri_suscripcion_es_lifetime": "0",
    "sri_suscripcion_mensaje": "",
    "sri_suscripcion_ultima_validacion": "",
    "licencia_autorizado": "0",
    "licencia_plan": "",
    "licencia_mensaje": "",
    "licencia_ultima_validacion": "",
    "licencia_machine_id": "",
}

# tipo -> (tabla, columna del número de documento SRI)
_TABLAS = {
    TipoDocumento.FACTURA: ("ventas", "numero_factura"),
    TipoDocumento.NOTA_CREDITO: ("notas_credito", "numero_factura_nc"),
}


def _dec(valor: Any) -> Decimal:
    return Decimal(str(valor if valor is not None else 0))


class SriStore:
    """Acceso a la base sqlite compartida con el POS"""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else get_db_path()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(str(self.db_path))
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON;")
        con.execute("PRAGMA journal_mode = WAL;")
        con.execute("PRAGMA synchronous = FULL;")
        con.execute("PRAGMA busy_timeout = 5000;")
        try:
            yield con
        finally:
            con.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as con:
            con.executescript(SCHEMA)
            # bases creadas antes de la reserva de secuenciales
            for tabla, _ in _TABLAS.values():
                columnas = {r["name"] for r in con.execute(f"PRAGMA table_info({tabla})")}
                for col, tipo_sql in (("secuencial_reservado", "INTEGER"), ("ambiente_reservado", "TEXT")):
                    if col not in columnas:
                        con.execute(f"ALTER TABLE {tabla} ADD COLUMN {col} {tipo_sql}")
            con.executemany(
                "INSERT OR IGNORE INTO config(key, value) VALUES (?, ?)", list(DEFAULT_CONFIG.items())
            )
            con.commit()
        logger.info(f"Base de datos lista: {self.db_path}")

    # --- config -------------------------------------------------------------

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.connect() as con:
            row = con.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        return row["value"]

    def set_config(self, key: str, value: str) -> None:
        with self.connect() as con:
            con.execute(
                "INSERT INTO config(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            con.commit()

    def all_config(self) -> Dict[str, str]:
        with self.connect() as con:
            rows = con.execute("SELECT key, value FROM config").fetchall()
        return {r["key"]: r["value"] or "" for r in rows}

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get_config(key, str(default)) or default)
        except ValueError:
            return default

    def leer_prefijo(self, prefijo: str) -> Dict[str, str]:
        """Claves de config con ese prefijo, devueltas sin el prefijo."""
        with self.connect() as con:
            rows = con.execute(
                "SELECT key, value FROM config WHERE substr(key, 1, ?) = ?", (len(prefijo), prefijo)
            ).fetchall()
        return {r["key"][len(prefijo):]: r["value"] or "" for r in rows}

    def guardar_prefijo(self, prefijo: str, valores: Dict[str, str]) -> None:
        with self.connect() as con:
            con.executemany(
                "INSERT INTO config(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [(f"{prefijo}{k}", v) for k, v in valores.items()],
            )
            con.commit()

    # --- certificado ----------------------------------------------------------

    def obtener_certificado(self) -> Optional[sqlite3.Row]:
        with self.connect() as con:
            return con.execute(
                "SELECT p12_data, password, nombre, fecha_expiracion FROM sri_certificado WHERE id = 1"
            ).fetchone()

    def guardar_certificado(self, p12_data: bytes, password: str, nombre: str, fecha_expiracion: str) -> None:
        with self.connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO sri_certificado(id, p12_data, password, nombre, fecha_expiracion) "
                "VALUES (1, ?, ?, ?, ?)",
                (sqlite3.Binary(p12_data), password, nombre, fecha_expiracion),
            )
            con.commit()

    # --- documentos -----------------------------------------------------------

    def obtener_venta(self, venta_id: int) -> Optional[Dict[str, Any]]:
        with self.connect() as con:
            row = con.execute(
                """
                SELECT v.*, c.tipo_identificacion, c.identificacion, c.nombre AS cliente_nombre,
                       c.direccion AS cliente_direccion, c.email AS cliente_email
                FROM ventas v LEFT JOIN clientes c ON c.id = v.cliente_id
                WHERE v.id = ?
                """,
                (venta_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    def obtener_nota_credito(self, nc_id: int) -> Optional[Dict[str, Any]]:
        """Nota de crédito con el número y la fecha de la venta que modifica."""
        with self.connect() as con:
            row = con.execute(
                """
                SELECT nc.*, COALESCE(v.numero_factura, v.numero) AS num_doc_modificado,
                       v.fecha AS fecha_doc_modificado, v.forma_pago,
                       c.tipo_identificacion, c.identificacion, c.nombre AS cliente_nombre,
                       c.direccion AS cliente_direccion, c.email AS cliente_email
                FROM notas_credito nc
                JOIN ventas v ON v.id = nc.venta_id
                LEFT JOIN clientes c ON c.id = COALESCE(nc.cliente_id, v.cliente_id)
                WHERE nc.id = ?
                """,
                (nc_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    def _lineas(self, tabla: str, fk: str, doc_id: int) -> List[LineaDetalle]:
        with self.connect() as con:
            rows = con.execute(
                f"""
                SELECT d.cantidad, d.precio_unitario, d.descuento, d.iva_porcentaje,
                       p.codigo, p.nombre
                FROM {tabla} d JOIN productos p ON p.id = d.producto_id
                WHERE d.{fk} = ? ORDER BY d.id
                """,
                (doc_id,),
            ).fetchall()
        return [
            LineaDetalle(
                codigo=r["codigo"] or "",
                descripcion=r["nombre"],
                cantidad=_dec(r["cantidad"]),
                precio_unitario=_dec(r["precio_unitario"]),
                descuento=_dec(r["descuento"]),
                iva_porcentaje=_dec(r["iva_porcentaje"]),
            )
            for r in rows
        ]

    def lineas_venta(self, venta_id: int) -> List[LineaDetalle]:
        return self._lineas("venta_detalles", "venta_id", venta_id)

    def lineas_nota_credito(self, nc_id: int) -> List[LineaDetalle]:
        return self._lineas("nota_credito_detalles", "nota_credito_id", nc_id)

    def leer_secuencial(self, tipo: TipoDocumento, ambiente: Ambiente) -> int:
        return max(1, self.get_int(tipo.config_secuencial(ambiente), 1))

    def reservar_secuencial(self, tipo: TipoDocumento, doc_id: int, ambiente: Ambiente) -> int:
        """
        Toma el siguiente secuencial para el documento en una transacción
        BEGIN IMMEDIATE, de modo que dos procesos sobre la misma base nunca
        obtienen el mismo número.

        Si el documento ya tiene un número reservado en ese ambiente (un
        rechazo previo que no pudo devolverlo), se reutiliza.
        """
        tabla, _ = _TABLAS[tipo]
        key = tipo.config_secuencial(ambiente)
        with self.connect() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                doc = con.execute(
                    f"SELECT secuencial_reservado, ambiente_reservado FROM {tabla} WHERE id = ?", (doc_id,)
                ).fetchone()
                if doc is not None and doc["secuencial_reservado"] and doc["ambiente_reservado"] == ambiente.value:
                    con.rollback()
                    logger.info(f"Secuencial {key} ya reservado para {tabla}.id={doc_id}: {doc['secuencial_reservado']}")
                    return int(doc["secuencial_reservado"])

                row = con.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
                try:
                    secuencial = max(1, int(row["value"])) if row is not None else 1
                except (TypeError, ValueError):
                    secuencial = 1
                con.execute(
                    "INSERT INTO config(key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, str(secuencial + 1)),
                )
                con.execute(
                    f"UPDATE {tabla} SET secuencial_reservado = ?, ambiente_reservado = ? WHERE id = ?",
                    (secuencial, ambiente.value, doc_id),
                )
                con.commit()
            except sqlite3.Error:
                con.rollback()
                raise
        logger.info(f"Secuencial {key} reservado para {tabla}.id={doc_id}: {secuencial}")
        return secuencial

    def liberar_secuencial(self, tipo: TipoDocumento, doc_id: int, ambiente: Ambiente, secuencial: int) -> bool:
        """
        Devuelve un secuencial que ningún comprobante llegó a usar.

        Solo retrocede el contador si nadie tomó otro número después; si no,
        la reserva queda en el documento para su próximo intento.
        """
        tabla, _ = _TABLAS[tipo]
        key = tipo.config_secuencial(ambiente)
        with self.connect() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                cur = con.execute(
                    "UPDATE config SET value = ? WHERE key = ? AND CAST(value AS INTEGER) = ?",
                    (str(secuencial), key, secuencial + 1),
                )
                liberado = cur.rowcount == 1
                if liberado:
                    con.execute(
                        f"UPDATE {tabla} SET secuencial_reservado = NULL, ambiente_reservado = NULL WHERE id = ?",
                        (doc_id,),
                    )
                con.commit()
            except sqlite3.Error:
                con.rollback()
                raise
        if liberado:
            logger.info(f"Secuencial {key} liberado: {secuencial}")
        else:
            logger.info(f"Secuencial {key}={secuencial} queda reservado para {tabla}.id={doc_id}")
        return liberado

    def registrar_resultado(
        self,
        tipo: TipoDocumento,
        doc_id: int,
        *,
        estado: EstadoSri,
        clave_acceso: Optional[str],
        xml_firmado: Optional[str],
        numero_autorizacion: Optional[str] = None,
        fecha_autorizacion: Optional[str] = None,
        numero_documento: Optional[str] = None,
        contar_uso: bool = False,
    ) -> None:
        """
        Guarda el resultado de una emisión en una sola transacción.

        Args:
            contar_uso: incrementa sri_facturas_usadas
        """
        tabla, col_numero = _TABLAS[tipo]
        with self.connect() as con:
            try:
                con.execute(
                    f"""
                    UPDATE {tabla}
                    SET estado_sri = ?, clave_acceso = ?, xml_firmado = ?,
                        autorizacion_sri = ?, fecha_autorizacion = ?,
                        {col_numero} = COALESCE(?, {col_numero})
                    WHERE id = ?
                    """,
                    (
                        estado.value,
                        clave_acceso,
                        xml_firmado,
                        numero_autorizacion,
                        fecha_autorizacion,
                        numero_documento,
                        doc_id,
                    ),
                )
                if contar_uso:
                    con.execute(
                        "INSERT INTO config(key, value) VALUES ('sri_facturas_usadas', '1') "
                        "ON CONFLICT(key) DO UPDATE SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT)"
                    )
                con.commit()
            except sqlite3.Error:
                con.rollback()
                raise
