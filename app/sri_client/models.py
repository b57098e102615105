"""
Modelos de datos para SRI
"""
from dataclasses import dataclass, field, asdict
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List

from .config import Ambiente, PerfilTributario

EN_PROCESO = "EN_PROCESO"
AUTORIZADO = "AUTORIZADO"
CONSUMIDOR_FINAL_ID = "9999999999999"


class TipoDocumento(Enum):
    """Código SRI del comprobante"""

    FACTURA = "01"
    NOTA_CREDITO = "04"

    @property
    def root_tag(self) -> str:
        return "factura" if self is TipoDocumento.FACTURA else "notaCredito"

    @property
    def version(self) -> str:
        return "2.0.0" if self is TipoDocumento.FACTURA else "1.1.0"

    @property
    def clave_secuencial(self) -> str:
        return "secuencial_factura" if self is TipoDocumento.FACTURA else "secuencial_nota_credito"

    def config_secuencial(self, ambiente: Ambiente) -> str:
        """Clave de config del contador (separado para pruebas y producción)."""
        if ambiente is Ambiente.PRUEBAS:
            return f"{self.clave_secuencial}_pruebas"
        return self.clave_secuencial


class EstadoSri(Enum):
    """Estado persistido de la emisión de un comprobante"""

    NINGUNO = "NO_APLICA"
    PENDIENTE = "PENDIENTE"
    AUTORIZADA = "AUTORIZADA"
    RECHAZADA = "RECHAZADA"

    @classmethod
    def desde_db(cls, valor: Optional[str]) -> "EstadoSri":
        for estado in cls:
            if estado.value == (valor or "").strip().upper():
                return estado
        return cls.NINGUNO


@dataclass(frozen=True)
class LineaDetalle:
    """Línea de venta tal como la guarda el POS"""
    codigo: str
    descripcion: str
    cantidad: Decimal
    precio_unitario: Decimal
    descuento: Decimal = Decimal("0")
    iva_porcentaje: Decimal = Decimal("0")


@dataclass(frozen=True)
class Comprador:
    tipo_identificacion: str
    identificacion: Optional[str]
    nombre: str
    direccion: Optional[str] = None
    email: Optional[str] = None

    @property
    def codigo_tipo(self) -> str:
        return {"RUC": "04", "CEDULA": "05", "PASAPORTE": "06"}.get(
            (self.tipo_identificacion or "").upper(), "07"
        )

    @property
    def identificacion_sri(self) -> str:
        return (self.identificacion or "").strip() or CONSUMIDOR_FINAL_ID


@dataclass(frozen=True)
class DocumentoModificado:
    """Factura que sustenta una nota de crédito"""
    numero: str
    fecha_emision: date
    motivo: str
    cod_doc: str = "01"


@dataclass(frozen=True)
class DocumentoFiscal:
    """Proyección de una venta o nota de crédito lista para componer el XML"""
    tipo: TipoDocumento
    perfil: PerfilTributario
    secuencial: int
    fecha_emision: date
    comprador: Comprador
    lineas: List[LineaDetalle]
    clave_acceso: str
    forma_pago: str = "EFECTIVO"
    modificado: Optional[DocumentoModificado] = None

    @property
    def ambiente(self) -> Ambiente:
        return self.perfil.ambiente

    @property
    def secuencial_texto(self) -> str:
        return f"{self.secuencial:09d}"

    @property
    def numero_documento(self) -> str:
        return f"{self.perfil.establecimiento}-{self.perfil.punto_emision}-{self.secuencial_texto}"


@dataclass(frozen=True)
class DetalleCalculado:
    linea: LineaDetalle
    codigo_porcentaje: str
    tarifa: Decimal
    precio_total_sin_impuesto: Decimal
    valor_iva: Decimal


@dataclass(frozen=True)
class TotalImpuesto:
    codigo_porcentaje: str
    base_imponible: Decimal
    valor: Decimal
    codigo: str = "2"


@dataclass(frozen=True)
class Totales:
    detalles: List[DetalleCalculado]
    impuestos: List[TotalImpuesto]
    total_sin_impuestos: Decimal
    total_descuento: Decimal
    iva_total: Decimal
    importe_total: Decimal


@dataclass
class ResultadoSri:
    """Resultado del protocolo recepción + autorización"""
    exito: bool
    estado: str  # AUTORIZADO, NO AUTORIZADO, RECHAZADO, DEVUELTA, EN_PROCESO
    clave_acceso: str
    numero_autorizacion: Optional[str] = None
    fecha_autorizacion: Optional[str] = None
    mensaje: Optional[str] = None
    codigo: Optional[str] = None  # identificador del mensaje SRI en un rechazo

    @property
    def en_proceso(self) -> bool:
        return self.estado == EN_PROCESO


@dataclass
class ResultadoEmision:
    """Resultado de emitir una factura o nota de crédito"""
    exito: bool
    estado_sri: str
    clave_acceso: Optional[str]
    mensaje: str
    numero_autorizacion: Optional[str] = None
    fecha_autorizacion: Optional[str] = None
    numero_documento: Optional[str] = None
    codigo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EstadoSuscripcion:
    """Snapshot cacheado de la suscripción o licencia"""
    autorizado: bool
    plan: str = ""
    fecha_hasta: Optional[str] = None
    docs_restantes: Optional[int] = None
    es_lifetime: bool = False
    mensaje: str = ""
    ultima_validacion: Optional[str] = None
    offline: bool = False
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
