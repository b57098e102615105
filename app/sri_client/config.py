"""
Configuración para cliente SRI
"""
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .exceptions import SriConfigError

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


class Ambiente(Enum):
    """Ambiente del SRI (dígito 24 de la clave de acceso)"""

    PRUEBAS = "1"
    PRODUCCION = "2"

    @classmethod
    def desde_config(cls, valor: Optional[str]) -> "Ambiente":
        """Mapea el texto guardado en config ('pruebas'/'produccion') al enum."""
        raw = (valor or "").strip().lower()
        if raw in ("produccion", "2", "prod"):
            return cls.PRODUCCION
        return cls.PRUEBAS

    @property
    def nombre_config(self) -> str:
        return "produccion" if self is Ambiente.PRODUCCION else "pruebas"


# Servicios Web SOAP del SRI (comprobantes offline)
SOAP_SERVICES = {
    Ambiente.PRUEBAS: {
        "recepcion": "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline",
        "autorizacion": "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline",
    },
    Ambiente.PRODUCCION: {
        "recepcion": "https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline",
        "autorizacion": "https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline",
    },
}

_ENV_OVERRIDES = {
    (Ambiente.PRUEBAS, "recepcion"): "SRI_RECEPCION_URL_TEST",
    (Ambiente.PRUEBAS, "autorizacion"): "SRI_AUTORIZACION_URL_TEST",
    (Ambiente.PRODUCCION, "recepcion"): "SRI_RECEPCION_URL_PROD",
    (Ambiente.PRODUCCION, "autorizacion"): "SRI_AUTORIZACION_URL_PROD",
}


def get_soap_service_url(ambiente: Ambiente, servicio: str) -> str:
    """
    Obtiene la URL de un servicio SOAP según el ambiente

    Args:
        ambiente: Ambiente.PRUEBAS o Ambiente.PRODUCCION
        servicio: 'recepcion' o 'autorizacion'

    Returns:
        URL del endpoint (permite override por variable de entorno)
    """
    valid_keys = ["recepcion", "autorizacion"]
    if servicio not in valid_keys:
        raise ValueError(f"Servicio SOAP inválido: {servicio}. Válidos: {valid_keys}")

    override = (os.getenv(_ENV_OVERRIDES[(ambiente, servicio)]) or "").strip()
    if override:
        return override
    return SOAP_SERVICES[ambiente][servicio]


def verifica_certificado_tls(ambiente: Ambiente) -> bool:
    """Solo el ambiente de pruebas relaja la validación TLS (celcer usa certificados inválidos)."""
    return ambiente is Ambiente.PRODUCCION


def get_db_path() -> Path:
    return Path(os.getenv("SRI_DB_PATH") or "data/sri.db").expanduser()


def get_firma_script_path() -> Optional[Path]:
    """
    Ruta del script firmador XAdES-BES (no se distribuye con el paquete).

    Prioridad:
    1. SRI_FIRMA_SCRIPT
    2. CLOUGET_FIRMA_SCRIPT (alias, compatibilidad)

    None si ninguna está definida.
    """
    raw = (os.getenv("SRI_FIRMA_SCRIPT") or os.getenv("CLOUGET_FIRMA_SCRIPT") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return None


def get_node_bin() -> str:
    return (os.getenv("SRI_NODE_BIN") or "node").strip()


def get_suscripcion_url() -> str:
    """Base URL del servidor de suscripciones (sin barra final)."""
    return (os.getenv("SRI_SUSCRIPCION_URL") or "").strip().rstrip("/")


def get_suscripcion_api_key() -> str:
    return (os.getenv("SRI_SUSCRIPCION_API_KEY") or "").strip()


def get_licencias_url() -> str:
    """Base URL del servidor de licencias; por defecto el mismo de suscripciones."""
    return (os.getenv("SRI_LICENCIAS_URL") or "").strip().rstrip("/") or get_suscripcion_url()


def configure_logging(level: Optional[str] = None) -> None:
    """Configura logging raíz; SRI_LOG_FILE agrega un log de depuración en disco."""
    level_name = (level or os.getenv("SRI_LOG_LEVEL") or "INFO").upper()
    handlers = [logging.StreamHandler()]
    log_file = (os.getenv("SRI_LOG_FILE") or "").strip()
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


REGIMENES = {
    "GENERAL": None,
    "RIMPE_EMPRENDEDOR": "CONTRIBUYENTE RÉGIMEN RIMPE",
    "RIMPE_POPULAR": "CONTRIBUYENTE NEGOCIO POPULAR - RÉGIMEN RIMPE",
}


@dataclass(frozen=True)
class PerfilTributario:
    """Datos del emisor validados (RUC, establecimiento, punto de emisión, régimen)"""

    ruc: str
    razon_social: str
    nombre_comercial: str
    direccion_matriz: str
    direccion_establecimiento: str
    establecimiento: str
    punto_emision: str
    regimen: str
    obligado_contabilidad: str
    ambiente: Ambiente

    @property
    def contribuyente_rimpe(self) -> Optional[str]:
        return REGIMENES.get(self.regimen)

    @classmethod
    def desde_config(cls, cfg: Dict[str, str]) -> "PerfilTributario":
        """
        Construye el perfil desde la tabla config.

        Raises:
            SriConfigError: lista todos los campos faltantes o inválidos
        """
        def get(key: str) -> str:
            return (cfg.get(key) or "").strip()

        faltantes = []
        ruc = get("ruc")
        if not re.fullmatch(r"\d{13}", ruc):
            faltantes.append("ruc (13 dígitos)")
        nombre = get("nombre_negocio")
        if not nombre:
            faltantes.append("nombre_negocio")
        direccion = get("direccion")
        if not direccion:
            faltantes.append("direccion")
        estab = get("establecimiento")
        if not re.fullmatch(r"\d{3}", estab):
            faltantes.append("establecimiento (3 dígitos)")
        pto = get("punto_emision")
        if not re.fullmatch(r"\d{3}", pto):
            faltantes.append("punto_emision (3 dígitos)")
        regimen = (get("regimen") or "GENERAL").upper()
        if regimen not in REGIMENES:
            faltantes.append(f"regimen ({regimen!r} no reconocido)")
        obligado = (get("obligado_contabilidad") or "NO").upper()
        if obligado not in ("SI", "NO"):
            faltantes.append("obligado_contabilidad (SI/NO)")

        if faltantes:
            raise SriConfigError(faltantes)

        return cls(
            ruc=ruc,
            razon_social=nombre,
            nombre_comercial=get("nombre_comercial") or nombre,
            direccion_matriz=direccion,
            direccion_establecimiento=get("direccion_establecimiento") or direccion,
            establecimiento=estab,
            punto_emision=pto,
            regimen=regimen,
            obligado_contabilidad=obligado,
            ambiente=Ambiente.desde_config(get("sri_ambiente")),
        )
