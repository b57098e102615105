"""
Firma XAdES-BES de comprobantes SRI

La firma la produce un proceso externo (script node) que recibe el XML por
stdin y devuelve el XML firmado por stdout. Este módulo define el puerto
de firma, la implementación real y un doble de prueba.

El P12 se escribe en un archivo temporal con permisos 600 y se borra al
terminar; la contraseña nunca se loggea.
"""
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple

from cryptography.hazmat.primitives.serialization import pkcs12
from lxml import etree

from .config import get_firma_script_path, get_node_bin
from .exceptions import SriSignatureError

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
FIRMA_TIMEOUT = 60


class SigningPort(Protocol):
    """Capacidad externa de firma"""

    def firmar(self, xml: bytes, p12_data: bytes, password: str, root_tag: str) -> bytes:
        ...


@dataclass(frozen=True)
class InfoCertificado:
    sujeto: str
    emisor: str
    valido_desde: datetime
    valido_hasta: datetime

    @property
    def fecha_expiracion(self) -> str:
        return self.valido_hasta.strftime("%Y-%m-%d")

    def vencido(self, ahora: Optional[datetime] = None) -> bool:
        ahora = ahora or datetime.now(timezone.utc)
        return ahora > self.valido_hasta


def inspeccionar_p12(p12_data: bytes, password: str) -> InfoCertificado:
    """
    Abre el P12 con cryptography y devuelve sujeto y vigencia.

    Raises:
        SriSignatureError: contraseña incorrecta o P12 sin clave/certificado
    """
    if not p12_data:
        raise SriSignatureError("Certificado P12 vacío")
    password_bytes = password.encode("utf-8") if password else None
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(p12_data, password_bytes)
    except ValueError as e:
        raise SriSignatureError(f"No se pudo abrir el P12 (¿contraseña incorrecta?): {e}") from e

    if private_key is None:
        raise SriSignatureError("No se pudo extraer la clave privada del archivo P12")
    if certificate is None:
        raise SriSignatureError("No se pudo extraer el certificado del archivo P12")

    return InfoCertificado(
        sujeto=certificate.subject.rfc4514_string(),
        emisor=certificate.issuer.rfc4514_string(),
        valido_desde=certificate.not_valid_before_utc,
        valido_hasta=certificate.not_valid_after_utc,
    )


def _tiene_firma(xml_bytes: bytes) -> bool:
    try:
        root = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError:
        return False
    return bool(root.xpath("//*[local-name()='Signature']"))


class NodeXadesSigner:
    """Firma invocando `node <script> <root_tag> <p12_path> <password>`."""

    def __init__(
        self,
        script_path: Optional[Path] = None,
        node_bin: Optional[str] = None,
        timeout: int = FIRMA_TIMEOUT,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        ahora: Optional[Callable[[], datetime]] = None,
    ):
        self.script_path = Path(script_path) if script_path else get_firma_script_path()
        self.node_bin = node_bin or get_node_bin()
        self.timeout = timeout
        self._run = runner
        self._ahora = ahora or (lambda: datetime.now(timezone.utc))

    def firmar(self, xml: bytes, p12_data: bytes, password: str, root_tag: str) -> bytes:
        info = inspeccionar_p12(p12_data, password)
        if info.vencido(self._ahora()):
            raise SriSignatureError(
                f"El certificado digital expiró el {info.fecha_expiracion}. Cargue un P12 vigente."
            )
        if self.script_path is None:
            raise SriSignatureError(
                "Script firmador no configurado. Defina SRI_FIRMA_SCRIPT con la ruta del firmador XAdES-BES."
            )
        if not self.script_path.exists():
            raise SriSignatureError(f"Script firmador no encontrado: {self.script_path}")

        fd, p12_path = tempfile.mkstemp(suffix=".p12", prefix="sri_firma_")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(p12_data)
            os.chmod(p12_path, 0o600)

            cmd = [self.node_bin, str(self.script_path), root_tag, p12_path, password]
            logger.info(f"Firmando {root_tag} con {self.script_path.name}")
            try:
                result = self._run(cmd, input=xml, capture_output=True, timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise SriSignatureError(f"El firmador no respondió en {self.timeout}s") from e
            except OSError as e:
                raise SriSignatureError(f"No se pudo ejecutar el firmador ({self.node_bin}): {e}") from e
        finally:
            try:
                os.unlink(p12_path)
            except FileNotFoundError:
                pass

        if result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            raise SriSignatureError(f"Error firmando XML (exit {result.returncode}): {stderr[:500]}")

        signed = result.stdout or b""
        if not signed.strip():
            raise SriSignatureError("El firmador devolvió una salida vacía")
        if not _tiene_firma(signed):
            raise SriSignatureError("El XML firmado no contiene ds:Signature")
        logger.debug(f"XML firmado ({len(signed)} bytes)")
        return signed


FIRMA_CANNED = (
    f'<ds:Signature xmlns:ds="{DS_NS}" Id="Signature-test">'
    "<ds:SignedInfo></ds:SignedInfo>"
    "<ds:SignatureValue>dGVzdA==</ds:SignatureValue>"
    "</ds:Signature>"
)


class FirmaFija:
    """Doble de prueba: agrega un bloque ds:Signature fijo y registra las llamadas."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.llamadas: List[Tuple[bytes, str]] = []

    def firmar(self, xml: bytes, p12_data: bytes, password: str, root_tag: str) -> bytes:
        self.llamadas.append((xml, root_tag))
        if self.error is not None:
            raise self.error
        cierre = f"</{root_tag}>".encode("utf-8")
        pos = xml.rfind(cierre)
        if pos < 0:
            raise SriSignatureError(f"El XML no termina en {cierre.decode()}")
        return xml[:pos] + FIRMA_CANNED.encode("utf-8") + xml[pos:]


def cargar_certificado(store, p12_path: str, password: str) -> InfoCertificado:
    """
    Valida un archivo P12 y lo guarda como certificado único del emisor.

    Args:
        store: SriStore donde se persiste el certificado
        p12_path: Ruta al archivo .p12/.pfx
        password: Contraseña del P12

    Raises:
        SriSignatureError: archivo inexistente, ilegible o certificado vencido
    """
    path = Path(p12_path).expanduser()
    if not path.is_file():
        raise SriSignatureError(f"Archivo P12 no encontrado: {p12_path}")
    if path.suffix.lower() not in (".p12", ".pfx"):
        logger.warning(f"Extensión inusual para certificado PKCS#12: {path.suffix}")

    p12_data = path.read_bytes()
    info = inspeccionar_p12(p12_data, password)
    if info.vencido():
        raise SriSignatureError(f"El certificado expiró el {info.fecha_expiracion}")

    store.guardar_certificado(p12_data, password, info.sujeto, info.fecha_expiracion)
    logger.info(f"Certificado cargado: {info.sujeto} (vence {info.fecha_expiracion})")
    return info
