"""
Cliente SOAP 1.1 para los servicios offline de comprobantes del SRI

Protocolo en dos fases:
1. Recepción (validarComprobante): se envía el XML firmado en base64.
   RECIBIDA, o error 70 (clave en procesamiento), pasan a la fase 2.
   Cualquier otro error es un rechazo definitivo.
2. Autorización (autorizacionComprobante): se consulta por clave de acceso
   hasta obtener AUTORIZADO / NO AUTORIZADO, o se agota el calendario y el
   resultado queda EN_PROCESO.

Solo los errores de transporte se reintentan; un rechazo nunca.

Notas:
- Las respuestas se leen por local-name(): el SRI mezcla prefijos ns2/ns3.
- NO usar elem1 or elem2 con lxml Elements (pueden ser "falsy" si no tienen hijos).
"""
import base64
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

import requests
from lxml import etree

from tools.artifacts import make_run_dir, resolve_artifacts_dir

from .config import Ambiente, get_soap_service_url, verifica_certificado_tls
from .exceptions import SriTransportError
from .models import AUTORIZADO, EN_PROCESO, ResultadoSri

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
RECEPCION_NS = "http://ec.gob.sri.ws.recepcion"
AUTORIZACION_NS = "http://ec.gob.sri.ws.autorizacion"

RETRY_DELAYS = (0, 3, 5)
POLL_WAITS = (0, 3, 5, 8, 12, 15, 20, 25)
DEFAULT_TIMEOUT = 60
CONSULTA_TIMEOUT = 30

RECIBIDA = "RECIBIDA"
ERROR_EN_PROCESAMIENTO = "70"
ESTADOS_RECHAZO = ("NO AUTORIZADO", "RECHAZADO")

MSG_EN_PROCESO_PRUEBAS = (
    "Comprobante en procesamiento en el SRI (ambiente de pruebas). "
    "Puede tardar varios minutos. Reintente mas tarde."
)
MSG_EN_PROCESO_PRODUCCION = (
    "El SRI no respondio a tiempo. El comprobante quedo en procesamiento. Reintente mas tarde."
)
MSG_NO_AUTORIZADO = "Comprobante no autorizado por el SRI"


def _first_text(root: etree._Element, local_name: str) -> str:
    """Texto del primer elemento con ese local-name (vacío si no existe)."""
    found = root.xpath(f".//*[local-name()='{local_name}']")
    if not found:
        return ""
    return (found[0].text or "").strip()


def _texto_mensaje(root: etree._Element) -> str:
    """El SRI anida <mensaje><mensaje>texto</mensaje></mensaje>; devuelve el interno."""
    found = root.xpath(".//*[local-name()='mensaje']/*[local-name()='mensaje']")
    if found:
        return (found[0].text or "").strip()
    return ""


def _soap_envelope(ns: str, operacion: str, campo: str, valor: str) -> bytes:
    nsmap = {"soapenv": SOAP_ENV_NS, "ec": ns}
    env = etree.Element(etree.QName(SOAP_ENV_NS, "Envelope"), nsmap=nsmap)
    header = etree.SubElement(env, etree.QName(SOAP_ENV_NS, "Header"))
    header.text = ""
    body = etree.SubElement(env, etree.QName(SOAP_ENV_NS, "Body"))
    op = etree.SubElement(body, etree.QName(ns, operacion))
    etree.SubElement(op, campo).text = valor
    return etree.tostring(env, xml_declaration=True, encoding="UTF-8")


def build_recepcion_envelope(xml_firmado: bytes) -> bytes:
    b64 = base64.b64encode(xml_firmado).decode("ascii")
    return _soap_envelope(RECEPCION_NS, "validarComprobante", "xml", b64)


def build_autorizacion_envelope(clave_acceso: str) -> bytes:
    return _soap_envelope(AUTORIZACION_NS, "autorizacionComprobante", "claveAccesoComprobante", clave_acceso)


class SoapClient:
    """Gateway SOAP contra recepción y autorización del SRI"""

    def __init__(
        self,
        ambiente: Ambiente,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = DEFAULT_TIMEOUT,
        consulta_timeout: int = CONSULTA_TIMEOUT,
        artifacts_dir: Optional[Path] = None,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        poll_waits: Sequence[float] = POLL_WAITS,
    ):
        self.ambiente = ambiente
        self.session = session or requests.Session()
        self._sleep = sleep
        self.timeout = timeout
        self.consulta_timeout = consulta_timeout
        self.artifacts_dir = artifacts_dir if artifacts_dir is not None else resolve_artifacts_dir()
        self.retry_delays = tuple(retry_delays)
        self.poll_waits = tuple(poll_waits)
        self.verify = verifica_certificado_tls(ambiente)
        self._run_dir: Optional[Path] = None

    @property
    def mensaje_en_proceso(self) -> str:
        if self.ambiente is Ambiente.PRUEBAS:
            return MSG_EN_PROCESO_PRUEBAS
        return MSG_EN_PROCESO_PRODUCCION

    def _dump(self, label: str, request_bytes: bytes, response_bytes: Optional[bytes], meta: Dict) -> None:
        if self.artifacts_dir is None:
            return
        ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        base = (self._run_dir or self.artifacts_dir) / f"{label}_{ts}"
        try:
            Path(f"{base}_request.xml").write_bytes(request_bytes)
            if response_bytes is not None:
                Path(f"{base}_response.xml").write_bytes(response_bytes)
            Path(f"{base}_http.json").write_text(
                json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            logger.warning(f"No se pudo guardar dump SOAP ({label}): {exc}")

    def _post(self, servicio: str, soap_bytes: bytes, timeout: int) -> etree._Element:
        """
        POST SOAP y parseo de la respuesta.

        Raises:
            SriTransportError: error de red, timeout, HTTP != 200 o cuerpo no XML
        """
        url = get_soap_service_url(self.ambiente, servicio)
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": ""}
        meta: Dict = {"servicio": servicio, "url": url, "ambiente": self.ambiente.value}
        try:
            resp = self.session.post(
                url, data=soap_bytes, headers=headers, timeout=timeout, verify=self.verify
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            meta["error"] = str(e)
            self._dump(servicio, soap_bytes, None, meta)
            raise SriTransportError(f"Error de conexión con el SRI ({servicio}): {e}") from e

        meta["http_status"] = resp.status_code
        self._dump(servicio, soap_bytes, resp.content, meta)
        logger.info(f"SRI {servicio}: HTTP {resp.status_code}")

        if resp.status_code != 200:
            raise SriTransportError(
                f"HTTP {resp.status_code} del SRI ({servicio}): {resp.text[:300]}", code=str(resp.status_code)
            )
        try:
            return etree.fromstring(resp.content)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise SriTransportError(f"Respuesta no XML del SRI ({servicio}): {e}") from e

    def validar_comprobante(self, xml_firmado: bytes) -> Dict[str, str]:
        """
        Fase 1: recepción. Reintenta solo ante errores de transporte.

        Returns:
            Dict con estado, identificador, mensaje e informacionAdicional

        Raises:
            SriTransportError: si todos los intentos fallaron
        """
        envelope = build_recepcion_envelope(xml_firmado)
        ultimo: Optional[SriTransportError] = None
        for intento, delay in enumerate(self.retry_delays, start=1):
            if delay:
                self._sleep(delay)
            try:
                root = self._post("recepcion", envelope, self.timeout)
            except SriTransportError as e:
                ultimo = e
                logger.warning(f"Recepción intento {intento}/{len(self.retry_delays)} falló: {e.message}")
                continue
            respuesta = {
                "estado": _first_text(root, "estado"),
                "identificador": _first_text(root, "identificador"),
                "mensaje": _texto_mensaje(root),
                "informacionAdicional": _first_text(root, "informacionAdicional"),
            }
            logger.info(
                f"Recepción: estado={respuesta['estado'] or '-'} identificador={respuesta['identificador'] or '-'}"
            )
            return respuesta

        raise SriTransportError(
            f"No se pudo contactar al SRI después de {len(self.retry_delays)} intentos: {ultimo.message}"
        ) from ultimo

    @staticmethod
    def recepcion_aceptada(respuesta: Dict[str, str]) -> bool:
        if respuesta.get("estado") == RECIBIDA:
            return True
        return respuesta.get("identificador") == ERROR_EN_PROCESAMIENTO

    @staticmethod
    def mensaje_rechazo_recepcion(respuesta: Dict[str, str]) -> str:
        partes = []
        if respuesta.get("identificador"):
            partes.append(f"Error {respuesta['identificador']}")
        if respuesta.get("mensaje"):
            partes.append(respuesta["mensaje"])
        if respuesta.get("informacionAdicional"):
            partes.append(respuesta["informacionAdicional"])
        if not partes:
            return f"Estado SRI: {respuesta.get('estado') or 'desconocido'}"
        return " - ".join(partes)

    def _consultar(self, clave_acceso: str, timeout: int) -> Optional[ResultadoSri]:
        """Una consulta de autorización; None si aún no hay estado terminal."""
        root = self._post("autorizacion", build_autorizacion_envelope(clave_acceso), timeout)
        autorizaciones = root.xpath(".//*[local-name()='autorizacion']")
        if not autorizaciones:
            logger.info(f"Autorización {clave_acceso}: sin respuesta todavía")
            return None
        aut = autorizaciones[0]
        estado = _first_text(aut, "estado").upper()
        logger.info(f"Autorización {clave_acceso}: estado={estado or '-'}")

        if estado == AUTORIZADO:
            return ResultadoSri(
                exito=True,
                estado=AUTORIZADO,
                clave_acceso=clave_acceso,
                numero_autorizacion=_first_text(aut, "numeroAutorizacion") or clave_acceso,
                fecha_autorizacion=_first_text(aut, "fechaAutorizacion") or None,
            )
        if estado in ESTADOS_RECHAZO:
            motivo = _texto_mensaje(aut) or _first_text(aut, "informacionAdicional") or MSG_NO_AUTORIZADO
            return ResultadoSri(
                exito=False,
                estado=estado,
                clave_acceso=clave_acceso,
                mensaje=motivo,
                codigo=_first_text(aut, "identificador") or None,
            )
        return None

    def esperar_autorizacion(self, clave_acceso: str) -> ResultadoSri:
        """
        Fase 2: consulta la autorización con el calendario de esperas.

        La recepción ya fue aceptada: un error de transporte en cualquier
        consulta no es un fallo, el comprobante queda EN_PROCESO si no se
        obtiene un estado terminal.
        """
        total = len(self.poll_waits)
        for intento, espera in enumerate(self.poll_waits, start=1):
            if espera:
                self._sleep(espera)
            try:
                resultado = self._consultar(clave_acceso, self.timeout)
            except SriTransportError as e:
                logger.warning(f"Consulta autorización {intento}/{total} falló: {e.message}")
                continue
            if resultado is not None:
                return resultado

        logger.warning(f"Autorización {clave_acceso}: sin estado terminal tras {total} consultas")
        return ResultadoSri(
            exito=False, estado=EN_PROCESO, clave_acceso=clave_acceso, mensaje=self.mensaje_en_proceso
        )

    def enviar_comprobante(self, xml_firmado: bytes, clave_acceso: str) -> ResultadoSri:
        """
        Protocolo completo recepción + autorización.

        Raises:
            SriTransportError: si la recepción no se pudo contactar
        """
        if self.artifacts_dir is not None:
            self._run_dir = make_run_dir(
                "envio", self.ambiente.nombre_config, clave=clave_acceso, artifacts_dir=self.artifacts_dir
            )
        respuesta = self.validar_comprobante(xml_firmado)
        if not self.recepcion_aceptada(respuesta):
            mensaje = self.mensaje_rechazo_recepcion(respuesta)
            logger.warning(f"Recepción rechazada {clave_acceso}: {mensaje}")
            return ResultadoSri(
                exito=False,
                estado=respuesta.get("estado") or "DEVUELTA",
                clave_acceso=clave_acceso,
                mensaje=mensaje,
                codigo=respuesta.get("identificador") or None,
            )
        if respuesta.get("estado") != RECIBIDA:
            logger.info(f"Clave {clave_acceso} ya en procesamiento (error 70), pasando a autorización")
        return self.esperar_autorizacion(clave_acceso)

    def consultar_autorizacion(self, clave_acceso: str) -> ResultadoSri:
        """
        Consulta única (sin reintentos) del estado de un comprobante.

        Raises:
            SriTransportError: si el SRI no responde
        """
        resultado = self._consultar(clave_acceso, self.consulta_timeout)
        if resultado is not None:
            return resultado
        return ResultadoSri(
            exito=False,
            estado=EN_PROCESO,
            clave_acceso=clave_acceso,
            mensaje="Comprobante aun en procesamiento",
        )
