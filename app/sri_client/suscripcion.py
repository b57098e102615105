"""
Caché de autorización (suscripción SRI y licencia) tolerante a desconexión

Cada verificación intenta refrescar en línea. Si el servidor no responde
se usa el último snapshot guardado en la tabla config, siempre que la
última validación exitosa tenga como máximo GRACE_DAYS días.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import httpx

from .config import get_licencias_url, get_suscripcion_api_key, get_suscripcion_url
from .exceptions import SriResponseError, SriTransportError
from .models import EstadoSuscripcion

logger = logging.getLogger(__name__)

GRACE_DAYS = 7
SUSCRIPCION_TIMEOUT = 10.0
LICENCIA_TIMEOUT = 8.0

PREFIJO_SUSCRIPCION = "sri_suscripcion_"
PREFIJO_LICENCIA = "licencia_"

PLANES_CALENDARIO = ("mensual", "semestral", "anual")
PLAN_LIFETIME = "lifetime"
PLAN_PAQUETE = "paquete"

MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

_CAMPOS = ("autorizado", "plan", "fecha_hasta", "docs_restantes", "es_lifetime", "mensaje", "ultima_validacion")


def obtener_machine_id(paths: Sequence[str] = MACHINE_ID_PATHS) -> str:
    """Huella corta del equipo: sha256(machine-id)[:8] en mayúsculas."""
    for p in paths:
        path = Path(p)
        if not path.is_file():
            continue
        contenido = path.read_text(encoding="utf-8", errors="ignore").strip()
        if contenido:
            return hashlib.sha256(contenido.encode("utf-8")).hexdigest()[:8].upper()
    logger.warning("No se encontró machine-id; usando identificador genérico")
    return hashlib.sha256(b"unknown").hexdigest()[:8].upper()


def _parse_fecha(valor: Optional[str]) -> Optional[date]:
    s = (valor or "").strip()[:10]
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def evaluar_plan(snap: EstadoSuscripcion, hoy: date) -> bool:
    """
    Reglas por tipo de plan:
    - lifetime: siempre autorizado
    - mensual/semestral/anual: hoy <= fecha_hasta
    - paquete: docs_restantes > 0
    - desconocido: lo que diga el flag autorizado
    """
    plan = (snap.plan or "").strip().lower()
    if snap.es_lifetime or plan == PLAN_LIFETIME:
        return True
    if plan in PLANES_CALENDARIO:
        hasta = _parse_fecha(snap.fecha_hasta)
        return hasta is not None and hoy <= hasta
    if plan == PLAN_PAQUETE:
        return (snap.docs_restantes or 0) > 0
    return bool(snap.autorizado)


def _a_texto(valor: Any) -> str:
    if valor is None:
        return ""
    if isinstance(valor, bool):
        return "1" if valor else "0"
    return str(valor)


def _a_bool(valor: Optional[str]) -> bool:
    return (valor or "").strip().lower() in ("1", "true", "si", "yes")


def _a_int(valor: Optional[str]) -> Optional[int]:
    try:
        return int((valor or "").strip())
    except ValueError:
        return None


class EntitlementCache:
    """
    Snapshot de autorización persistido bajo un prefijo de la tabla config.

    Args:
        store: objeto con leer_prefijo(prefijo) y guardar_prefijo(prefijo, valores)
        prefijo: prefijo de las claves de config (ej. "sri_suscripcion_")
        consultar: función que consulta el servidor; lanza SriTransportError sin conexión
        grace_days: días de tolerancia sin conexión
        hoy: reloj inyectable
        validar_cache: devuelve un mensaje si el snapshot cacheado no es usable
    """

    def __init__(
        self,
        store,
        prefijo: str,
        consultar: Callable[[], EstadoSuscripcion],
        grace_days: int = GRACE_DAYS,
        hoy: Callable[[], date] = date.today,
        validar_cache: Optional[Callable[[EstadoSuscripcion], Optional[str]]] = None,
    ):
        self.store = store
        self.prefijo = prefijo
        self._consultar = consultar
        self.grace_days = grace_days
        self._hoy = hoy
        self._validar_cache = validar_cache

    def leer_cache(self) -> Optional[EstadoSuscripcion]:
        valores = self.store.leer_prefijo(self.prefijo)
        if not valores:
            return None
        extra = {k: v for k, v in valores.items() if k not in _CAMPOS}
        return EstadoSuscripcion(
            autorizado=_a_bool(valores.get("autorizado")),
            plan=valores.get("plan") or "",
            fecha_hasta=valores.get("fecha_hasta") or None,
            docs_restantes=_a_int(valores.get("docs_restantes")),
            es_lifetime=_a_bool(valores.get("es_lifetime")),
            mensaje=valores.get("mensaje") or "",
            ultima_validacion=valores.get("ultima_validacion") or None,
            extra=extra,
        )

    def guardar(self, snap: EstadoSuscripcion) -> None:
        valores = {campo: _a_texto(getattr(snap, campo)) for campo in _CAMPOS}
        valores.update({k: _a_texto(v) for k, v in snap.extra.items()})
        self.store.guardar_prefijo(self.prefijo, valores)

    def dias_sin_validar(self, snap: Optional[EstadoSuscripcion]) -> Optional[int]:
        """Días desde la última validación en línea; None si la fecha falta o es ilegible."""
        if snap is None:
            return None
        ultima = _parse_fecha(snap.ultima_validacion)
        if ultima is None:
            return None
        return max(0, (self._hoy() - ultima).days)

    def check(self) -> EstadoSuscripcion:
        """
        Refresca en línea y cachea; sin conexión cae al snapshot guardado.

        Raises:
            SriResponseError: el servidor respondió algo inesperado
        """
        try:
            snap = self._consultar()
        except SriTransportError as e:
            logger.warning(f"Sin conexión al servidor ({self.prefijo.rstrip('_')}): {e.message}")
            return self._desde_cache()

        snap.ultima_validacion = self._hoy().isoformat()
        snap.offline = False
        self.guardar(snap)
        logger.info(f"Validación en línea ({self.prefijo.rstrip('_')}): autorizado={snap.autorizado} plan={snap.plan or '-'}")
        return snap

    def _desde_cache(self) -> EstadoSuscripcion:
        cache = self.leer_cache()
        dias = self.dias_sin_validar(cache)
        if cache is None or dias is None or dias > self.grace_days:
            plan = cache.plan if cache is not None else ""
            return EstadoSuscripcion(
                autorizado=False,
                plan=plan,
                mensaje="Sin conexion por mas de "
                f"{self.grace_days} dias. Conectese a internet para validar.",
                ultima_validacion=cache.ultima_validacion if cache is not None else None,
                offline=True,
            )

        if self._validar_cache is not None:
            problema = self._validar_cache(cache)
            if problema:
                cache.autorizado = False
                cache.mensaje = problema
                cache.offline = True
                return cache

        cache.autorizado = evaluar_plan(cache, self._hoy())
        cache.mensaje = f"{cache.mensaje} (offline)" if cache.mensaje else "Usando cache offline"
        cache.offline = True
        logger.info(f"Usando cache offline ({dias} días sin validar): autorizado={cache.autorizado}")
        return cache


class _ServidorHttp:
    """POST JSON con api key; traduce errores de httpx a excepciones SRI."""

    def __init__(self, url: str, api_key: str, machine_id: str, timeout: float, client: Optional[httpx.Client] = None):
        self.url = (url or "").rstrip("/")
        self.api_key = api_key
        self.machine_id = machine_id
        self.timeout = timeout
        self.client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
        }

    def _post(self, ruta: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.url:
            raise SriTransportError("URL del servidor no configurada")
        endpoint = f"{self.url}/{ruta}"
        try:
            if self.client is not None:
                response = self.client.post(endpoint, json=payload, headers=self._headers(), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(endpoint, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise SriTransportError(f"Timeout al contactar {ruta} ({self.timeout}s)") from e
        except httpx.RequestError as e:
            raise SriTransportError(f"Error de conexión ({ruta}): {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise SriResponseError(
                f"Error HTTP {response.status_code} en {ruta}: {response.text[:200]}",
                http_status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise SriResponseError(f"Respuesta no JSON en {ruta}", http_status=response.status_code) from e
        if not isinstance(data, dict):
            raise SriResponseError(f"Respuesta inesperada en {ruta}", http_status=response.status_code)
        return data


class ServidorSuscripcion(_ServidorHttp):
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        machine_id: Optional[str] = None,
        timeout: float = SUSCRIPCION_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(
            url if url is not None else get_suscripcion_url(),
            api_key if api_key is not None else get_suscripcion_api_key(),
            machine_id or obtener_machine_id(),
            timeout,
            client,
        )

    def validar(self) -> EstadoSuscripcion:
        data = self._post("validar-suscripcion", {"machine_id": self.machine_id})
        autorizado = bool(data.get("autorizado"))
        docs = data.get("docs_restantes")
        return EstadoSuscripcion(
            autorizado=autorizado,
            plan=str(data.get("plan") or ""),
            fecha_hasta=data.get("fecha_hasta") or None,
            docs_restantes=int(docs) if docs is not None else None,
            es_lifetime=bool(data.get("es_lifetime")),
            mensaje=data.get("mensaje") or ("Suscripcion activa" if autorizado else "Sin suscripcion activa"),
        )

    def consumir(self, clave_acceso: str) -> Dict[str, Any]:
        """Descuenta un documento del paquete. Devuelve {ok, docs_restantes}."""
        data = self._post("consumir-documento", {"machine_id": self.machine_id, "clave_acceso": clave_acceso})
        docs = data.get("docs_restantes")
        return {"ok": bool(data.get("ok")), "docs_restantes": int(docs) if docs is not None else None}


class ServidorLicencias(_ServidorHttp):
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        machine_id: Optional[str] = None,
        timeout: float = LICENCIA_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(
            url if url is not None else get_licencias_url(),
            api_key if api_key is not None else get_suscripcion_api_key(),
            machine_id or obtener_machine_id(),
            timeout,
            client,
        )

    def validar_licencia(self) -> EstadoSuscripcion:
        data = self._post("validar-licencia", {"machine_id": self.machine_id})
        activa = bool(data.get("activa"))
        return EstadoSuscripcion(
            autorizado=activa,
            plan=str(data.get("tipo") or ""),
            mensaje="Licencia activa" if activa else (data.get("mensaje") or "Licencia no activa"),
            extra={
                "negocio": str(data.get("negocio") or ""),
                "email": str(data.get("email") or ""),
                "emitida": str(data.get("emitida") or ""),
                "machine_id": self.machine_id,
            },
        )

    def validar_cache(self, snap: EstadoSuscripcion) -> Optional[str]:
        """Una licencia cacheada para otro equipo no es válida."""
        if snap.extra.get("machine_id") != self.machine_id:
            return "La licencia guardada pertenece a otro equipo"
        return None
