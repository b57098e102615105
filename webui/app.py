import logging
import sys
import threading
import time
from pathlib import Path
from typing import Dict, Tuple

from flask import Flask, current_app, jsonify

# Asegurar imports desde repo root (evitar conflicto con webui/app.py)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) in sys.path:
    sys.path.remove(str(SCRIPT_DIR))
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.sri_client.config import configure_logging
from app.sri_client.exceptions import (
    SriConfigError,
    SriEntitlementError,
    SriException,
    SriResponseError,
    SriSignatureError,
    SriStateError,
    SriTransportError,
    SriValidationError,
)
from app.sri_client.store import SriStore
from sri_emisor.core_emit import EmisorSri

logger = logging.getLogger(__name__)

app = Flask(__name__)

# (clase, status HTTP); el orden importa: subclases antes que la base
_HTTP_STATUS = (
    (SriConfigError, 400),
    (SriValidationError, 400),
    (SriStateError, 409),
    (SriEntitlementError, 403),
    (SriSignatureError, 422),
    (SriTransportError, 503),
    (SriResponseError, 502),
    (SriException, 500),
)

_QUEUE = []
_QUEUE_LOCK = threading.Lock()
_QUEUE_WORKER_STARTED = False
_JOBS: Dict[int, Dict] = {}


def get_emisor() -> EmisorSri:
    emisor = current_app.config.get("EMISOR")
    if emisor is None:
        store = SriStore()
        store.init_db()
        emisor = EmisorSri(store)
        current_app.config["EMISOR"] = emisor
    return emisor


def _error_response(exc: SriException) -> Tuple:
    status = next(code for cls, code in _HTTP_STATUS if isinstance(exc, cls))
    return jsonify({"ok": False, "error": exc.message, "code": exc.code}), status


@app.errorhandler(SriException)
def _handle_sri_error(exc: SriException):
    logger.warning(f"{type(exc).__name__}: {exc.message}")
    return _error_response(exc)


@app.get("/health")
@app.get("/healthz")
def health():
    return jsonify({"ok": True})


@app.get("/sri/estado")
def sri_estado():
    estado = get_emisor().consultar_estado()
    with _QUEUE_LOCK:
        estado["cola_pendiente"] = len(_QUEUE)
    return jsonify({"ok": True, **estado})


@app.post("/ventas/<int:venta_id>/emitir")
def emitir_venta(venta_id: int):
    res = get_emisor().emitir_factura(venta_id)
    return jsonify({"ok": res.exito, **res.to_dict()}), 200


@app.post("/ventas/<int:venta_id>/encolar")
def encolar_venta(venta_id: int):
    _enqueue_venta(venta_id, get_emisor())
    return jsonify({"ok": True, "venta_id": venta_id, "estado": "EN_COLA"}), 202


@app.get("/ventas/<int:venta_id>/cola")
def estado_cola(venta_id: int):
    with _QUEUE_LOCK:
        job = _JOBS.get(venta_id)
    if job is None:
        return jsonify({"ok": False, "error": "Venta no encolada", "code": None}), 404
    return jsonify({"ok": True, "venta_id": venta_id, **job})


@app.post("/notas-credito/<int:nc_id>/emitir")
def emitir_nota_credito(nc_id: int):
    res = get_emisor().emitir_nota_credito(nc_id)
    return jsonify({"ok": res.exito, **res.to_dict()}), 200


@app.post("/sri/suscripcion")
def verificar_suscripcion():
    snap = get_emisor().verificar_suscripcion()
    return jsonify({"ok": True, **snap.to_dict()})


@app.get("/licencia")
def licencia():
    snap = get_emisor().verificar_licencia()
    return jsonify({"ok": True, **snap.to_dict()})


def _process_job(venta_id: int, emisor: EmisorSri) -> None:
    with _QUEUE_LOCK:
        _JOBS[venta_id] = {"estado": "PROCESANDO"}
    try:
        res = emisor.emitir_factura(venta_id)
    except SriException as exc:
        logger.warning(f"Cola: venta {venta_id} falló: {exc.message}")
        job = {"estado": "ERROR", "error": exc.message, "code": exc.code}
    else:
        job = {"estado": "TERMINADO", "resultado": res.to_dict()}
    with _QUEUE_LOCK:
        _JOBS[venta_id] = job


def _queue_init() -> None:
    global _QUEUE_WORKER_STARTED
    with _QUEUE_LOCK:
        if _QUEUE_WORKER_STARTED:
            return
        _QUEUE_WORKER_STARTED = True

    def worker():
        while True:
            job = None
            with _QUEUE_LOCK:
                if _QUEUE:
                    job = _QUEUE.pop(0)
            if not job:
                time.sleep(1)
                continue
            venta_id, emisor = job
            try:
                _process_job(venta_id, emisor)
            except Exception:
                logger.exception(f"Cola: error inesperado emitiendo venta {venta_id}")
                with _QUEUE_LOCK:
                    _JOBS[venta_id] = {"estado": "ERROR", "error": "Error inesperado", "code": None}

    t = threading.Thread(target=worker, daemon=True)
    t.start()


def _enqueue_venta(venta_id: int, emisor: EmisorSri, start_worker: bool = True) -> None:
    if start_worker:
        _queue_init()
    with _QUEUE_LOCK:
        _QUEUE.append((venta_id, emisor))
        _JOBS[venta_id] = {"estado": "EN_COLA"}


if __name__ == "__main__":
    configure_logging()
    try:
        app.run(host="127.0.0.1", port=5055, debug=False, use_reloader=False)
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
