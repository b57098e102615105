import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from app.sri_client.clave_acceso import descomponer_clave
from app.sri_client.config import Ambiente, configure_logging
from app.sri_client.exceptions import SriException, SriRejectionError
from app.sri_client.models import EstadoSri
from app.sri_client.soap_client import SoapClient
from app.sri_client.store import SriStore
from app.sri_client.xml_signer import cargar_certificado

from sri_emisor.core_emit import EmisorSri


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _print_resultado(res) -> int:
    """Imprime el resultado; un rechazo del SRI sale como ERROR (exit 1)."""
    if res.estado_sri == EstadoSri.RECHAZADA.value:
        raise SriRejectionError(res.mensaje, code=res.codigo)
    print(f"estado_sri: {res.estado_sri}")
    if res.numero_documento:
        print(f"numero: {res.numero_documento}")
    if res.clave_acceso:
        print(f"clave_acceso: {res.clave_acceso}")
    if res.numero_autorizacion:
        print(f"autorizacion: {res.numero_autorizacion}")
    if res.fecha_autorizacion:
        print(f"fecha_autorizacion: {res.fecha_autorizacion}")
    print(f"mensaje: {res.mensaje}")
    return 0 if res.exito else 3


def consultar(clave: str) -> Dict[str, Any]:
    """Consulta única de autorización por clave de acceso (ambiente tomado de la clave)."""
    ambiente = Ambiente(descomponer_clave(clave)["ambiente"])
    res = SoapClient(ambiente).consultar_autorizacion(clave)
    return {
        "clave_acceso": res.clave_acceso,
        "estado": res.estado,
        "numero_autorizacion": res.numero_autorizacion,
        "fecha_autorizacion": res.fecha_autorizacion,
        "mensaje": res.mensaje,
    }


def main(argv=None, emisor: Optional[EmisorSri] = None) -> int:
    parser = argparse.ArgumentParser(prog="sri_emisor")
    parser.add_argument("--db", type=Path, default=None, help="sqlite (default SRI_DB_PATH)")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")

    p_cert = sub.add_parser("cargar-certificado")
    p_cert.add_argument("p12", type=Path)
    p_cert.add_argument("--password", required=True)

    p_amb = sub.add_parser("ambiente")
    p_amb.add_argument("valor", choices=["pruebas", "produccion"])

    p_fac = sub.add_parser("emitir-factura")
    p_fac.add_argument("venta_id", type=int)

    p_nc = sub.add_parser("emitir-nc")
    p_nc.add_argument("nota_credito_id", type=int)

    p_cons = sub.add_parser("consultar")
    p_cons.add_argument("clave_acceso")

    sub.add_parser("estado")
    sub.add_parser("suscripcion")
    sub.add_parser("licencia")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    store = emisor.store if emisor is not None else SriStore(args.db)
    emisor = emisor or EmisorSri(store)

    try:
        if args.cmd == "init-db":
            store.init_db()
            print(f"db: {store.db_path}")
            return 0

        if args.cmd == "cargar-certificado":
            info = cargar_certificado(store, str(args.p12), args.password)
            print(f"certificado: {info.sujeto}")
            print(f"vence: {info.fecha_expiracion}")
            return 0

        if args.cmd == "ambiente":
            ambiente = emisor.cambiar_ambiente(args.valor)
            print(f"ambiente: {ambiente.nombre_config}")
            return 0

        if args.cmd == "emitir-factura":
            return _print_resultado(emisor.emitir_factura(args.venta_id))

        if args.cmd == "emitir-nc":
            return _print_resultado(emisor.emitir_nota_credito(args.nota_credito_id))

        if args.cmd == "consultar":
            _print_json(consultar(args.clave_acceso))
            return 0

        if args.cmd == "estado":
            _print_json(emisor.consultar_estado())
            return 0

        if args.cmd == "suscripcion":
            _print_json(emisor.verificar_suscripcion().to_dict())
            return 0

        if args.cmd == "licencia":
            _print_json(emisor.verificar_licencia().to_dict())
            return 0
    except (SriException, ValueError) as exc:
        codigo = getattr(exc, "code", None)
        prefijo = f"[{codigo}] " if isinstance(exc, SriRejectionError) and codigo else ""
        print(f"ERROR: {prefijo}{exc}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
