from datetime import date
from pathlib import Path
import sys

import pytest
from lxml import etree

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.sri_client.clave_acceso import descomponer_clave, is_clave_valida
from app.sri_client.config import Ambiente
from app.sri_client.exceptions import (
    SriConfigError,
    SriEntitlementError,
    SriSignatureError,
    SriStateError,
    SriTransportError,
    SriValidationError,
)
from app.sri_client.models import EstadoSuscripcion
from app.sri_client.store import SriStore
from app.sri_client.suscripcion import ServidorLicencias
from app.sri_client.xml_signer import FirmaFija
from sri_emisor.core_emit import EmisorSri

from _sri_fixtures import (
    FakeGateway,
    FakeServidor,
    autorizado,
    cargar_certificado_falso,
    crear_nota_credito,
    crear_store,
    crear_venta,
    en_proceso,
    rechazado,
)

HOY = date(2026, 10, 19)


def _emisor(store, gateway, servidor=None, firmador=None):
    return EmisorSri(
        store,
        firmador=firmador or FirmaFija(),
        gateway_factory=gateway.factory,
        suscripcion=servidor or FakeServidor(),
        hoy=lambda: HOY,
    )


@pytest.fixture
def store(tmp_path: Path):
    s = crear_store(tmp_path)
    cargar_certificado_falso(s)
    crear_venta(s, tipo_documento="FACTURA")
    return s


def test_primera_factura_autorizada(store):
    gateway = FakeGateway(envios=[autorizado])
    emisor = _emisor(store, gateway)

    r = emisor.emitir_factura(1)

    assert r.exito is True
    assert r.estado_sri == "AUTORIZADA"
    assert r.mensaje == "Factura autorizada correctamente"
    assert r.numero_documento == "001-001-000000001"
    assert is_clave_valida(r.clave_acceso)
    assert r.clave_acceso[23] == "1"
    campos = descomponer_clave(r.clave_acceso)
    assert campos["fecha"] == "19102026"
    assert campos["cod_doc"] == "01"
    assert campos["secuencial"] == "000000001"
    assert gateway.ambientes == [Ambiente.PRUEBAS]

    assert store.get_config("secuencial_factura_pruebas") == "2"
    assert store.get_config("secuencial_factura") == "1"
    assert store.get_config("sri_facturas_usadas") == "1"

    venta = store.obtener_venta(1)
    assert venta["estado_sri"] == "AUTORIZADA"
    assert venta["numero_factura"] == "001-001-000000001"
    assert venta["autorizacion_sri"] == r.clave_acceso
    assert venta["fecha_autorizacion"] == "2026-10-19T10:31:00-05:00"
    assert "ds:Signature" in venta["xml_firmado"]


def test_factura_autorizada_no_se_reemite(store):
    gateway = FakeGateway(envios=[autorizado])
    firmador = FirmaFija()
    emisor = _emisor(store, gateway, firmador=firmador)
    emisor.emitir_factura(1)

    with pytest.raises(SriStateError) as excinfo:
        emisor.emitir_factura(1)

    assert excinfo.value.message == "Esta factura ya fue autorizada por el SRI"
    assert len(gateway.enviados) == 1
    assert len(firmador.llamadas) == 1
    assert store.get_config("secuencial_factura_pruebas") == "2"


def test_en_proceso_se_reanuda_con_la_misma_clave_y_xml(store):
    gateway = FakeGateway(envios=[en_proceso, en_proceso])
    firmador = FirmaFija()
    emisor = _emisor(store, gateway, firmador=firmador)

    r1 = emisor.emitir_factura(1)
    assert r1.exito is False
    assert r1.estado_sri == "EN_PROCESO"
    assert store.obtener_venta(1)["estado_sri"] == "PENDIENTE"
    assert store.get_config("secuencial_factura_pruebas") == "2"
    assert store.get_config("sri_facturas_usadas") == "0"

    r2 = emisor.emitir_factura(1)
    assert r2.estado_sri == "EN_PROCESO"
    assert r2.clave_acceso == r1.clave_acceso
    assert gateway.consultados == [r1.clave_acceso]

    gateway.consultas.append(autorizado)
    r3 = emisor.emitir_factura(1)

    assert r3.exito is True
    assert r3.estado_sri == "AUTORIZADA"
    assert r3.clave_acceso == r1.clave_acceso
    assert r3.numero_documento == "001-001-000000001"
    assert len(firmador.llamadas) == 1
    assert len(gateway.enviados) == 2
    assert gateway.enviados[0] == gateway.enviados[1]
    assert store.get_config("secuencial_factura_pruebas") == "2"
    assert store.get_config("sri_facturas_usadas") == "1"
    assert store.obtener_venta(1)["xml_firmado"].encode("utf-8") == gateway.enviados[0][0]


def test_pendiente_incompleto_es_error_de_estado(tmp_path: Path):
    store = crear_store(tmp_path)
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA", estado_sri="PENDIENTE", clave_acceso="1" * 49)
    gateway = FakeGateway()

    with pytest.raises(SriStateError):
        _emisor(store, gateway).emitir_factura(1)
    assert gateway.enviados == []


def test_fallo_de_red_deja_pendiente_y_reserva_secuencial(store):
    gateway = FakeGateway(envios=[SriTransportError("No se pudo contactar al SRI")])
    firmador = FirmaFija()
    emisor = _emisor(store, gateway, firmador=firmador)

    with pytest.raises(SriTransportError) as excinfo:
        emisor.emitir_factura(1)

    assert "PENDIENTE" in excinfo.value.message
    venta = store.obtener_venta(1)
    assert venta["estado_sri"] == "PENDIENTE"
    assert venta["clave_acceso"]
    assert venta["xml_firmado"]
    assert store.get_config("secuencial_factura_pruebas") == "2"

    gateway.consultas.append(autorizado)
    r = emisor.emitir_factura(1)

    assert r.estado_sri == "AUTORIZADA"
    assert r.clave_acceso == venta["clave_acceso"]
    assert len(firmador.llamadas) == 1
    assert store.get_config("secuencial_factura_pruebas") == "2"


def test_rechazo_no_consume_secuencial(store):
    gateway = FakeGateway(envios=[rechazado, autorizado])
    firmador = FirmaFija()
    emisor = _emisor(store, gateway, firmador=firmador)

    r = emisor.emitir_factura(1)

    assert r.exito is False
    assert r.estado_sri == "RECHAZADA"
    assert "Error 35" in r.mensaje
    assert r.codigo == "35"
    venta = store.obtener_venta(1)
    assert venta["estado_sri"] == "RECHAZADA"
    assert venta["xml_firmado"] is None
    assert store.get_config("secuencial_factura_pruebas") == "1"
    assert venta["secuencial_reservado"] is None
    assert store.get_config("sri_facturas_usadas") == "0"

    r2 = emisor.emitir_factura(1)
    assert r2.estado_sri == "AUTORIZADA"
    assert r2.numero_documento == "001-001-000000001"
    assert len(firmador.llamadas) == 2


def test_prueba_gratuita_agotada_sin_plan(tmp_path: Path):
    store = crear_store(tmp_path, sri_facturas_usadas="10")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA")
    gateway = FakeGateway(envios=[autorizado])
    firmador = FirmaFija()
    servidor = FakeServidor(EstadoSuscripcion(autorizado=False, mensaje="Sin suscripcion activa"))

    with pytest.raises(SriEntitlementError) as excinfo:
        _emisor(store, gateway, servidor=servidor, firmador=firmador).emitir_factura(1)

    assert excinfo.value.message.startswith("Su prueba gratuita ha terminado (10 facturas)")
    assert firmador.llamadas == []
    assert gateway.enviados == []


@pytest.mark.parametrize(
    "snap,esperado",
    [
        (EstadoSuscripcion(autorizado=False, plan="mensual", fecha_hasta="2026-09-30"), "expiro el 2026-09-30"),
        (EstadoSuscripcion(autorizado=False, plan="paquete", docs_restantes=0), "Ha agotado sus documentos"),
    ],
)
def test_suscripcion_vencida_bloquea_facturas(tmp_path: Path, snap, esperado):
    store = crear_store(tmp_path, sri_facturas_usadas="10")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA")

    with pytest.raises(SriEntitlementError) as excinfo:
        _emisor(store, FakeGateway(), servidor=FakeServidor(snap)).emitir_factura(1)

    assert esperado in excinfo.value.message


def test_sin_conexion_y_sin_cache_bloquea(tmp_path: Path):
    store = crear_store(tmp_path, sri_facturas_usadas="10")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA")

    with pytest.raises(SriEntitlementError) as excinfo:
        _emisor(store, FakeGateway(), servidor=FakeServidor(offline=True)).emitir_factura(1)

    assert "Conectese a internet" in excinfo.value.message


def test_paquete_descuenta_documento_tras_autorizar(tmp_path: Path):
    store = crear_store(tmp_path, sri_facturas_usadas="10")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA")
    servidor = FakeServidor(EstadoSuscripcion(autorizado=True, plan="paquete", docs_restantes=5), docs_restantes=4)

    r = _emisor(store, FakeGateway(envios=[autorizado]), servidor=servidor).emitir_factura(1)

    assert r.exito is True
    assert servidor.consumidos == [r.clave_acceso]
    assert store.get_config("sri_suscripcion_docs_restantes") == "4"
    assert store.get_config("sri_facturas_usadas") == "11"


def test_paquete_descuenta_tambien_dentro_de_la_prueba(store):
    store.set_config("sri_suscripcion_plan", "paquete")
    store.set_config("sri_suscripcion_docs_restantes", "5")
    servidor = FakeServidor(offline=True, docs_restantes=4)

    r = _emisor(store, FakeGateway(envios=[autorizado]), servidor=servidor).emitir_factura(1)

    assert r.exito is True
    assert servidor.consumidos == [r.clave_acceso]
    assert store.get_config("sri_suscripcion_docs_restantes") == "4"
    assert store.get_config("sri_facturas_usadas") == "1"


def test_sin_plan_paquete_no_descuenta(store):
    servidor = FakeServidor(offline=True)

    r = _emisor(store, FakeGateway(envios=[autorizado]), servidor=servidor).emitir_factura(1)

    assert r.exito is True
    assert servidor.consumidos == []


def test_dos_emisores_sobre_la_misma_base_no_repiten_secuencial(store):
    crear_venta(store, venta_id=2, tipo_documento="FACTURA")
    otro = _emisor(SriStore(store.db_path), FakeGateway(envios=[autorizado]))
    otros = []

    def autorizado_tras_otra_emision(clave):
        otros.append(otro.emitir_factura(2))
        return autorizado(clave)

    r = _emisor(store, FakeGateway(envios=[autorizado_tras_otra_emision])).emitir_factura(1)

    assert r.numero_documento == "001-001-000000001"
    assert otros[0].numero_documento == "001-001-000000002"
    assert descomponer_clave(otros[0].clave_acceso)["secuencial"] == "000000002"
    assert store.get_config("secuencial_factura_pruebas") == "3"


def test_rechazo_con_numero_ya_superado_conserva_la_reserva(store):
    crear_venta(store, venta_id=2, tipo_documento="FACTURA")
    otro = _emisor(SriStore(store.db_path), FakeGateway(envios=[autorizado]))

    def rechazado_tras_otra_emision(clave):
        otro.emitir_factura(2)
        return rechazado(clave)

    gateway = FakeGateway(envios=[rechazado_tras_otra_emision, autorizado])
    emisor = _emisor(store, gateway)

    assert emisor.emitir_factura(1).estado_sri == "RECHAZADA"
    assert store.obtener_venta(1)["secuencial_reservado"] == 1
    assert store.get_config("secuencial_factura_pruebas") == "3"

    r = emisor.emitir_factura(1)

    assert r.numero_documento == "001-001-000000001"
    assert store.get_config("secuencial_factura_pruebas") == "3"


def test_fallo_de_firma_devuelve_el_secuencial(store):
    firmador = FirmaFija(error=SriSignatureError("Contraseña del certificado incorrecta"))

    with pytest.raises(SriSignatureError):
        _emisor(store, FakeGateway(), firmador=firmador).emitir_factura(1)

    assert store.get_config("secuencial_factura_pruebas") == "1"
    assert store.obtener_venta(1)["secuencial_reservado"] is None


def test_cambiar_ambiente_no_espera_a_una_emision_en_curso(store):
    def autorizado_tras_cambiar_ambiente(clave):
        emisor.cambiar_ambiente("produccion")
        return autorizado(clave)

    emisor = _emisor(store, FakeGateway(envios=[autorizado_tras_cambiar_ambiente]))
    r = emisor.emitir_factura(1)

    assert r.exito is True
    assert r.clave_acceso[23] == "1"
    assert store.get_config("sri_ambiente") == "produccion"


def test_solo_facturas_electronicas(tmp_path: Path):
    store = crear_store(tmp_path)
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="NOTA_VENTA")
    emisor = _emisor(store, FakeGateway())

    with pytest.raises(SriValidationError) as excinfo:
        emisor.emitir_factura(1)
    assert excinfo.value.message == "Solo se pueden emitir facturas electronicas"

    with pytest.raises(SriValidationError):
        emisor.emitir_factura(99)


def test_sin_certificado(tmp_path: Path):
    store = crear_store(tmp_path)
    crear_venta(store, tipo_documento="FACTURA")

    with pytest.raises(SriSignatureError):
        _emisor(store, FakeGateway()).emitir_factura(1)


def test_configuracion_incompleta(tmp_path: Path):
    store = crear_store(tmp_path, ruc="123", punto_emision="1")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA")

    with pytest.raises(SriConfigError) as excinfo:
        _emisor(store, FakeGateway()).emitir_factura(1)

    assert "ruc (13 dígitos)" in excinfo.value.faltantes
    assert "punto_emision (3 dígitos)" in excinfo.value.faltantes


def test_nota_credito_referencia_la_factura(tmp_path: Path):
    store = crear_store(tmp_path, sri_facturas_usadas="10")
    cargar_certificado_falso(store)
    crear_venta(store, tipo_documento="FACTURA", numero_factura="001-001-000000005", estado_sri="AUTORIZADA")
    crear_nota_credito(store, venta_id=1)
    gateway = FakeGateway(envios=[autorizado])
    firmador = FirmaFija()

    r = _emisor(store, gateway, servidor=FakeServidor(offline=True), firmador=firmador).emitir_nota_credito(1)

    assert r.exito is True
    assert r.mensaje == "Nota de credito autorizada correctamente"
    assert r.numero_documento == "001-001-000000001"
    assert descomponer_clave(r.clave_acceso)["cod_doc"] == "04"
    assert firmador.llamadas[0][1] == "notaCredito"

    root = etree.fromstring(gateway.enviados[0][0])
    assert root.tag == "notaCredito"
    assert root.findtext("infoNotaCredito/numDocModificado") == "001-001-000000005"
    assert root.findtext("infoNotaCredito/fechaEmisionDocSustento") == "19/10/2026"
    assert root.findtext("infoNotaCredito/fechaEmision") == "20/10/2026"
    assert root.findtext("infoNotaCredito/motivo") == "Devolución de producto"

    assert store.get_config("secuencial_nota_credito_pruebas") == "2"
    assert store.get_config("secuencial_factura_pruebas") == "1"
    assert store.get_config("sri_facturas_usadas") == "10"
    nc = store.obtener_nota_credito(1)
    assert nc["estado_sri"] == "AUTORIZADA"
    assert nc["numero_factura_nc"] == "001-001-000000001"


def test_cambiar_ambiente_usa_contador_de_produccion(store):
    gateway = FakeGateway(envios=[autorizado])
    emisor = _emisor(store, gateway)

    assert emisor.cambiar_ambiente("produccion") is Ambiente.PRODUCCION
    r = emisor.emitir_factura(1)

    assert r.clave_acceso[23] == "2"
    assert gateway.ambientes == [Ambiente.PRODUCCION]
    assert store.get_config("secuencial_factura") == "2"
    assert store.get_config("secuencial_factura_pruebas") == "1"


def test_cambiar_ambiente_invalido(store):
    with pytest.raises(SriValidationError):
        _emisor(store, FakeGateway()).cambiar_ambiente("staging")
    assert store.get_config("sri_ambiente") == "pruebas"


def test_consultar_estado(store):
    estado = _emisor(store, FakeGateway()).consultar_estado()

    assert estado["ambiente"] == "pruebas"
    assert estado["certificado_cargado"] is True
    assert estado["certificado_nombre"] == "CN=EMISOR PRUEBA"
    assert estado["facturas_gratis"] == 10
    assert estado["facturas_usadas"] == 0
    assert estado["facturas_prueba_restantes"] == 10
    assert estado["secuencial_factura"] == 1
    assert estado["secuencial_nota_credito"] == 1


def test_verificar_licencia_sin_servidor_configurado(store):
    emisor = EmisorSri(
        store,
        firmador=FirmaFija(),
        gateway_factory=FakeGateway().factory,
        licencias=ServidorLicencias(url="", api_key="", machine_id="EQUIPO01"),
        hoy=lambda: HOY,
    )

    snap = emisor.verificar_licencia()

    assert snap.autorizado is False
    assert snap.offline is True


def test_verificar_suscripcion_en_linea_guarda_cache(store):
    servidor = FakeServidor(EstadoSuscripcion(autorizado=True, plan="anual", fecha_hasta="2027-01-31"))

    snap = _emisor(store, FakeGateway(), servidor=servidor).verificar_suscripcion()

    assert snap.autorizado is True
    assert store.get_config("sri_suscripcion_plan") == "anual"
    assert store.get_config("sri_suscripcion_ultima_validacion") == "2026-10-19"
