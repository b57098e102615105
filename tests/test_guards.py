from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.sri_client.exceptions import SriSignatureError, SriValidationError
from app.sri_client.models import TipoDocumento
from app.sri_client.xml_generator import generar_xml
from app.sri_client.xml_signer import FirmaFija
from sri_emisor.guards import assert_clave_acceso, assert_comprobante_firmado

from _sri_fixtures import documento


def _firmado(tipo=TipoDocumento.FACTURA):
    doc = documento(tipo)
    return FirmaFija().firmar(generar_xml(doc), b"", "", tipo.root_tag), doc.clave_acceso


def test_comprobante_firmado_pasa():
    xml, clave = _firmado()
    assert_comprobante_firmado(xml, root_tag="factura", clave_acceso=clave)

    xml, clave = _firmado(TipoDocumento.NOTA_CREDITO)
    assert_comprobante_firmado(xml, root_tag="notaCredito", clave_acceso=clave)


def test_raiz_incorrecta():
    xml, clave = _firmado()
    with pytest.raises(SriValidationError):
        assert_comprobante_firmado(xml, root_tag="notaCredito", clave_acceso=clave)


def test_clave_distinta():
    xml, clave = _firmado()
    otra = clave[:-1] + ("0" if clave[-1] != "0" else "1")
    with pytest.raises(SriValidationError) as excinfo:
        assert_comprobante_firmado(xml, root_tag="factura", clave_acceso=otra, context="venta=1")
    assert "venta=1" in excinfo.value.message


def test_sin_firma():
    doc = documento()
    with pytest.raises(SriSignatureError):
        assert_comprobante_firmado(generar_xml(doc), root_tag="factura", clave_acceso=doc.clave_acceso)


def test_sin_id_comprobante():
    xml, clave = _firmado()
    xml = xml.replace(b'id="comprobante"', b'id="otro"', 1)
    with pytest.raises(SriValidationError):
        assert_comprobante_firmado(xml, root_tag="factura", clave_acceso=clave)


def test_xml_ilegible():
    with pytest.raises(SriValidationError):
        assert_comprobante_firmado(b"<factura>", root_tag="factura", clave_acceso="1" * 49)


def test_assert_clave_acceso():
    _, clave = _firmado()
    assert_clave_acceso(clave)
    with pytest.raises(SriValidationError):
        assert_clave_acceso(clave[:48])
