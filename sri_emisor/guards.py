from __future__ import annotations

from typing import Optional

from lxml import etree

from app.sri_client.clave_acceso import is_clave_valida
from app.sri_client.exceptions import SriSignatureError, SriValidationError


def _local(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _find_first_by_local(root: etree._Element, name: str) -> Optional[etree._Element]:
    for el in root.iter():
        if isinstance(el.tag, str) and _local(el.tag) == name:
            return el
    return None


def _parse_xml(xml_bytes: bytes, *, context: str = "") -> etree._Element:
    try:
        return etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as e:
        raise SriValidationError(f"[guard] XML inválido (parse). {context} err={e}") from e


def assert_clave_acceso(clave: str, *, context: str = "") -> None:
    if not is_clave_valida(clave):
        raise SriValidationError(f"[guard] Clave de acceso inválida: {clave!r}. {context}")


def assert_comprobante_firmado(
    xml_bytes: bytes, *, root_tag: str, clave_acceso: str, context: str = ""
) -> None:
    """
    Guardrail previo al envío (no muta el XML):
      - raíz = factura | notaCredito con id="comprobante"
      - infoTributaria/claveAcceso = la clave que se va a consultar
      - ds:Signature como hijo directo de la raíz
    """
    root = _parse_xml(xml_bytes, context=context)

    if _local(root.tag) != root_tag:
        raise SriValidationError(
            f"[guard] Raíz incorrecta: {_local(root.tag)!r}, esperado {root_tag!r}. {context}"
        )
    if root.get("id") != "comprobante":
        raise SriValidationError(f"[guard] La raíz no tiene id=\"comprobante\". {context}")

    clave_el = _find_first_by_local(root, "claveAcceso")
    clave_xml = (clave_el.text or "").strip() if clave_el is not None else ""
    if clave_xml != clave_acceso:
        raise SriValidationError(
            "[guard] claveAcceso del XML no coincide.\n"
            f"  {context}\n"
            f"  xml:      {clave_xml!r}\n"
            f"  esperada: {clave_acceso!r}"
        )

    firmas = [c for c in root if isinstance(c.tag, str) and _local(c.tag) == "Signature"]
    if not firmas:
        raise SriSignatureError(f"[guard] El comprobante no tiene ds:Signature. {context}")
