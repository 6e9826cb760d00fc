from __future__ import annotations

from typing import List, Optional

from lxml import etree

from app.dgii_client.exceptions import SigningError
from app.dgii_client.models import DocumentType, SignedDocument
from app.dgii_client.utils import localname

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"

# Raíces que DGII exige con xmlns:xsi / xmlns:xsd declarados
NAMESPACED_ROOTS = (DocumentType.ARECF.value, DocumentType.ACECF.value)


def _parse_xml(xml_bytes: bytes, *, context: str = "") -> etree._Element:
    try:
        return etree.fromstring(xml_bytes, etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError as e:
        raise SigningError(f"[ecf_guard] XML inválido (parse). {context} err={e}") from e


def _direct_signatures(root: etree._Element) -> List[etree._Element]:
    return [c for c in root if isinstance(c.tag, str) and localname(c.tag) == "Signature"]


def assert_signature_is_last_child(xml_bytes: bytes, *, context: str = "") -> None:
    """
    Signature debe ser el último hijo de la raíz, única, en el namespace
    xmldsig y sin prefijo.
    """
    root = _parse_xml(xml_bytes, context=context)
    signatures = _direct_signatures(root)
    if len(signatures) != 1:
        raise SigningError(f"[ecf_guard] Se esperaba 1 Signature en la raíz, hay {len(signatures)}. {context}")

    children = [c for c in root if isinstance(c.tag, str)]
    if children[-1] is not signatures[0]:
        raise SigningError(
            "[ecf_guard] Signature no es el último hijo de la raíz.\n"
            f"  {context}\n"
            f"  orden: {[localname(c.tag) for c in children]}"
        )

    signature = signatures[0]
    if etree.QName(signature).namespace != DS_NS:
        raise SigningError(f"[ecf_guard] Signature fuera del namespace DSIG. {context}")
    if signature.prefix is not None:
        raise SigningError(f"[ecf_guard] Signature con prefijo {signature.prefix!r} (DGII lo espera sin prefijo). {context}")


def assert_reference_covers_document(xml_bytes: bytes, *, context: str = "") -> None:
    root = _parse_xml(xml_bytes, context=context)
    references = [el for el in root.iter() if isinstance(el.tag, str) and localname(el.tag) == "Reference"]
    if not references:
        raise SigningError(f"[ecf_guard] No se encontró Reference dentro de Signature. {context}")
    uri = references[0].attrib.get("URI")
    if uri != "":
        raise SigningError(f"[ecf_guard] Reference URI inválido: {uri!r} (esperado ''). {context}")


def assert_root_namespaces(xml_bytes: bytes, *, context: str = "") -> None:
    root = _parse_xml(xml_bytes, context=context)
    if localname(root.tag) not in NAMESPACED_ROOTS:
        return
    declared = set((root.nsmap or {}).values())
    missing = [ns for ns in (XSI_NS, XSD_NS) if ns not in declared]
    if missing:
        raise SigningError(f"[ecf_guard] <{localname(root.tag)}> sin declarar {missing}. {context}")


def run_signed_guardrails(signed: SignedDocument, *, context: Optional[str] = None) -> None:
    """
    Verifica la forma del XML firmado antes de enviarlo a DGII.
    No muta el XML.
    """
    xml_bytes = signed.signed_xml.encode("utf-8")
    ctx = context or f"tipo={signed.document_type.value}"
    assert_signature_is_last_child(xml_bytes, context=ctx)
    assert_reference_covers_document(xml_bytes, context=ctx)
    assert_root_namespaces(xml_bytes, context=ctx)
