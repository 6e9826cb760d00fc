"""
Conversión JSON <-> XML para documentos DGII e-CF

Antes de serializar:
1. Inyecta xmlns:xsi / xmlns:xsd en la raíz de ARECF y ACECF
2. Normaliza fechas a dd-mm-yyyy (y fecha-hora a dd-mm-yyyy HH:MM:SS)
3. Completa con 0.00 los montos que el esquema exige aunque no vengan
4. Descarta campos opcionales vacíos (None / "")
"""
import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from lxml import etree

from .exceptions import TransformError
from .models import DocumentType, FiscalDocument, as_list
from .utils import (
    find_text,
    format_amount,
    format_dgii_date,
    format_dgii_datetime,
    localname,
    parse_xml,
)

logger = logging.getLogger(__name__)

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

NAMESPACED_ROOTS = (DocumentType.ARECF, DocumentType.ACECF, DocumentType.SEED)

DATE_FIELDS = {
    "FechaEmision",
    "FechaVencimientoSecuencia",
    "FechaLimitePago",
    "FechaEmbarque",
    "FechaNCFModificado",
    "FechaEntrega",
    "FechaOrdenCompra",
    "FechaDesembarque",
    "FechaElaboracion",
    "FechaVencimientoItem",
}

DATETIME_FIELDS = {
    "FechaHoraFirma",
    "FechaHoraAcuseRecibo",
    "FechaHoraAprobacionComercial",
    "FechaHoraAnulacioneNCF",
}

# Secciones sin las cuales no se puede construir el XML
REQUIRED_SECTIONS: Dict[DocumentType, Tuple[Tuple[str, ...], ...]] = {
    DocumentType.ECF: (("Encabezado",), ("DetallesItems",)),
    DocumentType.RFCE: (("Encabezado",),),
    DocumentType.ARECF: (("DetalleAcusedeRecibo",),),
    DocumentType.ACECF: (("DetalleAprobacionComercial",),),
    DocumentType.ANECF: (("Encabezado",), ("DetalleAnulacion",)),
}

# Montos requeridos por el esquema: se completan con 0.00 si faltan
ZERO_DEFAULTS: Dict[DocumentType, Tuple[Tuple[Tuple[str, ...], str], ...]] = {
    DocumentType.ECF: ((("Encabezado", "Totales"), "MontoTotal"),),
    DocumentType.RFCE: ((("Encabezado", "Totales"), "MontoTotal"),),
    DocumentType.ACECF: ((("DetalleAprobacionComercial",), "MontoTotal"),),
}

# Campos de ítem requeridos por el esquema ECF
ITEM_ZERO_DEFAULTS = ("MontoItem",)

_ROOT_TAG_RE = re.compile(r"^\s*(?:<\?xml[^?]*\?>\s*)?(?:<!--.*?-->\s*)*<([A-Za-z_][A-Za-z0-9_.-]*)", re.S)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _format_scalar(key: str, value: Any) -> str:
    if key in DATETIME_FIELDS:
        return format_dgii_datetime(value)
    if key in DATE_FIELDS or isinstance(value, date):
        return format_dgii_date(value)
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (float, Decimal)):
        return format_amount(value)
    return str(value).strip() if isinstance(value, str) else str(value)


class DocumentTransformBridge:
    """Adaptador entre el JSON DGII y el XML que se firma"""

    def to_xml(self, document: FiscalDocument) -> str:
        """
        Convierte un documento fiscal a XML (sin firmar)

        Raises:
            TransformError: si falta la estructura anidada requerida
        """
        doc_type = document.document_type
        body = document.to_payload()[document.root_tag]
        for path in REQUIRED_SECTIONS.get(doc_type, ()):
            node: Any = body
            for key in path:
                node = node.get(key) if isinstance(node, dict) else None
            if not isinstance(node, dict) or not node:
                raise TransformError(f"{doc_type.value}: falta la sección requerida {'.'.join(path)}")

        self._apply_zero_defaults(doc_type, body)
        root = self._build_root(doc_type.value, body)
        xml = etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")
        logger.debug("XML generado para %s (%d bytes)", doc_type.value, len(xml))
        return xml

    def payload_to_xml(self, root_tag: str, body: Dict[str, Any]) -> str:
        """Serializa un cuerpo arbitrario bajo root_tag (sin validaciones de tipo)"""
        if not isinstance(body, dict):
            raise TransformError(f"{root_tag}: el cuerpo debe ser un objeto")
        root = self._build_root(root_tag, body)
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def _build_root(self, root_tag: str, body: Dict[str, Any]) -> etree._Element:
        nsmap = None
        if root_tag in {t.value for t in NAMESPACED_ROOTS}:
            nsmap = {"xsi": XSI_NS, "xsd": XSD_NS}
        try:
            root = etree.Element(root_tag, nsmap=nsmap)
            for key, value in body.items():
                self._append(root, key, value)
        except ValueError as exc:
            # lxml rechaza nombres de elemento inválidos
            raise TransformError(f"{root_tag}: nombre de campo inválido ({exc})") from exc
        return root

    def _append(self, parent: etree._Element, key: str, value: Any) -> None:
        if key.startswith("@"):
            if not _is_empty(value):
                parent.set(key[1:], _format_scalar(key[1:], value))
            return
        if isinstance(value, list):
            for item in value:
                self._append(parent, key, item)
            return
        if _is_empty(value):
            return
        element = etree.SubElement(parent, key)
        if isinstance(value, dict):
            for child_key, child_value in value.items():
                self._append(element, child_key, child_value)
        else:
            element.text = _format_scalar(key, value)

    def _apply_zero_defaults(self, doc_type: DocumentType, body: Dict[str, Any]) -> None:
        for path, name in ZERO_DEFAULTS.get(doc_type, ()):
            section = body
            for key in path:
                section = section.get(key) if isinstance(section, dict) else None
            if isinstance(section, dict) and _is_empty(section.get(name)):
                section[name] = Decimal("0.00")
        if doc_type is DocumentType.ECF:
            for item in as_list((body.get("DetallesItems") or {}).get("Item")):
                if not isinstance(item, dict):
                    continue
                for name in ITEM_ZERO_DEFAULTS:
                    if _is_empty(item.get(name)):
                        item[name] = Decimal("0.00")

    def to_dict(self, xml_content: Union[str, bytes], strip_signature: bool = True) -> Dict[str, Any]:
        """
        Convierte XML a dict {raiz: cuerpo}

        Elementos repetidos se agrupan en listas; las hojas quedan como texto.
        """
        root = parse_xml(xml_content)
        return {localname(root.tag): self._element_to_value(root, strip_signature)}

    def _element_to_value(self, element: etree._Element, strip_signature: bool) -> Any:
        children = [c for c in element if isinstance(c.tag, str)]
        if not children:
            return (element.text or "").strip()
        result: Dict[str, Any] = {}
        for child in children:
            if strip_signature and child.tag == f"{{{DS_NS}}}Signature":
                continue
            key = localname(child.tag)
            value = self._element_to_value(child, strip_signature)
            if key in result:
                if not isinstance(result[key], list):
                    result[key] = [result[key]]
                result[key].append(value)
            else:
                result[key] = value
        return result

    def detect_document_type(self, xml_content: Union[str, bytes]) -> Optional[DocumentType]:
        """Detecta el tipo de documento por el nodo raíz (None si no es conocido)"""
        tag: Optional[str]
        try:
            tag = localname(parse_xml(xml_content).tag)
        except TransformError:
            text = xml_content.decode("utf-8", errors="replace") if isinstance(xml_content, bytes) else xml_content
            match = _ROOT_TAG_RE.match(text or "")
            tag = match.group(1) if match else None
        if not tag:
            return None
        try:
            return DocumentType(tag)
        except ValueError:
            return None

    def extract_fields(self, xml_content: Union[str, bytes], *names: str) -> Dict[str, Optional[str]]:
        """Texto de los primeros elementos con esos nombres (local-name)"""
        root = parse_xml(xml_content)
        return {name: find_text(root, name) for name in names}
