"""
Utilidades para DGII
"""
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from lxml import etree

from .exceptions import TransformError

DATE_FORMAT = "%d-%m-%Y"
DATETIME_FORMAT = "%d-%m-%Y %H:%M:%S"

_DGII_DATE_RE = re.compile(r"^\d{2}-\d{2}-\d{4}$")
_DGII_DATETIME_RE = re.compile(r"^\d{2}-\d{2}-\d{4} \d{2}:\d{2}:\d{2}$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_SAFE_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def _parse_iso(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_dgii_date(value: Any) -> str:
    """
    Normaliza una fecha al formato DGII dd-mm-yyyy

    Acepta date/datetime, ISO (yyyy-mm-dd[THH:MM:SS]) o un valor ya en dd-mm-yyyy.
    Otros valores se devuelven como texto sin cambios.
    """
    if isinstance(value, datetime):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    text = str(value).strip()
    if _DGII_DATE_RE.match(text):
        return text
    if _ISO_DATE_RE.match(text):
        return datetime.strptime(text, "%Y-%m-%d").strftime(DATE_FORMAT)
    parsed = _parse_iso(text)
    if parsed is not None:
        return parsed.strftime(DATE_FORMAT)
    return text


def format_dgii_datetime(value: Any) -> str:
    """Normaliza fecha-hora al formato DGII dd-mm-yyyy HH:MM:SS"""
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(DATETIME_FORMAT)
    text = str(value).strip()
    if _DGII_DATETIME_RE.match(text):
        return text
    if _DGII_DATE_RE.match(text):
        return f"{text} 00:00:00"
    parsed = _parse_iso(text)
    if parsed is not None:
        return parsed.strftime(DATETIME_FORMAT)
    return text


def format_amount(value: Any) -> str:
    """Montos con al menos dos decimales (11800 -> '11800.00')"""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return str(value)
    if amount.as_tuple().exponent > -2:
        amount = amount.quantize(Decimal("0.01"))
    return format(amount, "f")


def localname(tag: str) -> str:
    if not isinstance(tag, str):
        return ""
    if tag.startswith("{") and "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def parse_xml(xml_content: Union[str, bytes], context: str = "XML") -> etree._Element:
    """
    Parsea XML con lxml sin resolver entidades ni acceder a la red

    Raises:
        TransformError: si el contenido no es XML bien formado
    """
    data = xml_content.encode("utf-8") if isinstance(xml_content, str) else xml_content
    if not data or not data.strip():
        raise TransformError(f"{context} vacío")
    try:
        return etree.fromstring(data, _SAFE_PARSER)
    except etree.XMLSyntaxError as exc:
        raise TransformError(f"{context} inválido: {exc}") from exc


def find_text(root: etree._Element, name: str) -> Optional[str]:
    """Texto del primer elemento con ese local-name (o None)"""
    nodes = root.xpath(f".//*[local-name()='{name}']")
    if not nodes:
        return None
    text = nodes[0].text
    return text.strip() if text else None
