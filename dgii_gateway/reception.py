"""
Recepción de e-CF de contrapartes (rol Receptor)

RECEIVED(raw) -> PARSED(encabezado) -> DECIDED -> ACKNOWLEDGED(ARECF firmado)

La decisión (recibido / no recibido + motivo) la toma quien llama; el
pipeline solo informa inconsistencias (RNC comprador distinto, firma
inválida) en ack_data.
"""
from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from werkzeug.formparser import FormDataParser
from werkzeug.http import parse_options_header

from app.dgii_client.config import DgiiConfig, get_dgii_config
from app.dgii_client.credentials import CredentialResolver
from app.dgii_client.exceptions import DgiiValidationError, MalformedReception, SigningError, TransformError
from app.dgii_client.models import (
    AckStatus,
    DocumentType,
    NotReceivedReason,
    ReceiptAcknowledgment,
    ReceptionContext,
    ReceptionStage,
)
from app.dgii_client.notifier import ReceptionNotifier
from app.dgii_client.utils import find_text, format_dgii_datetime, localname, parse_xml
from app.dgii_client.xml_signer import XmlSigner
from app.dgii_client.xml_transform import DocumentTransformBridge

logger = logging.getLogger(__name__)

HEADER_FIELDS = (
    "TipoeCF",
    "eNCF",
    "RNCEmisor",
    "RazonSocialEmisor",
    "FechaEmision",
    "RNCComprador",
    "RazonSocialComprador",
    "MontoTotal",
    "FechaHoraFirma",
)

JSON_XML_FIELDS = ("ecfXml", "xml", "acecfXml")


@dataclass
class ReceptionResult:
    signed_ack: str
    ack_data: Dict[str, Any]
    context: ReceptionContext = field(repr=False)


def _as_bytes(body: Union[str, bytes, None]) -> bytes:
    if body is None:
        return b""
    return body.encode("utf-8") if isinstance(body, str) else body


def _decode(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


def _looks_like_xml(text: str) -> bool:
    return text.lstrip().startswith("<")


def _multipart_parts(body: bytes, content_type: str) -> List[bytes]:
    mimetype, options = parse_options_header(content_type)
    try:
        _, form, files = FormDataParser(silent=False).parse(io.BytesIO(body), mimetype, len(body), options)
    except ValueError as exc:
        raise MalformedReception(f"Cuerpo multipart/form-data inválido: {exc}") from exc

    parts = [(name, storage.read()) for name, storage in files.items(multi=True)]
    parts += [(name, value.encode("utf-8")) for name, value in form.items(multi=True)]
    # Primero la parte llamada "xml" (como la envía DGII), luego el resto
    named = [data for name, data in parts if name == "xml"]
    return named + [data for name, data in parts if name != "xml"]


def extract_payload(body: Union[str, bytes, Dict[str, Any], None], content_type: Optional[str] = "") -> str:
    """
    Localiza el único documento XML de una recepción

    Acepta multipart/form-data (parte "xml" o la primera con XML), JSON con
    campo ecfXml/xml, o XML crudo.

    Raises:
        MalformedReception: si no hay un documento reconocible
    """
    if isinstance(body, dict):
        for key in JSON_XML_FIELDS:
            value = body.get(key)
            if isinstance(value, str) and _looks_like_xml(value):
                return value.strip()
        raise MalformedReception(f"El JSON no contiene XML en {', '.join(JSON_XML_FIELDS)}")

    ctype = (content_type or "").lower()
    data = _as_bytes(body)
    if not data.strip():
        raise MalformedReception("Cuerpo de la recepción vacío")

    if ctype.startswith("multipart/"):
        for payload in _multipart_parts(data, content_type or ""):
            text = _decode(payload)
            if _looks_like_xml(text):
                return text.strip()
        raise MalformedReception("Ninguna parte del multipart contiene XML")

    text = _decode(data)
    if "json" in ctype or text.lstrip().startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise MalformedReception(f"JSON inválido: {exc}") from exc
        if not isinstance(parsed, dict):
            raise MalformedReception("Se esperaba un objeto JSON")
        return extract_payload(parsed)

    if _looks_like_xml(text):
        return text.strip()
    raise MalformedReception(f"Tipo de contenido no soportado: {content_type or 'desconocido'}")


class ReceptionPipeline:
    """Procesa un ECF recibido y produce el acuse de recibo (ARECF) firmado"""

    def __init__(
        self,
        config: Optional[DgiiConfig] = None,
        resolver: Optional[CredentialResolver] = None,
        signer: Optional[XmlSigner] = None,
        bridge: Optional[DocumentTransformBridge] = None,
        notifier: Optional[ReceptionNotifier] = None,
    ):
        self.config = config or get_dgii_config()
        self.resolver = resolver or CredentialResolver(self.config)
        self.signer = signer or XmlSigner()
        self.bridge = bridge or DocumentTransformBridge()
        self.notifier = notifier or ReceptionNotifier.from_config(self.config)

    extract_payload = staticmethod(extract_payload)

    def _parse(self, ctx: ReceptionContext) -> None:
        try:
            root = parse_xml(ctx.raw_xml, "ECF recibido")
        except TransformError as exc:
            raise MalformedReception(exc.message) from exc
        tag = localname(root.tag)
        if tag != DocumentType.ECF.value:
            raise MalformedReception(f"Se esperaba un ECF, se recibió <{tag}>")
        ctx.document_type = DocumentType.ECF
        ctx.header = {name: find_text(root, name) for name in HEADER_FIELDS}
        missing = [name for name in ("RNCEmisor", "eNCF") if not ctx.header.get(name)]
        if missing:
            raise MalformedReception(f"El ECF recibido no contiene {', '.join(missing)}")
        ctx.stage = ReceptionStage.PARSED

    def _decide(self, ctx: ReceptionContext, accepted: bool, reject_reason: Any) -> None:
        if accepted:
            ctx.status = AckStatus.RECEIVED
            ctx.reason = None
        else:
            if reject_reason in (None, ""):
                raise DgiiValidationError(
                    "CodigoMotivoNoRecibido es requerido cuando el e-CF no se recibe",
                    field="CodigoMotivoNoRecibido",
                )
            raw = reject_reason.value if isinstance(reject_reason, NotReceivedReason) else str(reject_reason).strip()
            try:
                ctx.reason = NotReceivedReason(raw)
            except ValueError:
                raise DgiiValidationError(
                    f"CodigoMotivoNoRecibido inválido: {reject_reason!r} (1-4)", field="CodigoMotivoNoRecibido"
                ) from None
            ctx.status = AckStatus.NOT_RECEIVED
        ctx.stage = ReceptionStage.DECIDED

    def _signature_valid(self, raw_xml: str) -> Optional[bool]:
        if "SignatureValue" not in raw_xml:
            return None
        try:
            self.signer.verify(raw_xml)
        except SigningError as exc:
            logger.warning("Firma del ECF recibido no válida: %s", exc.message)
            return False
        return True

    def process(
        self,
        raw_xml: str,
        receiver_rnc: Optional[str] = None,
        credential_rnc: Optional[str] = None,
        accepted: bool = True,
        reject_reason: Any = None,
        reject_on_buyer_mismatch: bool = False,
    ) -> ReceptionResult:
        """
        Genera y firma el ARECF de un ECF recibido

        Args:
            raw_xml: ECF recibido (XML)
            receiver_rnc: RNC del receptor (por defecto RNC_RECEPTOR)
            credential_rnc: RNC cuyo certificado firma el acuse (None = por defecto)
            accepted: True = recibido; False requiere reject_reason
            reject_reason: Código NotReceivedReason ("1".."4")
            reject_on_buyer_mismatch: Marcar como no recibido (motivo 4) si el
                RNCComprador no es el receptor

        Raises:
            MalformedReception: el documento no es un ECF reconocible
            DgiiValidationError: rechazo sin motivo o motivo inválido
        """
        ctx = ReceptionContext(raw_xml=raw_xml or "")
        if not ctx.raw_xml.strip():
            raise MalformedReception("No se recibió ningún documento")

        self._parse(ctx)
        header = ctx.header
        receiver = receiver_rnc or self.config.rnc_receptor or header.get("RNCComprador")
        if not receiver:
            raise MalformedReception("No se pudo determinar el RNC del receptor")
        buyer_mismatch = bool(header.get("RNCComprador")) and header.get("RNCComprador") != receiver
        if buyer_mismatch:
            logger.warning(
                "ECF %s: RNCComprador %s no coincide con el receptor %s",
                header.get("eNCF"), header.get("RNCComprador"), receiver,
            )
            if reject_on_buyer_mismatch and accepted:
                accepted, reject_reason = False, NotReceivedReason.BUYER_MISMATCH
        self._decide(ctx, accepted, reject_reason)

        ctx.acknowledgment = ReceiptAcknowledgment.build(
            rnc_emisor=header["RNCEmisor"],
            rnc_comprador=receiver,
            encf=header["eNCF"],
            status=ctx.status,
            reason=ctx.reason,
        )
        credential = self.resolver.resolve(credential_rnc)
        xml = self.bridge.to_xml(ctx.acknowledgment)
        ctx.signed_ack = self.signer.sign(xml, DocumentType.ARECF, credential)
        ctx.stage = ReceptionStage.ACKNOWLEDGED

        detail = ctx.acknowledgment.detail
        ack_data: Dict[str, Any] = {
            "rncEmisor": header["RNCEmisor"],
            "rncComprador": receiver,
            "eNCF": header["eNCF"],
            "tipoeCF": header.get("TipoeCF"),
            "fechaEmision": header.get("FechaEmision"),
            "montoTotal": header.get("MontoTotal"),
            "estado": ctx.status.value,
            "codigoMotivoNoRecibido": ctx.reason.value if ctx.reason else None,
            "fechaHoraAcuseRecibo": format_dgii_datetime(detail["FechaHoraAcuseRecibo"]),
            "buyer_mismatch": buyer_mismatch,
            "signature_valid": self._signature_valid(ctx.raw_xml),
        }
        logger.info(
            "[%s] ARECF %s para %s (estado %s)",
            ctx.stage.value, header["eNCF"], header["RNCEmisor"], ctx.status.value,
        )

        self.notifier.notify(
            {
                "event": "ecf_recibido",
                "ecfXml": ctx.raw_xml,
                "arecfXml": ctx.signed_ack.signed_xml,
                "acuse": ack_data,
            }
        )
        return ReceptionResult(signed_ack=ctx.signed_ack.signed_xml, ack_data=ack_data, context=ctx)

    def process_request(
        self,
        body: Union[str, bytes, Dict[str, Any], None],
        content_type: Optional[str] = "",
        **kwargs: Any,
    ) -> ReceptionResult:
        """extract_payload + process; nada se firma si el cuerpo no es válido"""
        return self.process(extract_payload(body, content_type), **kwargs)

    def receive_commercial_approval(
        self,
        body: Union[str, bytes, Dict[str, Any], None],
        content_type: Optional[str] = "",
    ) -> Dict[str, Any]:
        """Registra una aprobación comercial (ACECF) enviada por un emisor"""
        raw_xml = extract_payload(body, content_type)
        try:
            root = parse_xml(raw_xml, "ACECF recibido")
        except TransformError as exc:
            raise MalformedReception(exc.message) from exc
        if localname(root.tag) != DocumentType.ACECF.value:
            raise MalformedReception(f"Se esperaba un ACECF, se recibió <{localname(root.tag)}>")

        detalle = self.bridge.to_dict(raw_xml)["ACECF"].get("DetalleAprobacionComercial")
        if not isinstance(detalle, dict) or not detalle.get("eNCF"):
            raise MalformedReception("El ACECF no contiene DetalleAprobacionComercial.eNCF")

        summary = {
            "rncEmisor": detalle.get("RNCEmisor"),
            "rncComprador": detalle.get("RNCComprador"),
            "eNCF": detalle.get("eNCF"),
            "fechaEmision": detalle.get("FechaEmision"),
            "montoTotal": detalle.get("MontoTotal"),
            "estado": detalle.get("Estado"),
            "detalleMotivoRechazo": detalle.get("DetalleMotivoRechazo"),
            "fechaHoraAprobacionComercial": detalle.get("FechaHoraAprobacionComercial"),
            "signature_valid": self._signature_valid(raw_xml),
        }
        logger.info("ACECF recibido para %s (estado %s)", summary["eNCF"], summary["estado"])
        self.notifier.notify({"event": "acecf_recibido", "acecfXml": raw_xml, "aprobacion": summary})
        return summary
