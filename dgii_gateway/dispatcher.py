"""
Despachador de operaciones DGII

Cada envío recorre DRAFTED -> SIGNED -> SUBMITTED:
credencial -> XML -> firma -> autenticación -> envío, reutilizando los
mismos bytes firmados. Las validaciones de entrada ocurren antes de cargar
credenciales, firmar o tocar la red.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from app.dgii_client.client import DgiiClient
from app.dgii_client.config import DgiiConfig, get_dgii_config, normalize_environment
from app.dgii_client.credentials import Credential, CredentialResolver
from app.dgii_client.exceptions import DgiiValidationError
from app.dgii_client.models import (
    ApprovalState,
    CommercialApproval,
    ConsumptionSummary,
    DocumentType,
    FiscalDocument,
    Invoice,
    SequenceVoid,
    SignedDocument,
    SubmissionStage,
    TrackedSubmission,
)
from app.dgii_client.peer_auth import PeerAuthenticator
from app.dgii_client.qr_generator import QRGenerator
from app.dgii_client.xml_signer import XmlSigner
from app.dgii_client.xml_transform import DocumentTransformBridge

from .ecf_guards import run_signed_guardrails

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Credential, str], DgiiClient]


def validate_approval_decision(state: Any, reason: Optional[str]) -> ApprovalState:
    """Estado 1/2; un rechazo requiere motivo"""
    raw = state.value if isinstance(state, ApprovalState) else str(state if state is not None else "").strip()
    try:
        approval_state = ApprovalState(raw)
    except ValueError:
        raise DgiiValidationError(
            'Estado inválido. Debe ser "1" (Aprobado) o "2" (Rechazado)', field="Estado"
        ) from None
    if approval_state is ApprovalState.REJECTED and not (reason and str(reason).strip()):
        raise DgiiValidationError(
            'DetalleMotivoRechazo es requerido cuando Estado es "2" (Rechazado)',
            field="DetalleMotivoRechazo",
        )
    return approval_state


class ProtocolDispatcher:
    """Orquesta firma y envío de documentos DGII por contribuyente y ambiente"""

    def __init__(
        self,
        config: Optional[DgiiConfig] = None,
        resolver: Optional[CredentialResolver] = None,
        bridge: Optional[DocumentTransformBridge] = None,
        signer: Optional[XmlSigner] = None,
        qr: Optional[QRGenerator] = None,
        client_factory: Optional[ClientFactory] = None,
        peer_auth: Optional[PeerAuthenticator] = None,
        summary_threshold: Optional[Union[Decimal, str]] = None,
    ):
        self.config = config or get_dgii_config()
        self.resolver = resolver or CredentialResolver(self.config)
        self.bridge = bridge or DocumentTransformBridge()
        self.signer = signer or XmlSigner()
        self.summary_threshold = (
            Decimal(str(summary_threshold)) if summary_threshold is not None else self.config.summary_threshold
        )
        self.qr = qr or QRGenerator(self.config, self.summary_threshold)
        self.client_factory = client_factory or self._default_client
        self.peer_auth = peer_auth or PeerAuthenticator(self.config, self.signer)

    def _default_client(self, credential: Credential, environment: str) -> DgiiClient:
        return DgiiClient(self.config, credential, self.signer, environment)

    def _env(self, environment: Optional[str]) -> str:
        try:
            return normalize_environment(environment, default=self.config.env)
        except ValueError as exc:
            raise DgiiValidationError(str(exc), field="environment") from exc

    def _stage(self, stage: SubmissionStage, document_type: DocumentType, ref: Optional[str], **extra: Any) -> None:
        details = " ".join(f"{k}={v}" for k, v in extra.items() if v is not None)
        logger.info("[%s] %s %s %s", stage.value, document_type.value, ref or "-", details)

    def _authenticated_client(self, credential: Credential, environment: str) -> DgiiClient:
        client = self.client_factory(credential, environment)
        client.authenticate()
        return client

    # ------------------------------------------------------------------
    # Firma
    # ------------------------------------------------------------------
    def sign_document(self, document: FiscalDocument, rnc: Optional[str] = None) -> SignedDocument:
        """JSON -> XML -> firma, sin envío"""
        self._stage(SubmissionStage.DRAFTED, document.document_type, document.encf, rnc=rnc)
        credential = self.resolver.resolve(rnc)
        xml = self.bridge.to_xml(document)
        signed = self.signer.sign(xml, document.document_type, credential)
        self._stage(SubmissionStage.SIGNED, document.document_type, document.encf, code=signed.security_code)
        return signed

    def sign_only(
        self,
        xml_content: Union[str, bytes],
        document_type: Optional[Union[DocumentType, str]] = None,
        rnc: Optional[str] = None,
    ) -> SignedDocument:
        """
        Firma un XML ya construido

        Si no se indica el tipo, se detecta por el nodo raíz.
        """
        if document_type is None:
            document_type = self.bridge.detect_document_type(xml_content)
            if document_type is None:
                raise DgiiValidationError(
                    "No se pudo detectar el tipo de documento (ECF, RFCE, ARECF, ACECF, ANECF)",
                    field="documentType",
                )
        elif not isinstance(document_type, DocumentType):
            document_type = DocumentType.from_tag(document_type)
        credential = self.resolver.resolve(rnc)
        signed = self.signer.sign(xml_content, document_type, credential)
        self._stage(SubmissionStage.SIGNED, document_type, None, code=signed.security_code)
        return signed

    def _with_signing_time(self, invoice: Invoice, signed_at: datetime) -> Invoice:
        if invoice.body.get("FechaHoraFirma"):
            return invoice
        return Invoice({**invoice.body, "FechaHoraFirma": signed_at})

    # ------------------------------------------------------------------
    # Envíos
    # ------------------------------------------------------------------
    def authenticate(self, rnc: Optional[str] = None, environment: Optional[str] = None) -> Dict[str, Any]:
        env = self._env(environment)
        credential = self.resolver.resolve(rnc)
        client = self.client_factory(credential, env)
        return client.authenticate()

    def send_invoice(
        self,
        invoice: Invoice,
        rnc: Optional[str] = None,
        encf: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Envía un ECF

        Una factura de consumo (E32) por debajo del monto límite se envía
        como resumen RFCE; el ECF completo firmado se devuelve para archivo.
        """
        env = self._env(environment)
        if invoice.is_consumption and invoice.total_amount < self.summary_threshold:
            logger.info(
                "%s: factura de consumo por debajo de %s, se envía resumen RFCE",
                invoice.encf, self.summary_threshold,
            )
            return self._send_consumption_summary(invoice, rnc, encf, env)

        encf = encf or invoice.encf
        signed_at = datetime.now()
        invoice = self._with_signing_time(invoice, signed_at)
        signed = self.sign_document(invoice, rnc)
        run_signed_guardrails(signed, context=f"ECF {encf}")

        credential = self.resolver.resolve(rnc)
        client = self._authenticated_client(credential, env)
        file_name = signed.file_name(rnc or invoice.issuer_rnc, encf)
        response = client.send_electronic_document(signed.signed_xml, file_name)
        submission = TrackedSubmission.from_response(response)
        self._stage(SubmissionStage.SUBMITTED, DocumentType.ECF, encf, trackId=submission.track_id)

        qr_url = self.qr.build_reference(
            rnc_emisor=invoice.issuer_rnc,
            encf=encf,
            monto_total=invoice.total_amount,
            security_code=signed.security_code,
            rnc_comprador=invoice.buyer_rnc,
            fecha_emision=invoice.issue_date,
            fecha_firma=invoice.body.get("FechaHoraFirma"),
            environment=env,
        )
        result = dict(response) if isinstance(response, dict) else {"response": response}
        result.update(
            {
                "trackId": submission.track_id,
                "documentType": DocumentType.ECF.value,
                "signedXml": signed.signed_xml,
                "securityCode": signed.security_code,
                "qrCodeUrl": qr_url,
                "stage": SubmissionStage.SUBMITTED.value,
            }
        )
        return result

    def send_summary_with_ecf(
        self,
        invoice: Invoice,
        rnc: Optional[str] = None,
        encf: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Forma explícita del envío de factura de consumo como RFCE"""
        if not invoice.is_consumption:
            raise DgiiValidationError(
                f"El resumen RFCE solo aplica a facturas de consumo (E32); recibido tipo {invoice.ecf_type}",
                field="TipoeCF",
            )
        if invoice.total_amount >= self.summary_threshold:
            raise DgiiValidationError(
                f"MontoTotal {invoice.total_amount} no es menor a {self.summary_threshold}; enviar como ECF",
                field="MontoTotal",
            )
        return self._send_consumption_summary(invoice, rnc, encf, self._env(environment))

    def _send_consumption_summary(
        self,
        invoice: Invoice,
        rnc: Optional[str],
        encf: Optional[str],
        env: str,
    ) -> Dict[str, Any]:
        encf = encf or invoice.encf
        invoice = self._with_signing_time(invoice, datetime.now())

        # El código de seguridad del RFCE es el del ECF completo
        full_signed = self.sign_document(invoice, rnc)
        summary = invoice.to_summary(full_signed.security_code)
        summary_signed = self.sign_document(summary, rnc)
        run_signed_guardrails(summary_signed, context=f"RFCE {encf}")

        credential = self.resolver.resolve(rnc)
        client = self._authenticated_client(credential, env)
        file_name = summary_signed.file_name(rnc or invoice.issuer_rnc, encf)
        response = client.send_summary(summary_signed.signed_xml, file_name)
        submission = TrackedSubmission.from_response(response)
        self._stage(SubmissionStage.SUBMITTED, DocumentType.RFCE, encf, estado=submission.status)

        qr_url = self.qr.build_reference(
            rnc_emisor=invoice.issuer_rnc,
            encf=encf,
            monto_total=invoice.total_amount,
            security_code=full_signed.security_code,
            rnc_comprador=invoice.buyer_rnc,
            fecha_emision=invoice.issue_date,
            fecha_firma=invoice.body.get("FechaHoraFirma"),
            environment=env,
        )
        result = dict(response) if isinstance(response, dict) else {"response": response}
        result.update(
            {
                "documentType": DocumentType.RFCE.value,
                "signedXml": full_signed.signed_xml,
                "securityCode": full_signed.security_code,
                "summarySignedXml": summary_signed.signed_xml,
                "summarySecurityCode": summary_signed.security_code,
                "qrCodeUrl": qr_url,
                "stage": SubmissionStage.SUBMITTED.value,
            }
        )
        return result

    def send_summary(
        self,
        summary: ConsumptionSummary,
        rnc: Optional[str] = None,
        encf: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        env = self._env(environment)
        encf = encf or summary.encf
        signed = self.sign_document(summary, rnc)
        run_signed_guardrails(signed, context=f"RFCE {encf}")

        credential = self.resolver.resolve(rnc)
        client = self._authenticated_client(credential, env)
        response = client.send_summary(signed.signed_xml, signed.file_name(rnc or summary.issuer_rnc, encf))
        submission = TrackedSubmission.from_response(response)
        self._stage(SubmissionStage.SUBMITTED, DocumentType.RFCE, encf, estado=submission.status)

        result = dict(response) if isinstance(response, dict) else {"response": response}
        result.update(
            {
                "documentType": DocumentType.RFCE.value,
                "signedXml": signed.signed_xml,
                "securityCode": signed.security_code,
                "stage": SubmissionStage.SUBMITTED.value,
            }
        )
        return result

    def send_commercial_approval(
        self,
        approval: CommercialApproval,
        rnc: Optional[str] = None,
        environment: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        env = self._env(environment)
        signed = self.sign_document(approval, rnc)
        run_signed_guardrails(signed, context=f"ACECF {approval.encf}")

        credential = self.resolver.resolve(rnc)
        client = self._authenticated_client(credential, env)
        file_name = file_name or signed.file_name(approval.buyer_rnc, approval.encf)
        response = client.send_commercial_approval(signed.signed_xml, file_name)
        self._stage(SubmissionStage.SUBMITTED, DocumentType.ACECF, approval.encf, estado=approval.state.value)

        result = dict(response) if isinstance(response, dict) else {"response": response}
        result.update(
            {
                "documentType": DocumentType.ACECF.value,
                "signedXml": signed.signed_xml,
                "securityCode": signed.security_code,
                "stage": SubmissionStage.SUBMITTED.value,
            }
        )
        return result

    def send_acecf(
        self,
        rnc_emisor: str,
        encf: str,
        fecha_emision: Any,
        monto_total: Any,
        rnc_comprador: str,
        state: Any,
        reason: Optional[str] = None,
        rnc: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Aprobación comercial a partir de campos sueltos"""
        approval_state = validate_approval_decision(state, reason)
        approval = CommercialApproval.build(
            rnc_emisor=rnc_emisor,
            encf=encf,
            fecha_emision=fecha_emision,
            monto_total=monto_total,
            rnc_comprador=rnc_comprador,
            state=approval_state,
            reason=reason,
        )
        return self.send_commercial_approval(approval, rnc=rnc, environment=environment)

    def commercial_approval_from_ecf(
        self,
        ecf_xml: Union[str, bytes],
        state: Any,
        reason: Optional[str] = None,
        rnc: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Aprobación comercial de un ECF recibido (datos tomados del XML)"""
        approval_state = validate_approval_decision(state, reason)
        fields = self.bridge.extract_fields(
            ecf_xml, "RNCEmisor", "eNCF", "FechaEmision", "MontoTotal", "RNCComprador"
        )
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise DgiiValidationError(f"El ECF no contiene {', '.join(missing)}", field=missing[0])
        return self.send_acecf(
            rnc_emisor=fields["RNCEmisor"],
            encf=fields["eNCF"],
            fecha_emision=fields["FechaEmision"],
            monto_total=fields["MontoTotal"],
            rnc_comprador=fields["RNCComprador"],
            state=approval_state,
            reason=reason,
            rnc=rnc,
            environment=environment,
        )

    def void_sequence(
        self,
        void: SequenceVoid,
        rnc: Optional[str] = None,
        environment: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        env = self._env(environment)
        signed = self.sign_document(void, rnc)
        run_signed_guardrails(signed, context="ANECF")

        credential = self.resolver.resolve(rnc)
        client = self._authenticated_client(credential, env)
        file_name = file_name or f"{rnc or void.issuer_rnc}ANECF{datetime.now():%Y%m%d%H%M%S}.xml"
        response = client.void_sequence(signed.signed_xml, file_name)
        self._stage(SubmissionStage.SUBMITTED, DocumentType.ANECF, file_name)

        result = dict(response) if isinstance(response, dict) else {"response": response}
        result.update(
            {
                "documentType": DocumentType.ANECF.value,
                "signedXml": signed.signed_xml,
                "securityCode": signed.security_code,
                "stage": SubmissionStage.SUBMITTED.value,
            }
        )
        return result

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------
    def get_status(self, track_id: str, rnc: Optional[str] = None, environment: Optional[str] = None) -> Any:
        if not track_id:
            raise DgiiValidationError("trackId es requerido", field="trackId")
        client = self._authenticated_client(self.resolver.resolve(rnc), self._env(environment))
        return client.status_by_track(track_id)

    def get_tracks(self, rnc: str, encf: str, environment: Optional[str] = None) -> Any:
        if not rnc or not encf:
            raise DgiiValidationError("rnc y encf son requeridos")
        client = self._authenticated_client(self.resolver.resolve(rnc), self._env(environment))
        return client.track_statuses(rnc, encf)

    def inquire(
        self,
        rnc_emisor: str,
        encf: str,
        rnc_comprador: Optional[str] = None,
        security_code: Optional[str] = None,
        rnc: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Any:
        if not rnc_emisor or not encf:
            raise DgiiValidationError("rncEmisor y encf son requeridos")
        client = self._authenticated_client(self.resolver.resolve(rnc), self._env(environment))
        return client.inquiry_status(rnc_emisor, encf, rnc_comprador, security_code)

    def customer_directory(self, rnc: str, environment: Optional[str] = None) -> Any:
        if not rnc:
            raise DgiiValidationError("rnc es requerido", field="rnc")
        client = self._authenticated_client(self.resolver.resolve(None), self._env(environment))
        return client.customer_directory(rnc)

    # ------------------------------------------------------------------
    # QR y autenticación de pares
    # ------------------------------------------------------------------
    def generate_qr(self, **kwargs: Any) -> str:
        return self.qr.build_reference(**kwargs)

    def generate_seed(self) -> str:
        return self.peer_auth.generate_seed()

    def validate_signed_seed(self, signed_xml: str) -> Dict[str, Any]:
        return self.peer_auth.validate_signed_seed(signed_xml)
