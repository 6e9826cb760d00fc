"""
Módulo cliente para integración con DGII (Comprobantes Fiscales Electrónicos, e-CF)
República Dominicana
"""
from .config import DgiiConfig, configure_logging, get_dgii_config, normalize_environment
from .credentials import Credential, CredentialResolver, P12CredentialSource
from .xml_transform import DocumentTransformBridge
from .xml_signer import XmlSigner, derive_security_code
from .qr_generator import QRGenerator
from .client import DgiiClient
from .peer_auth import PeerAuthenticator, SeedRegistry
from .notifier import ReceptionNotifier
from .models import (
    AckStatus,
    ApprovalState,
    CommercialApproval,
    ConsumptionSummary,
    DocumentType,
    FiscalDocument,
    Invoice,
    NotReceivedReason,
    ReceiptAcknowledgment,
    SequenceVoid,
    SignedDocument,
    TrackedSubmission,
)
from .exceptions import (
    CredentialLoadError,
    CredentialNotFound,
    DgiiException,
    DgiiValidationError,
    MalformedReception,
    PeerAuthError,
    SigningError,
    SubmissionError,
    TransformError,
)

__all__ = [
    'DgiiConfig',
    'configure_logging',
    'get_dgii_config',
    'normalize_environment',
    'Credential',
    'CredentialResolver',
    'P12CredentialSource',
    'DocumentTransformBridge',
    'XmlSigner',
    'derive_security_code',
    'QRGenerator',
    'DgiiClient',
    'PeerAuthenticator',
    'SeedRegistry',
    'ReceptionNotifier',
    'AckStatus',
    'ApprovalState',
    'CommercialApproval',
    'ConsumptionSummary',
    'DocumentType',
    'FiscalDocument',
    'Invoice',
    'NotReceivedReason',
    'ReceiptAcknowledgment',
    'SequenceVoid',
    'SignedDocument',
    'TrackedSubmission',
    'CredentialLoadError',
    'CredentialNotFound',
    'DgiiException',
    'DgiiValidationError',
    'MalformedReception',
    'PeerAuthError',
    'SigningError',
    'SubmissionError',
    'TransformError',
]
