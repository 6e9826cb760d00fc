"""
Modelos de datos para DGII e-CF

Los documentos fiscales son una unión cerrada (Invoice, ConsumptionSummary,
ReceiptAcknowledgment, CommercialApproval, SequenceVoid). Cada variante
guarda el cuerpo JSON DGII bajo su nodo raíz y valida sus campos requeridos
al construirse.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from .exceptions import DgiiValidationError


class DocumentType(str, Enum):
    """Tipos de documento (nodo raíz) que se firman"""
    ECF = "ECF"
    RFCE = "RFCE"
    ARECF = "ARECF"
    ACECF = "ACECF"
    ANECF = "ANECF"
    SEED = "SemillaModel"

    @classmethod
    def from_tag(cls, tag: str) -> "DocumentType":
        try:
            return cls(str(tag).strip())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise DgiiValidationError(
                f"Tipo de documento inválido: {tag!r}. Válidos: {valid}", field="documentType"
            ) from None


class ApprovalState(str, Enum):
    APPROVED = "1"
    REJECTED = "2"


class AckStatus(str, Enum):
    RECEIVED = "0"
    NOT_RECEIVED = "1"


class NotReceivedReason(str, Enum):
    SPECIFICATION_ERROR = "1"
    SIGNATURE_ERROR = "2"
    DUPLICATE = "3"
    BUYER_MISMATCH = "4"


class SubmissionStage(str, Enum):
    DRAFTED = "drafted"
    SIGNED = "signed"
    SUBMITTED = "submitted"


class ReceptionStage(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    DECIDED = "decided"
    ACKNOWLEDGED = "acknowledged"


# Tipo de e-CF de la factura de consumo (E32...)
CONSUMPTION_ECF_TYPE = "32"


def dig(data: Any, *path: str) -> Any:
    """Navega un dict anidado; retorna None si falta algún nivel."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_amount(value: Any, field_name: str = "MontoTotal") -> Decimal:
    """Convierte un monto JSON (str/int/float/Decimal) a Decimal."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DgiiValidationError(f"{field_name} es requerido", field=field_name)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise DgiiValidationError(f"{field_name} inválido: {value!r}", field=field_name) from None


def ecf_type_from_encf(encf: Optional[str]) -> Optional[str]:
    """'E320000000001' -> '32'"""
    if not encf or len(encf) < 3:
        return None
    return encf[1:3]


def _require(body: Dict[str, Any], root: str, *path: str) -> Any:
    value = dig(body, *path)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DgiiValidationError(f"{root}: falta {'.'.join(path)}", field=path[-1])
    return value


@dataclass(frozen=True)
class FiscalDocument:
    """Documento fiscal: cuerpo JSON DGII bajo el nodo raíz del tipo."""
    body: Dict[str, Any]

    document_type: ClassVar[DocumentType]

    def __post_init__(self):
        if not isinstance(self.body, dict):
            raise DgiiValidationError(f"{self.root_tag}: el cuerpo debe ser un objeto")
        self._validate()

    def _validate(self) -> None:
        raise NotImplementedError

    @property
    def root_tag(self) -> str:
        return self.document_type.value

    def to_payload(self) -> Dict[str, Any]:
        return {self.root_tag: copy.deepcopy(self.body)}

    @property
    def issuer_rnc(self) -> Optional[str]:
        return None

    @property
    def buyer_rnc(self) -> Optional[str]:
        return None

    @property
    def encf(self) -> Optional[str]:
        return None

    @property
    def issue_date(self) -> Optional[str]:
        return None

    @property
    def total_amount(self) -> Optional[Decimal]:
        return None

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "FiscalDocument":
        """
        Construye la variante correspondiente a partir de {raiz: cuerpo}

        Raises:
            DgiiValidationError: si la raíz no es un tipo conocido o faltan campos
        """
        if not isinstance(payload, dict) or len(payload) != 1:
            raise DgiiValidationError("El documento debe tener exactamente un nodo raíz (ECF, RFCE, ...)")
        (root, body), = payload.items()
        doc_type = DocumentType.from_tag(root)
        variant = DOCUMENT_CLASSES.get(doc_type)
        if variant is None:
            raise DgiiValidationError(f"{root} no es un documento fiscal")
        return variant(copy.deepcopy(body))


@dataclass(frozen=True)
class Invoice(FiscalDocument):
    """Factura electrónica (ECF)"""
    document_type: ClassVar[DocumentType] = DocumentType.ECF

    def _validate(self) -> None:
        _require(self.body, "ECF", "Encabezado", "IdDoc", "eNCF")
        _require(self.body, "ECF", "Encabezado", "Emisor", "RNCEmisor")
        parse_amount(_require(self.body, "ECF", "Encabezado", "Totales", "MontoTotal"))
        if not as_list(dig(self.body, "DetallesItems", "Item")):
            raise DgiiValidationError("ECF: DetallesItems.Item debe tener al menos una línea", field="Item")

    @property
    def issuer_rnc(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Emisor", "RNCEmisor")

    @property
    def buyer_rnc(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Comprador", "RNCComprador")

    @property
    def encf(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "IdDoc", "eNCF")

    @property
    def issue_date(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Emisor", "FechaEmision")

    @property
    def total_amount(self) -> Decimal:
        return parse_amount(dig(self.body, "Encabezado", "Totales", "MontoTotal"))

    @property
    def ecf_type(self) -> Optional[str]:
        tipo = dig(self.body, "Encabezado", "IdDoc", "TipoeCF")
        return str(tipo) if tipo is not None else ecf_type_from_encf(self.encf)

    @property
    def items(self) -> List[Dict[str, Any]]:
        return as_list(dig(self.body, "DetallesItems", "Item"))

    @property
    def is_consumption(self) -> bool:
        return self.ecf_type == CONSUMPTION_ECF_TYPE

    def to_summary(self, security_code: str) -> "ConsumptionSummary":
        """
        Reduce la factura de consumo al formato RFCE

        Se descartan los ítems, se conservan los totales y se vincula el
        resumen con el e-CF completo mediante su código de seguridad.
        """
        encabezado = self.body.get("Encabezado") or {}
        resumen: Dict[str, Any] = {"Version": encabezado.get("Version", "1.0")}
        for section, keys in RFCE_HEADER_FIELDS.items():
            source = encabezado.get(section) or {}
            picked = {k: copy.deepcopy(source[k]) for k in keys if source.get(k) not in (None, "")}
            if picked:
                resumen[section] = picked
        resumen["CodigoSeguridadeCF"] = security_code
        return ConsumptionSummary({"Encabezado": resumen})


# Campos del encabezado RFCE, en el orden del esquema
RFCE_HEADER_FIELDS = {
    "IdDoc": ["TipoeCF", "eNCF", "TipoIngresos", "TipoPago", "TablaFormasPago"],
    "Emisor": ["RNCEmisor", "RazonSocialEmisor", "FechaEmision"],
    "Comprador": ["RNCComprador", "IdentificadorExtranjero", "RazonSocialComprador"],
    "Totales": [
        "MontoGravadoTotal",
        "MontoGravadoI1",
        "MontoGravadoI2",
        "MontoGravadoI3",
        "MontoExento",
        "TotalITBIS",
        "TotalITBIS1",
        "TotalITBIS2",
        "TotalITBIS3",
        "MontoImpuestoAdicional",
        "ImpuestosAdicionales",
        "MontoTotal",
        "MontoNoFacturable",
        "MontoPeriodo",
    ],
}


@dataclass(frozen=True)
class ConsumptionSummary(FiscalDocument):
    """Resumen de factura de consumo (RFCE)"""
    document_type: ClassVar[DocumentType] = DocumentType.RFCE

    def _validate(self) -> None:
        _require(self.body, "RFCE", "Encabezado", "IdDoc", "eNCF")
        _require(self.body, "RFCE", "Encabezado", "Emisor", "RNCEmisor")
        parse_amount(_require(self.body, "RFCE", "Encabezado", "Totales", "MontoTotal"))

    @property
    def issuer_rnc(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Emisor", "RNCEmisor")

    @property
    def buyer_rnc(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Comprador", "RNCComprador")

    @property
    def encf(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "IdDoc", "eNCF")

    @property
    def issue_date(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "Emisor", "FechaEmision")

    @property
    def total_amount(self) -> Decimal:
        return parse_amount(dig(self.body, "Encabezado", "Totales", "MontoTotal"))

    @property
    def security_code(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "CodigoSeguridadeCF")


@dataclass(frozen=True)
class ReceiptAcknowledgment(FiscalDocument):
    """Acuse de recibo (ARECF)"""
    document_type: ClassVar[DocumentType] = DocumentType.ARECF

    def _validate(self) -> None:
        for name in ("RNCEmisor", "RNCComprador", "eNCF", "Estado"):
            _require(self.body, "ARECF", "DetalleAcusedeRecibo", name)
        estado = str(dig(self.body, "DetalleAcusedeRecibo", "Estado"))
        if estado not in {s.value for s in AckStatus}:
            raise DgiiValidationError(f"ARECF: Estado inválido: {estado!r}", field="Estado")
        if estado == AckStatus.NOT_RECEIVED.value:
            _require(self.body, "ARECF", "DetalleAcusedeRecibo", "CodigoMotivoNoRecibido")

    @classmethod
    def build(
        cls,
        rnc_emisor: str,
        rnc_comprador: str,
        encf: str,
        status: AckStatus,
        reason: Optional[NotReceivedReason] = None,
        timestamp: Optional[datetime] = None,
    ) -> "ReceiptAcknowledgment":
        detalle: Dict[str, Any] = {
            "Version": "1.0",
            "RNCEmisor": rnc_emisor,
            "RNCComprador": rnc_comprador,
            "eNCF": encf,
            "Estado": status.value,
        }
        if status is AckStatus.NOT_RECEIVED and reason is not None:
            detalle["CodigoMotivoNoRecibido"] = reason.value
        detalle["FechaHoraAcuseRecibo"] = timestamp or datetime.now()
        return cls({"DetalleAcusedeRecibo": detalle})

    @property
    def detail(self) -> Dict[str, Any]:
        return self.body["DetalleAcusedeRecibo"]

    @property
    def issuer_rnc(self) -> Optional[str]:
        return self.detail.get("RNCEmisor")

    @property
    def buyer_rnc(self) -> Optional[str]:
        return self.detail.get("RNCComprador")

    @property
    def encf(self) -> Optional[str]:
        return self.detail.get("eNCF")

    @property
    def status(self) -> AckStatus:
        return AckStatus(str(self.detail["Estado"]))


@dataclass(frozen=True)
class CommercialApproval(FiscalDocument):
    """Aprobación comercial (ACECF)"""
    document_type: ClassVar[DocumentType] = DocumentType.ACECF

    def _validate(self) -> None:
        for name in ("RNCEmisor", "eNCF", "FechaEmision", "RNCComprador", "Estado"):
            _require(self.body, "ACECF", "DetalleAprobacionComercial", name)
        parse_amount(dig(self.body, "DetalleAprobacionComercial", "MontoTotal"))
        estado = str(dig(self.body, "DetalleAprobacionComercial", "Estado"))
        if estado not in {s.value for s in ApprovalState}:
            raise DgiiValidationError(
                'Estado inválido. Debe ser "1" (Aprobado) o "2" (Rechazado)', field="Estado"
            )
        motivo = dig(self.body, "DetalleAprobacionComercial", "DetalleMotivoRechazo")
        if estado == ApprovalState.REJECTED.value and not (motivo and str(motivo).strip()):
            raise DgiiValidationError(
                'DetalleMotivoRechazo es requerido cuando Estado es "2" (Rechazado)',
                field="DetalleMotivoRechazo",
            )

    @classmethod
    def build(
        cls,
        rnc_emisor: str,
        encf: str,
        fecha_emision: Any,
        monto_total: Any,
        rnc_comprador: str,
        state: Any,
        reason: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "CommercialApproval":
        try:
            state = ApprovalState(str(state.value if isinstance(state, Enum) else state))
        except ValueError:
            raise DgiiValidationError(
                'Estado inválido. Debe ser "1" (Aprobado) o "2" (Rechazado)', field="Estado"
            ) from None
        detalle: Dict[str, Any] = {
            "Version": "1.0",
            "RNCEmisor": rnc_emisor,
            "eNCF": encf,
            "FechaEmision": fecha_emision,
            "MontoTotal": monto_total,
            "RNCComprador": rnc_comprador,
            "Estado": state.value,
        }
        if reason:
            detalle["DetalleMotivoRechazo"] = reason
        detalle["FechaHoraAprobacionComercial"] = timestamp or datetime.now()
        return cls({"DetalleAprobacionComercial": detalle})

    @property
    def detail(self) -> Dict[str, Any]:
        return self.body["DetalleAprobacionComercial"]

    @property
    def issuer_rnc(self) -> Optional[str]:
        return self.detail.get("RNCEmisor")

    @property
    def buyer_rnc(self) -> Optional[str]:
        return self.detail.get("RNCComprador")

    @property
    def encf(self) -> Optional[str]:
        return self.detail.get("eNCF")

    @property
    def issue_date(self) -> Optional[str]:
        return self.detail.get("FechaEmision")

    @property
    def total_amount(self) -> Decimal:
        return parse_amount(self.detail.get("MontoTotal"))

    @property
    def state(self) -> ApprovalState:
        return ApprovalState(str(self.detail["Estado"]))


@dataclass(frozen=True)
class SequenceVoid(FiscalDocument):
    """Anulación de rangos de secuencias e-NCF (ANECF)"""
    document_type: ClassVar[DocumentType] = DocumentType.ANECF

    def _validate(self) -> None:
        _require(self.body, "ANECF", "Encabezado", "RncEmisor")
        if not as_list(dig(self.body, "DetalleAnulacion", "Anulacion")):
            raise DgiiValidationError("ANECF: DetalleAnulacion.Anulacion no puede estar vacío", field="Anulacion")

    @property
    def issuer_rnc(self) -> Optional[str]:
        return dig(self.body, "Encabezado", "RncEmisor")


DOCUMENT_CLASSES = {
    DocumentType.ECF: Invoice,
    DocumentType.RFCE: ConsumptionSummary,
    DocumentType.ARECF: ReceiptAcknowledgment,
    DocumentType.ACECF: CommercialApproval,
    DocumentType.ANECF: SequenceVoid,
}


@dataclass(frozen=True)
class SignedDocument:
    """XML firmado y su código de seguridad (6 caracteres)"""
    document_type: DocumentType
    signed_xml: str
    security_code: str

    def file_name(self, rnc: str, encf: Optional[str] = None) -> str:
        """Nombre de archivo que espera DGII: <RNC><eNCF>.xml"""
        return f"{rnc}{encf or ''}.xml"


@dataclass
class TrackedSubmission:
    """Eco transitorio del estado de un envío en DGII"""
    track_id: Optional[str]
    status: Optional[str] = None
    messages: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Any) -> "TrackedSubmission":
        if not isinstance(data, dict):
            return cls(track_id=None, raw={"response": data})
        mensajes = []
        for msg in as_list(data.get("mensajes")):
            if isinstance(msg, dict):
                text = msg.get("valor") or msg.get("mensaje") or ""
                code = msg.get("codigo")
                mensajes.append(f"{code}: {text}" if code not in (None, "") else str(text))
            elif msg not in (None, ""):
                mensajes.append(str(msg))
        status = data.get("estado")
        if status is None and data.get("codigo") is not None:
            status = str(data.get("codigo"))
        return cls(
            track_id=data.get("trackId") or data.get("trackid"),
            status=status,
            messages=mensajes,
            raw=data,
        )


@dataclass
class ReceptionContext:
    """Contexto efímero de un documento recibido de una contraparte"""
    raw_xml: str
    stage: ReceptionStage = ReceptionStage.RECEIVED
    document_type: Optional[DocumentType] = None
    header: Dict[str, Optional[str]] = field(default_factory=dict)
    status: Optional[AckStatus] = None
    reason: Optional[NotReceivedReason] = None
    acknowledgment: Optional[ReceiptAcknowledgment] = None
    signed_ack: Optional[SignedDocument] = None
