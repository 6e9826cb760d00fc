import hmac
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

# Asegurar imports desde repo root (evitar conflicto con webui/app.py)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) in sys.path:
    sys.path.remove(str(SCRIPT_DIR))
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.dgii_client.config import DgiiConfig, configure_logging, get_dgii_config
from app.dgii_client.exceptions import DgiiException, DgiiValidationError, PeerAuthError
from app.dgii_client.models import (
    CommercialApproval,
    ConsumptionSummary,
    DocumentType,
    FiscalDocument,
    Invoice,
    SequenceVoid,
)
from app.dgii_client.notifier import ReceptionNotifier
from dgii_gateway.core_send import failure_payload, http_status_for, signed_payload, success_payload
from dgii_gateway.dispatcher import ProtocolDispatcher
from dgii_gateway.reception import ReceptionPipeline, extract_payload

APP_TITLE = "DGII e-CF Gateway"

app = Flask(__name__)

_STATE_LOCK = threading.Lock()

# Claves con las que el cuerpo JSON puede envolver el documento
DOCUMENT_KEYS = ("document", "invoiceData", "ecfData", "data")
META_KEYS = ("rnc", "encf", "environment", "fileName", "documentType")


def _config() -> DgiiConfig:
    with _STATE_LOCK:
        cfg = app.config.get("DGII_CONFIG")
        if cfg is None:
            cfg = get_dgii_config()
            app.config["DGII_CONFIG"] = cfg
    return cfg


def _dispatcher() -> ProtocolDispatcher:
    cfg = _config()
    with _STATE_LOCK:
        dispatcher = app.config.get("DGII_DISPATCHER")
        if dispatcher is None:
            dispatcher = ProtocolDispatcher(cfg)
            app.config["DGII_DISPATCHER"] = dispatcher
    return dispatcher


def _reception() -> ReceptionPipeline:
    dispatcher = _dispatcher()
    with _STATE_LOCK:
        pipeline = app.config.get("DGII_RECEPTION")
        if pipeline is None:
            pipeline = ReceptionPipeline(
                dispatcher.config,
                resolver=dispatcher.resolver,
                signer=dispatcher.signer,
                bridge=dispatcher.bridge,
                notifier=ReceptionNotifier.from_config(dispatcher.config),
            )
            app.config["DGII_RECEPTION"] = pipeline
    return pipeline


@app.before_request
def _require_api_key():
    if not request.path.startswith("/api/"):
        return None
    provided = request.headers.get("x-api-key", "")
    if not provided or not hmac.compare_digest(provided, _config().api_key):
        return jsonify({"success": False, "error": "API key inválida o ausente", "error_type": "Unauthorized"}), 401
    return None


def _require_peer_token() -> None:
    if not _config().require_peer_token:
        return
    auth = request.headers.get("Authorization", "")
    if not auth.lower().startswith("bearer "):
        raise PeerAuthError("Token Bearer requerido")
    _dispatcher().peer_auth.verify_token(auth[7:].strip())


@app.errorhandler(DgiiException)
def _handle_dgii_error(exc: DgiiException):
    app.logger.warning("%s: %s", type(exc).__name__, exc.message)
    return jsonify(failure_payload(exc)), http_status_for(exc)


@app.errorhandler(ValueError)
def _handle_value_error(exc: ValueError):
    return jsonify(failure_payload(exc)), 400


@app.errorhandler(Exception)
def _handle_unexpected(exc: Exception):
    if isinstance(exc, HTTPException):
        return jsonify({"success": False, "error": exc.description, "error_type": type(exc).__name__}), exc.code
    app.logger.exception("Error inesperado en %s", request.path)
    return jsonify(failure_payload(exc)), 500


def _ok(data: Any, status: int = 200):
    return jsonify(success_payload(data)), status


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise DgiiValidationError("Se esperaba un cuerpo JSON (objeto)")
    return data


def _split_document(body: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Separa el documento de los metadatos (rnc, encf, environment, ...)"""
    for key in DOCUMENT_KEYS:
        if isinstance(body.get(key), dict):
            meta = {k: v for k, v in body.items() if k != key}
            return body[key], meta
    meta = {k: body[k] for k in META_KEYS if k in body}
    return {k: v for k, v in body.items() if k not in META_KEYS}, meta


def _document(payload: Dict[str, Any], variant) -> FiscalDocument:
    root = variant.document_type.value
    if set(payload) == {root}:
        return FiscalDocument.from_payload(payload)
    return variant(payload)


def _xml_response(xml: str, status: int = 200, headers: Optional[Dict[str, str]] = None) -> Response:
    return Response(xml, status=status, mimetype="application/xml", headers=headers or {})


def _raw_body() -> Tuple[bytes, str]:
    # get_data antes de tocar request.form: el multipart se parsea en reception
    return request.get_data(cache=True), request.headers.get("Content-Type", "")


def _flag(value: Any, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "si", "sí")


# ---------------------------------------------------------------------------
# Salud
# ---------------------------------------------------------------------------
@app.route("/health")
@app.route("/healthz")
def health():
    cfg = _config()
    payload = success_payload(
        {
            "service": APP_TITLE,
            "environment": cfg.env,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    payload["ok"] = True
    return jsonify(payload), 200


# ---------------------------------------------------------------------------
# Autenticación DGII y certificados
# ---------------------------------------------------------------------------
@app.route("/api/auth/dgii", methods=["POST"])
def auth_dgii():
    body = request.get_json(silent=True) or {}
    data = _dispatcher().authenticate(rnc=body.get("rnc"), environment=body.get("environment"))
    return _ok(data)


@app.route("/api/certificate/info")
def certificate_info():
    return _ok(_dispatcher().resolver.certificate_info(request.args.get("rnc")))


# ---------------------------------------------------------------------------
# Firma
# ---------------------------------------------------------------------------
@app.route("/api/invoice/sign", methods=["POST"])
def sign_invoice():
    body = _json_body()
    dispatcher = _dispatcher()
    rnc = body.get("rnc")
    if isinstance(body.get("xml"), str):
        signed = dispatcher.sign_only(body["xml"], body.get("documentType"), rnc)
        return _ok(signed_payload(signed))

    payload, _meta = _split_document(body)
    doc_type = body.get("documentType")
    if doc_type:
        variant = {
            DocumentType.ECF: Invoice,
            DocumentType.RFCE: ConsumptionSummary,
            DocumentType.ACECF: CommercialApproval,
            DocumentType.ANECF: SequenceVoid,
        }.get(DocumentType.from_tag(doc_type))
        if variant is None:
            raise DgiiValidationError(f"{doc_type} no se firma desde JSON", field="documentType")
        document = _document(payload, variant)
    elif len(payload) == 1:
        document = FiscalDocument.from_payload(payload)
    else:
        document = Invoice(payload)
    return _ok(signed_payload(dispatcher.sign_document(document, rnc)))


@app.route("/api/invoice/sign-file", methods=["POST"])
def sign_file():
    data, content_type = _raw_body()
    xml = extract_payload(data, content_type)
    signed = _dispatcher().sign_only(xml, request.args.get("documentType"), request.args.get("rnc"))
    return _xml_response(
        signed.signed_xml,
        headers={"X-Security-Code": signed.security_code, "X-Document-Type": signed.document_type.value},
    )


# ---------------------------------------------------------------------------
# Envíos
# ---------------------------------------------------------------------------
@app.route("/api/invoice/send", methods=["POST"])
def send_invoice():
    payload, meta = _split_document(_json_body())
    invoice = _document(payload, Invoice)
    result = _dispatcher().send_invoice(
        invoice,
        rnc=meta.get("rnc"),
        encf=meta.get("encf"),
        environment=meta.get("environment"),
    )
    return _ok(result)


@app.route("/api/invoice/send-summary", methods=["POST"])
def send_summary():
    payload, meta = _split_document(_json_body())
    summary = _document(payload, ConsumptionSummary)
    result = _dispatcher().send_summary(
        summary, rnc=meta.get("rnc"), encf=meta.get("encf"), environment=meta.get("environment")
    )
    return _ok(result)


@app.route("/api/invoice/send-summary-with-ecf", methods=["POST"])
def send_summary_with_ecf():
    payload, meta = _split_document(_json_body())
    invoice = _document(payload, Invoice)
    result = _dispatcher().send_summary_with_ecf(
        invoice, rnc=meta.get("rnc"), encf=meta.get("encf"), environment=meta.get("environment")
    )
    return _ok(result)


@app.route("/api/invoice/approval", methods=["POST"])
def send_approval():
    payload, meta = _split_document(_json_body())
    approval = _document(payload, CommercialApproval)
    result = _dispatcher().send_commercial_approval(
        approval, rnc=meta.get("rnc"), environment=meta.get("environment"), file_name=meta.get("fileName")
    )
    return _ok(result)


@app.route("/api/invoice/acecf", methods=["POST"])
def send_acecf():
    body = _json_body()
    result = _dispatcher().send_acecf(
        rnc_emisor=body.get("rncEmisor"),
        encf=body.get("encf") or body.get("eNCF"),
        fecha_emision=body.get("fechaEmision"),
        monto_total=body.get("montoTotal"),
        rnc_comprador=body.get("rncComprador"),
        state=body.get("estado"),
        reason=body.get("detalleMotivoRechazo") or body.get("motivoRechazo"),
        rnc=body.get("rnc"),
        environment=body.get("environment"),
    )
    return _ok(result)


@app.route("/api/invoice/acecf-from-ecf", methods=["POST"])
def send_acecf_from_ecf():
    body = _json_body()
    ecf_xml = body.get("ecfXml")
    if not isinstance(ecf_xml, str) or not ecf_xml.strip():
        raise DgiiValidationError("ecfXml es requerido", field="ecfXml")
    result = _dispatcher().commercial_approval_from_ecf(
        ecf_xml,
        state=body.get("estado"),
        reason=body.get("detalleMotivoRechazo") or body.get("motivoRechazo"),
        rnc=body.get("rnc"),
        environment=body.get("environment"),
    )
    return _ok(result)


@app.route("/api/invoice/void", methods=["POST"])
def void_sequence():
    payload, meta = _split_document(_json_body())
    void = _document(payload, SequenceVoid)
    result = _dispatcher().void_sequence(
        void, rnc=meta.get("rnc"), environment=meta.get("environment"), file_name=meta.get("fileName")
    )
    return _ok(result)


# ---------------------------------------------------------------------------
# Consultas
# ---------------------------------------------------------------------------
@app.route("/api/invoice/status/<track_id>")
def invoice_status(track_id: str):
    data = _dispatcher().get_status(
        track_id, rnc=request.args.get("rnc"), environment=request.args.get("environment")
    )
    return _ok(data)


@app.route("/api/invoice/tracks/<rnc>/<encf>")
def invoice_tracks(rnc: str, encf: str):
    return _ok(_dispatcher().get_tracks(rnc, encf, environment=request.args.get("environment")))


@app.route("/api/invoice/inquire", methods=["POST"])
def invoice_inquire():
    body = _json_body()
    data = _dispatcher().inquire(
        rnc_emisor=body.get("rncEmisor"),
        encf=body.get("encf") or body.get("eNCF"),
        rnc_comprador=body.get("rncComprador"),
        security_code=body.get("securityCode") or body.get("codigoSeguridad"),
        rnc=body.get("rnc"),
        environment=body.get("environment"),
    )
    return _ok(data)


@app.route("/api/invoice/customer-directory/<rnc>")
def customer_directory(rnc: str):
    return _ok(_dispatcher().customer_directory(rnc, environment=request.args.get("environment")))


@app.route("/api/invoice/qr/generate")
def qr_generate():
    args = request.args
    url = _dispatcher().generate_qr(
        rnc_emisor=args.get("rncEmisor"),
        encf=args.get("encf") or args.get("eNCF"),
        monto_total=args.get("montoTotal"),
        security_code=args.get("codigoSeguridad") or args.get("securityCode"),
        rnc_comprador=args.get("rncComprador"),
        fecha_emision=args.get("fechaEmision"),
        fecha_firma=args.get("fechaFirma"),
        environment=args.get("environment"),
    )
    return _ok({"url": url})


# ---------------------------------------------------------------------------
# Recepción (rol Receptor)
# ---------------------------------------------------------------------------
@app.route("/fe/recepcion/api/ecf", methods=["POST"])
def fe_recepcion():
    _require_peer_token()
    data, content_type = _raw_body()
    cfg = _config()
    result = _reception().process_request(
        data,
        content_type,
        receiver_rnc=request.args.get("rncReceptor") or cfg.rnc_receptor or None,
        credential_rnc=request.args.get("rnc"),
        reject_on_buyer_mismatch=bool(cfg.rnc_receptor),
    )
    return _xml_response(result.signed_ack)


@app.route("/api/invoice/receive-json", methods=["POST"])
def receive_json():
    body = _json_body()
    result = _reception().process_request(
        body,
        "application/json",
        receiver_rnc=body.get("receiverRnc") or body.get("rncReceptor"),
        credential_rnc=body.get("rnc"),
        accepted=_flag(body.get("accepted"), default=True),
        reject_reason=body.get("rejectReason") or body.get("codigoMotivoNoRecibido"),
    )
    return _ok({"signedAck": result.signed_ack, "ackData": result.ack_data})


@app.route("/fe/autenticacion/api/semilla")
def fe_semilla():
    return _xml_response(_dispatcher().generate_seed())


@app.route("/fe/autenticacion/api/validacioncertificado", methods=["POST"])
def fe_validacion_certificado():
    data, content_type = _raw_body()
    signed_seed = extract_payload(data, content_type)
    return jsonify(_dispatcher().validate_signed_seed(signed_seed)), 200


@app.route("/fe/aprobacioncomercial/api/ecf", methods=["POST"])
def fe_aprobacion_comercial():
    _require_peer_token()
    data, content_type = _raw_body()
    return _ok(_reception().receive_commercial_approval(data, content_type))


if __name__ == "__main__":
    configure_logging(_config().log_level)
    try:
        app.run(
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "5055")),
            debug=False,
            use_reloader=False,
            threaded=True,
        )
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
