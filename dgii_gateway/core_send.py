from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, Dict

from app.dgii_client.exceptions import (
    CredentialNotFound,
    DgiiException,
    DgiiValidationError,
    MalformedReception,
    PeerAuthError,
    SubmissionError,
)
from app.dgii_client.models import SignedDocument

logger = logging.getLogger(__name__)


def http_status_for(exc: BaseException) -> int:
    if isinstance(exc, (DgiiValidationError, MalformedReception, ValueError)):
        return 400
    if isinstance(exc, PeerAuthError):
        return 401
    if isinstance(exc, CredentialNotFound):
        return 404
    if isinstance(exc, SubmissionError):
        return 502
    return 500


def failure_payload(exc: BaseException, *, debug: bool = False) -> Dict[str, Any]:
    """
    Objeto de falla estructurado: {"success": false, "error", "error_type", ...}
    """
    payload: Dict[str, Any] = {
        "success": False,
        "error": getattr(exc, "message", None) or str(exc) or type(exc).__name__,
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, DgiiException) and exc.code:
        payload["code"] = exc.code
    if isinstance(exc, DgiiValidationError) and exc.field:
        payload["field"] = exc.field
    if isinstance(exc, SubmissionError):
        payload["operation"] = exc.operation
        payload["http_status"] = exc.http_status
        payload["response"] = exc.response
    if debug:
        payload["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return payload


def success_payload(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def signed_payload(signed: SignedDocument) -> Dict[str, Any]:
    return {
        "documentType": signed.document_type.value,
        "signedXml": signed.signed_xml,
        "securityCode": signed.security_code,
    }


def run_operation(
    fn: Callable[..., Any],
    *args: Any,
    debug: bool = False,
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Ejecuta una operación del gateway y devuelve siempre un dict estructurado.

    Errores de la taxonomía DGII y ValueError se convierten en fallas;
    cualquier otro error se registra con traceback y también se convierte.
    """
    try:
        result = fn(*args, **kwargs)
    except (DgiiException, ValueError) as exc:
        logger.warning("%s: %s", type(exc).__name__, exc)
        return failure_payload(exc, debug=debug)
    except Exception as exc:
        logger.exception("Error inesperado en %s", getattr(fn, "__name__", fn))
        return failure_payload(exc, debug=debug)
    if isinstance(result, SignedDocument):
        result = signed_payload(result)
    return success_payload(result)

