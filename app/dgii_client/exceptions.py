"""
Excepciones personalizadas para el cliente DGII e-CF
"""
from typing import Any, Optional


class DgiiException(Exception):
    """Excepción base para errores DGII"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class CredentialNotFound(DgiiException):
    """No existe certificado (archivo o Base64) para el RNC solicitado"""
    def __init__(self, rnc: Optional[str], location: Optional[str] = None):
        self.rnc = rnc
        self.location = location
        message = f"Certificado no encontrado para RNC: {rnc or 'default'}"
        if location:
            message += f" ({location})"
        super().__init__(message, "CERT_NOT_FOUND")


class CredentialLoadError(DgiiException):
    """El certificado existe pero no se pudo leer (contraseña, contenedor corrupto)"""
    def __init__(self, rnc: Optional[str], reason: str):
        self.rnc = rnc
        super().__init__(f"Error al cargar certificado para RNC {rnc or 'default'}: {reason}", "CERT_LOAD")


class TransformError(DgiiException):
    """Error en la conversión JSON <-> XML"""
    pass


class SigningError(DgiiException):
    """Error en la firma digital"""
    def __init__(self, message: str, document_type: Optional[str] = None, rnc: Optional[str] = None):
        self.document_type = document_type
        self.rnc = rnc
        super().__init__(message, "SIGNATURE")


class SubmissionError(DgiiException):
    """Error en la comunicación con DGII (incluye timeouts)"""
    def __init__(
        self,
        message: str,
        response: Any = None,
        http_status: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.response = response
        self.http_status = http_status
        self.operation = operation
        super().__init__(message, str(http_status) if http_status is not None else None)


class MalformedReception(DgiiException):
    """No se encontró un documento reconocible en la recepción"""
    def __init__(self, message: str):
        super().__init__(message, "MALFORMED_RECEPTION")


class DgiiValidationError(DgiiException):
    """Error de validación de los datos de entrada"""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, "VALIDATION")


class PeerAuthError(DgiiException):
    """Semilla firmada o token rechazado"""
    def __init__(self, message: str):
        super().__init__(message, "PEER_AUTH")
