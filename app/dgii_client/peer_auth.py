"""
Autenticación de contrapartes (este servicio actuando como Receptor)

Replica el esquema de DGII: el emisor pide una semilla, la firma con su
certificado y la devuelve; si la firma es válida y la semilla fue emitida
por nosotros (y no venció ni se usó), se entrega un token Bearer (JWT HS256).

El token solo acredita que la contraparte posee la clave del certificado
embebido en la firma. No se valida la cadena del certificado contra una CA
autorizada por DGII; emisor y serial quedan en el log para auditoría.
"""
import base64
import logging
import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from lxml import etree

from .config import DgiiConfig, get_dgii_config
from .exceptions import PeerAuthError, SigningError, TransformError
from .models import DocumentType
from .utils import find_text, localname, parse_xml
from .xml_signer import XmlSigner
from .xml_transform import XSD_NS, XSI_NS

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


class SeedRegistry:
    """Semillas emitidas y pendientes de validar (uso único, con vencimiento)"""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._issued: Dict[str, float] = {}
        self._lock = threading.Lock()

    def issue(self) -> str:
        value = base64.b64encode(secrets.token_bytes(48)).decode("ascii")
        with self._lock:
            self._purge()
            self._issued[value] = self._clock()
        return value

    def consume(self, value: str) -> bool:
        with self._lock:
            issued_at = self._issued.pop(value, None)
            self._purge()
        if issued_at is None:
            return False
        return (self._clock() - issued_at) <= self.ttl_seconds

    def _purge(self) -> None:
        now = self._clock()
        expired = [v for v, t in self._issued.items() if now - t > self.ttl_seconds]
        for value in expired:
            del self._issued[value]

    def __len__(self) -> int:
        with self._lock:
            return len(self._issued)


class PeerAuthenticator:
    """Emite semillas, valida semillas firmadas y verifica tokens"""

    def __init__(
        self,
        config: Optional[DgiiConfig] = None,
        signer: Optional[XmlSigner] = None,
        registry: Optional[SeedRegistry] = None,
    ):
        self.config = config or get_dgii_config()
        self.signer = signer or XmlSigner()
        self.registry = registry or SeedRegistry(self.config.seed_ttl_seconds)

    def generate_seed(self) -> str:
        """XML SemillaModel con un valor aleatorio de uso único"""
        root = etree.Element(DocumentType.SEED.value, nsmap={"xsi": XSI_NS, "xsd": XSD_NS})
        etree.SubElement(root, "valor").text = self.registry.issue()
        etree.SubElement(root, "fecha").text = datetime.now(timezone.utc).isoformat()
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def validate_signed_seed(self, signed_xml: str) -> Dict[str, Any]:
        """
        Valida una semilla firmada por la contraparte

        Returns:
            {"token": ..., "expira": ..., "expedido": ...}

        Raises:
            PeerAuthError: XML inválido, firma inválida, semilla desconocida o vencida
        """
        try:
            root = parse_xml(signed_xml, "Semilla firmada")
        except TransformError as exc:
            raise PeerAuthError(exc.message) from exc
        if localname(root.tag) != DocumentType.SEED.value:
            raise PeerAuthError(f"Se esperaba SemillaModel, se recibió <{localname(root.tag)}>")

        valor = find_text(root, "valor")
        if not valor:
            raise PeerAuthError("La semilla no contiene <valor>")

        try:
            certificate = self.signer.verify(signed_xml)
        except SigningError as exc:
            logger.warning("Semilla con firma inválida: %s", exc.message)
            raise PeerAuthError(exc.message) from exc

        if not self.registry.consume(valor):
            raise PeerAuthError("Semilla desconocida, ya utilizada o vencida")

        issued = datetime.now(timezone.utc)
        expires = issued + timedelta(seconds=self.config.token_ttl_seconds)
        subject = certificate.subject.rfc4514_string()
        token = jwt.encode(
            {"sub": subject, "iat": issued, "exp": expires, "jti": uuid.uuid4().hex},
            self.config.token_secret,
            algorithm=TOKEN_ALGORITHM,
        )
        logger.info(
            "Token emitido para %s (emisor %s, serial %x, expira %s)",
            subject,
            certificate.issuer.rfc4514_string(),
            certificate.serial_number,
            expires.isoformat(),
        )
        return {"token": token, "expira": expires.isoformat(), "expedido": issued.isoformat()}

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Decodifica el token Bearer; PeerAuthError si es inválido o venció"""
        if not token:
            raise PeerAuthError("Token requerido")
        try:
            return jwt.decode(token, self.config.token_secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise PeerAuthError("Token vencido") from exc
        except jwt.PyJWTError as exc:
            raise PeerAuthError(f"Token inválido: {exc}") from exc
