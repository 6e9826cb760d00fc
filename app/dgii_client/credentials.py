"""
Resolución de credenciales de firma (PKCS#12) por RNC

Cada RNC tiene su propio certificado P12 en el directorio de certificados
(<dir>/<rnc>.p12). Sin RNC se usa el certificado por defecto, que puede
venir en Base64 (CERTIFICATE_BASE64, despliegues cloud) o en CERTIFICATE_PATH.

Las credenciales se cargan una sola vez por proceso y quedan en caché
hasta que se descartan explícitamente (evict / evict_all).
"""
import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import DgiiConfig, get_dgii_config
from .exceptions import CredentialLoadError, CredentialNotFound, DgiiValidationError

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"


@dataclass(frozen=True, eq=False)
class Credential:
    """Clave privada + certificado X.509 de un contribuyente"""
    rnc: Optional[str]
    private_key: Any
    certificate: x509.Certificate
    additional_certificates: Tuple[x509.Certificate, ...] = ()

    @property
    def cache_key(self) -> str:
        return self.rnc or DEFAULT_KEY

    @property
    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


class CredentialSource(Protocol):
    def load(self, rnc: Optional[str]) -> Credential:
        ...


def normalize_rnc(rnc: Optional[str]) -> Optional[str]:
    """
    Normaliza el RNC/cédula (solo dígitos). None o vacío = certificado por defecto.

    El RNC forma parte del nombre de archivo, por eso se rechaza cualquier
    otro carácter.
    """
    if rnc is None:
        return None
    value = str(rnc).strip()
    if not value:
        return None
    if not value.isdigit():
        raise DgiiValidationError(f"RNC inválido: {rnc!r}", field="rnc")
    return value


def load_pkcs12_credential(data: bytes, password: str, rnc: Optional[str]) -> Credential:
    """
    Abre un contenedor PKCS#12 en memoria

    Raises:
        CredentialLoadError: contraseña incorrecta, contenedor corrupto o sin clave/certificado
    """
    try:
        private_key, certificate, additional = pkcs12.load_key_and_certificates(
            data,
            password.encode() if password else None,
        )
    except (ValueError, TypeError) as exc:
        raise CredentialLoadError(rnc, str(exc)) from exc

    if private_key is None:
        raise CredentialLoadError(rnc, "No se pudo extraer la clave privada del certificado")
    if certificate is None:
        raise CredentialLoadError(rnc, "No se pudo extraer el certificado del archivo")

    return Credential(
        rnc=rnc,
        private_key=private_key,
        certificate=certificate,
        additional_certificates=tuple(additional or ()),
    )


class P12CredentialSource:
    """Lee certificados P12 desde disco (o Base64 para el certificado por defecto)"""

    def __init__(self, config: Optional[DgiiConfig] = None):
        self.config = config or get_dgii_config()

    def path_for(self, rnc: Optional[str]) -> Path:
        if rnc:
            return self.config.certificates_dir / f"{rnc}.p12"
        return Path(self.config.certificate_path).expanduser()

    def load(self, rnc: Optional[str]) -> Credential:
        password = self.config.certificate_password

        if not rnc and self.config.certificate_base64:
            logger.info("Cargando certificado por defecto desde CERTIFICATE_BASE64")
            try:
                data = base64.b64decode(self.config.certificate_base64, validate=False)
            except (binascii.Error, ValueError) as exc:
                raise CredentialLoadError(rnc, f"CERTIFICATE_BASE64 inválido: {exc}") from exc
            return load_pkcs12_credential(data, password, rnc)

        path = self.path_for(rnc)
        if not path.is_file():
            raise CredentialNotFound(rnc, str(path))

        logger.info("Cargando certificado %s para RNC %s", path, rnc or DEFAULT_KEY)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise CredentialLoadError(rnc, f"No se pudo leer {path}: {exc}") from exc
        return load_pkcs12_credential(data, password, rnc)


class CredentialResolver:
    """Caché de credenciales por RNC, segura para uso concurrente"""

    def __init__(self, config: Optional[DgiiConfig] = None, source: Optional[CredentialSource] = None):
        self.config = config or get_dgii_config()
        self.source = source or P12CredentialSource(self.config)
        self._cache: Dict[str, Credential] = {}
        self._lock = threading.Lock()

    def resolve(self, rnc: Optional[str] = None) -> Credential:
        """
        Obtiene la credencial del RNC (o la por defecto si rnc es None)

        Un acierto de caché devuelve la misma instancia en memoria.

        Raises:
            CredentialNotFound: no hay certificado para ese RNC
            CredentialLoadError: el certificado no se pudo abrir
        """
        rnc = normalize_rnc(rnc)
        key = rnc or DEFAULT_KEY
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            credential = self.source.load(rnc)
            self._cache[key] = credential
        logger.debug("Credencial %s cargada en caché", key)
        return credential

    def evict(self, rnc: Optional[str] = None) -> bool:
        """Descarta la credencial en caché (p. ej. tras rotar el certificado)"""
        key = normalize_rnc(rnc) or DEFAULT_KEY
        with self._lock:
            removed = self._cache.pop(key, None) is not None
        if removed:
            logger.info("Credencial %s descartada de la caché", key)
        return removed

    def evict_all(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        return count

    def cached_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._cache)

    def certificate_info(self, rnc: Optional[str] = None) -> Dict[str, Any]:
        """Datos públicos del certificado (sujeto, emisor, vigencia, huella)"""
        credential = self.resolve(rnc)
        cert = credential.certificate
        fingerprint = cert.fingerprint(hashes.SHA256()).hex().upper()
        key_size = getattr(credential.private_key, "key_size", None)
        return {
            "rnc": credential.rnc,
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serialNumber": format(cert.serial_number, "X"),
            "validFrom": cert.not_valid_before_utc.isoformat(),
            "validTo": cert.not_valid_after_utc.isoformat(),
            "fingerprintSha256": ":".join(fingerprint[i:i + 2] for i in range(0, len(fingerprint), 2)),
            "keySize": key_size,
        }
