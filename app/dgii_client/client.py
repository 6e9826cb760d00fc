"""
Cliente HTTP para los servicios REST de DGII (Emisor electrónico)

Flujo:
1. GET semilla -> firmar SemillaModel -> POST validarsemilla -> token Bearer
2. POST del XML firmado como multipart (campo "xml", archivo <RNC><eNCF>.xml)
3. Consultas GET con el mismo token

Las consultas se reintentan con backoff ante errores de red; los envíos no,
para no duplicar un documento en DGII.
"""
import logging
import random
import time
from typing import Any, Dict, Optional

import requests
from requests import Session
from requests.adapters import HTTPAdapter

from .config import DgiiConfig, normalize_environment
from .credentials import Credential
from .exceptions import SubmissionError
from .models import DocumentType
from .xml_signer import XmlSigner

logger = logging.getLogger(__name__)


class DgiiClient:
    """Cliente DGII para un contribuyente (credencial) y un ambiente"""

    def __init__(
        self,
        config: DgiiConfig,
        credential: Credential,
        signer: Optional[XmlSigner] = None,
        environment: Optional[str] = None,
        session: Optional[Session] = None,
    ):
        self.config = config
        self.credential = credential
        self.signer = signer or XmlSigner()
        self.environment = normalize_environment(environment, default=config.env)
        self.session = session or self._create_session()
        self.token: Optional[str] = None
        self.token_expires: Optional[str] = None

    def _create_session(self) -> Session:
        session = Session()
        session.verify = True
        session.mount("https://", HTTPAdapter())
        session.headers.update({"Accept": "application/json"})
        return session

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def url(self, service_key: str) -> str:
        return self.config.get_service_url(service_key, self.environment)

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _request(self, method: str, service_key: str, operation: str, retry: bool = False, **kwargs) -> Any:
        url = self.url(service_key)
        max_attempts = (self.config.max_retries + 1) if retry else 1
        resp = None
        for attempt in range(1, max_attempts + 1):
            try:
                logger.debug("%s %s (%s, intento %d/%d)", method, url, operation, attempt, max_attempts)
                resp = self.session.request(method, url, timeout=self.config.request_timeout, **kwargs)
                break
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt < max_attempts:
                    delay = min(self.config.backoff_base * (2 ** (attempt - 1)), self.config.backoff_max)
                    delay += delay * 0.25 * (random.random() * 2 - 1)
                    logger.warning(
                        "Error en %s (intento %d/%d): %s. Reintentando en %.2fs...",
                        operation, attempt, max_attempts, e, delay,
                    )
                    time.sleep(delay)
                    continue
                if isinstance(e, requests.exceptions.Timeout):
                    raise SubmissionError(
                        f"Timeout al contactar DGII ({operation}, {self.config.request_timeout}s)",
                        operation=operation,
                    ) from e
                raise SubmissionError(f"Error de conexión con DGII ({operation}): {e}", operation=operation) from e
            except requests.exceptions.RequestException as e:
                raise SubmissionError(f"Error en la petición a DGII ({operation}): {e}", operation=operation) from e

        body = self._decode(resp)
        if resp.status_code >= 400:
            logger.error("DGII %s respondió HTTP %s: %s", operation, resp.status_code, body)
            raise SubmissionError(
                f"DGII {operation} respondió HTTP {resp.status_code}",
                response=body,
                http_status=resp.status_code,
                operation=operation,
            )
        return body

    def _auth_headers(self) -> Dict[str, str]:
        if not self.token:
            raise SubmissionError("No autenticado con DGII: llamar authenticate() primero", operation="autenticacion")
        return {"Authorization": f"Bearer {self.token}"}

    # ------------------------------------------------------------------
    # Autenticación
    # ------------------------------------------------------------------
    def get_seed(self) -> str:
        """Descarga la semilla (XML SemillaModel) a firmar"""
        seed = self._request("GET", "semilla", "semilla", retry=True, headers={"Accept": "application/xml"})
        if not isinstance(seed, str) or not seed.strip():
            raise SubmissionError("DGII devolvió una semilla vacía", response=seed, operation="semilla")
        return seed

    def authenticate(self) -> Dict[str, Any]:
        """
        Obtiene el token Bearer firmando la semilla con la credencial del cliente

        Returns:
            {"token": ..., "expira": ..., "expedido": ...}
        """
        seed = self.get_seed()
        signed = self.signer.sign(seed, DocumentType.SEED, self.credential)
        data = self._request(
            "POST",
            "validar_semilla",
            "autenticacion",
            files={"xml": ("semilla.xml", signed.signed_xml.encode("utf-8"), "text/xml")},
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise SubmissionError("DGII no devolvió token", response=data, operation="autenticacion")
        self.token = token
        self.token_expires = data.get("expira")
        logger.info(
            "Autenticado con DGII (%s) para RNC %s; expira %s",
            self.environment, self.credential.rnc or "default", self.token_expires,
        )
        return data

    # ------------------------------------------------------------------
    # Envíos
    # ------------------------------------------------------------------
    def _send_signed(self, service_key: str, operation: str, signed_xml: str, file_name: str) -> Any:
        return self._request(
            "POST",
            service_key,
            operation,
            headers=self._auth_headers(),
            files={"xml": (file_name, signed_xml.encode("utf-8"), "text/xml")},
        )

    def send_electronic_document(self, signed_xml: str, file_name: str) -> Any:
        """Envía un ECF firmado a recepción; responde con trackId"""
        return self._send_signed("recepcion", "recepcion", signed_xml, file_name)

    def send_summary(self, signed_xml: str, file_name: str) -> Any:
        """Envía un RFCE firmado (host fc); responde con el estado directamente"""
        return self._send_signed("recepcion_fc", "recepcion_fc", signed_xml, file_name)

    def send_commercial_approval(self, signed_xml: str, file_name: str) -> Any:
        return self._send_signed("aprobacion_comercial", "aprobacion_comercial", signed_xml, file_name)

    def void_sequence(self, signed_xml: str, file_name: str) -> Any:
        return self._send_signed("anulacion", "anulacion", signed_xml, file_name)

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------
    def _query(self, service_key: str, params: Dict[str, Any]) -> Any:
        clean = {k: v for k, v in params.items() if v not in (None, "")}
        return self._request("GET", service_key, service_key, retry=True, headers=self._auth_headers(), params=clean)

    def status_by_track(self, track_id: str) -> Any:
        return self._query("consulta_resultado", {"trackid": track_id})

    def track_statuses(self, rnc_emisor: str, encf: str) -> Any:
        return self._query("consulta_trackids", {"rncemisor": rnc_emisor, "encf": encf})

    def inquiry_status(
        self,
        rnc_emisor: str,
        encf: str,
        rnc_comprador: Optional[str] = None,
        security_code: Optional[str] = None,
    ) -> Any:
        return self._query(
            "consulta_estado",
            {
                "rncemisor": rnc_emisor,
                "ncfelectronico": encf,
                "rnccomprador": rnc_comprador,
                "codigoseguridad": security_code,
            },
        )

    def customer_directory(self, rnc: str) -> Any:
        return self._query("consulta_directorio", {"RNC": rnc})
