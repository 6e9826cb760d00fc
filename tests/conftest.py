from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dgii_client.config import DgiiConfig
from app.dgii_client.credentials import Credential, CredentialResolver
from app.dgii_client.notifier import ReceptionNotifier
from dgii_gateway.dispatcher import ProtocolDispatcher
from dgii_gateway.reception import ReceptionPipeline

from _ecf_samples import API_KEY, P12_PASSWORD, RNC_EMISOR


@pytest.fixture(scope="session")
def signing_material():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "DO"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Contribuyente de Prueba SRL"),
            x509.NameAttribute(NameOID.COMMON_NAME, "Firma de Prueba"),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def p12_bytes(signing_material) -> bytes:
    key, cert = signing_material
    return pkcs12.serialize_key_and_certificates(
        name=b"dgii-test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(P12_PASSWORD.encode()),
    )


@pytest.fixture
def credential(signing_material) -> Credential:
    key, cert = signing_material
    return Credential(rnc=RNC_EMISOR, private_key=key, certificate=cert)


@pytest.fixture
def cert_dir(tmp_path: Path, p12_bytes: bytes) -> Path:
    certs = tmp_path / "certificates"
    certs.mkdir()
    (certs / "certificado.p12").write_bytes(p12_bytes)
    (certs / f"{RNC_EMISOR}.p12").write_bytes(p12_bytes)
    return certs


@pytest.fixture
def dgii_config(monkeypatch, cert_dir: Path) -> DgiiConfig:
    monkeypatch.setenv("DGII_ENVIRONMENT", "test")
    monkeypatch.setenv("CERTIFICATE_PATH", str(cert_dir / "certificado.p12"))
    monkeypatch.setenv("CERTIFICATE_PASSWORD", P12_PASSWORD)
    monkeypatch.setenv("CERTIFICATE_BASE64", "")
    monkeypatch.setenv("API_KEY", API_KEY)
    monkeypatch.setenv("DGII_TOKEN_SECRET", "token-secret-de-prueba")
    monkeypatch.setenv("RNC_RECEPTOR", "")
    monkeypatch.setenv("ODOO_WEBHOOK_URL", "")
    monkeypatch.setenv("DGII_REQUIRE_PEER_TOKEN", "false")
    monkeypatch.delenv("DGII_SUMMARY_THRESHOLD", raising=False)
    return DgiiConfig()


class CountingSource:
    """CredentialSource en memoria que cuenta las cargas"""

    def __init__(self, credential: Credential):
        self.credential = credential
        self.loads: List[Optional[str]] = []

    def load(self, rnc):
        self.loads.append(rnc)
        return Credential(
            rnc=rnc,
            private_key=self.credential.private_key,
            certificate=self.credential.certificate,
        )


@pytest.fixture
def counting_source(credential) -> CountingSource:
    return CountingSource(credential)


class FakeDgiiClient:
    """Sustituye a DgiiClient: registra llamadas y responde como DGII"""

    def __init__(self, credential: Credential, environment: str, calls: List[Dict[str, Any]]):
        self.credential = credential
        self.environment = environment
        self.calls = calls
        self.token: Optional[str] = None

    def _record(self, op: str, **kwargs: Any) -> None:
        self.calls.append({"op": op, "env": self.environment, "rnc": self.credential.rnc, **kwargs})

    def authenticate(self):
        self._record("authenticate")
        self.token = "token-dgii"
        return {"token": self.token, "expira": "2026-01-01T00:00:00", "expedido": "2025-12-31T23:00:00"}

    def send_electronic_document(self, signed_xml, file_name):
        self._record("send_electronic_document", signed_xml=signed_xml, file_name=file_name)
        return {"trackId": "a1b2c3d4-track", "error": None, "mensaje": None}

    def send_summary(self, signed_xml, file_name):
        self._record("send_summary", signed_xml=signed_xml, file_name=file_name)
        return {"codigo": 1, "estado": "Aceptado", "mensajes": [], "encf": None, "secuenciaUtilizada": True}

    def send_commercial_approval(self, signed_xml, file_name):
        self._record("send_commercial_approval", signed_xml=signed_xml, file_name=file_name)
        return {"mensaje": ["Aprobación comercial recibida"], "estado": "Aceptado"}

    def void_sequence(self, signed_xml, file_name):
        self._record("void_sequence", signed_xml=signed_xml, file_name=file_name)
        return {"rnc": self.credential.rnc, "codigo": "0", "nombre": "Aceptado", "mensajes": []}

    def status_by_track(self, track_id):
        self._record("status_by_track", track_id=track_id)
        return {"trackId": track_id, "codigo": "1", "estado": "Aceptado", "mensajes": []}

    def track_statuses(self, rnc_emisor, encf):
        self._record("track_statuses", rnc_emisor=rnc_emisor, encf=encf)
        return [{"trackId": "a1b2c3d4-track", "estado": "Aceptado"}]

    def inquiry_status(self, rnc_emisor, encf, rnc_comprador=None, security_code=None):
        self._record("inquiry_status", rnc_emisor=rnc_emisor, encf=encf, security_code=security_code)
        return {"codigoEstado": 1, "estado": "Aceptado"}

    def customer_directory(self, rnc):
        self._record("customer_directory", lookup=rnc)
        return [{"nombre": "Receptor SRL", "urlRecepcion": "https://receptor.example/fe/recepcion/api/ecf"}]


@pytest.fixture
def dgii_calls() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def client_factory(dgii_calls):
    def factory(credential, environment):
        return FakeDgiiClient(credential, environment, dgii_calls)

    return factory


@pytest.fixture
def dispatcher(dgii_config, client_factory) -> ProtocolDispatcher:
    return ProtocolDispatcher(dgii_config, client_factory=client_factory)


@pytest.fixture
def reception(dgii_config, dispatcher) -> ReceptionPipeline:
    return ReceptionPipeline(
        dgii_config,
        resolver=dispatcher.resolver,
        signer=dispatcher.signer,
        bridge=dispatcher.bridge,
        notifier=ReceptionNotifier(None),
    )


@pytest.fixture
def resolver(dgii_config) -> CredentialResolver:
    return CredentialResolver(dgii_config)
