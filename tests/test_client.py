from pathlib import Path
import sys

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dgii_client import client as client_module
from app.dgii_client.client import DgiiClient
from app.dgii_client.exceptions import SubmissionError
from app.dgii_client.xml_signer import XmlSigner

SEED_XML = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<SemillaModel xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    'xmlns:xsd="http://www.w3.org/2001/XMLSchema">'
    "<valor>bG9yZW0gaXBzdW0=</valor><fecha>2025-01-15T10:30:00</fecha></SemillaModel>"
)


class _MockResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json


class _MockSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


def _client(dgii_config, credential, responses, environment="test"):
    session = _MockSession(responses)
    return DgiiClient(dgii_config, credential, XmlSigner(), environment, session=session), session


@pytest.fixture(autouse=True)
def _no_backoff_sleep(monkeypatch):
    monkeypatch.setattr(client_module.time, "sleep", lambda _s: None)


def test_authenticate_signs_seed_and_stores_token(dgii_config, credential):
    client, session = _client(
        dgii_config,
        credential,
        [
            _MockResponse(text=SEED_XML),
            _MockResponse(json_data={"token": "tok-123", "expira": "2025-01-15T11:30:00", "expedido": "x"}),
        ],
    )

    data = client.authenticate()

    assert data["token"] == "tok-123"
    assert client.token == "tok-123"
    assert client.token_expires == "2025-01-15T11:30:00"
    seed_call, validate_call = session.calls
    assert seed_call["method"] == "GET"
    assert seed_call["url"].endswith("/testecf/autenticacion/api/autenticacion/semilla")
    assert validate_call["method"] == "POST"
    assert validate_call["url"].endswith("/testecf/autenticacion/api/autenticacion/validarsemilla")
    file_name, content, mime = validate_call["files"]["xml"]
    assert file_name == "semilla.xml"
    assert b"<Signature" in content
    assert mime == "text/xml"


def test_authenticate_without_token_fails(dgii_config, credential):
    client, _ = _client(dgii_config, credential, [_MockResponse(text=SEED_XML), _MockResponse(json_data={})])

    with pytest.raises(SubmissionError):
        client.authenticate()


def test_send_requires_authentication(dgii_config, credential):
    client, session = _client(dgii_config, credential, [])

    with pytest.raises(SubmissionError):
        client.send_electronic_document("<ECF/>", "130862346E310005000201.xml")

    assert session.calls == []


def test_send_electronic_document_posts_multipart_with_bearer(dgii_config, credential):
    client, session = _client(dgii_config, credential, [_MockResponse(json_data={"trackId": "t-1"})])
    client.token = "tok-123"

    data = client.send_electronic_document("<ECF/>", "130862346E310005000201.xml")

    assert data == {"trackId": "t-1"}
    call = session.calls[0]
    assert call["url"] == f"{dgii_config.ECF_HOST}/testecf/recepcion/api/facturaselectronicas"
    assert call["headers"]["Authorization"] == "Bearer tok-123"
    assert call["files"]["xml"][0] == "130862346E310005000201.xml"
    assert call["timeout"] == dgii_config.request_timeout


def test_summary_goes_to_consumption_host(dgii_config, credential):
    client, session = _client(dgii_config, credential, [_MockResponse(json_data={"estado": "Aceptado"})], "cert")
    client.token = "tok"

    client.send_summary("<RFCE/>", "130862346E320000000001.xml")

    assert session.calls[0]["url"] == f"{dgii_config.FC_HOST}/certecf/recepcionfc/api/recepcion/ecf"


def test_query_params_drop_empty_values(dgii_config, credential):
    client, session = _client(dgii_config, credential, [_MockResponse(json_data={"codigoEstado": 1})], "prod")
    client.token = "tok"

    client.inquiry_status("130862346", "E310005000201", None, "aB3xYz")

    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == f"{dgii_config.ECF_HOST}/ecf/consultaestado/api/consultas/estado"
    assert call["params"] == {"rncemisor": "130862346", "ncfelectronico": "E310005000201", "codigoseguridad": "aB3xYz"}


def test_status_by_track_params(dgii_config, credential):
    client, session = _client(dgii_config, credential, [_MockResponse(json_data={"estado": "Aceptado"})])
    client.token = "tok"

    assert client.status_by_track("t-1") == {"estado": "Aceptado"}
    assert session.calls[0]["params"] == {"trackid": "t-1"}
    assert session.calls[0]["url"].endswith("/testecf/consultaresultado/api/consultas/estado")


def test_http_error_keeps_status_and_body(dgii_config, credential):
    body = {"trackId": None, "error": "El archivo no es válido", "mensaje": "Error"}
    client, _ = _client(dgii_config, credential, [_MockResponse(status_code=400, json_data=body)])
    client.token = "tok"

    with pytest.raises(SubmissionError) as excinfo:
        client.send_electronic_document("<ECF/>", "a.xml")

    assert excinfo.value.http_status == 400
    assert excinfo.value.response == body
    assert excinfo.value.operation == "recepcion"


def test_non_json_error_body_is_kept_as_text(dgii_config, credential):
    client, _ = _client(dgii_config, credential, [_MockResponse(status_code=500, text="Internal Server Error")])
    client.token = "tok"

    with pytest.raises(SubmissionError) as excinfo:
        client.status_by_track("t-1")

    assert excinfo.value.response == "Internal Server Error"


def test_submission_timeout_is_not_retried(dgii_config, credential):
    client, session = _client(dgii_config, credential, [requests.exceptions.Timeout("lento")] * 5)
    client.token = "tok"

    with pytest.raises(SubmissionError, match="Timeout"):
        client.send_electronic_document("<ECF/>", "a.xml")

    assert len(session.calls) == 1


def test_query_connection_error_is_retried(dgii_config, credential):
    responses = [requests.exceptions.ConnectionError("reset")] * dgii_config.max_retries
    responses.append(_MockResponse(json_data={"estado": "Aceptado"}))
    client, session = _client(dgii_config, credential, responses)
    client.token = "tok"

    assert client.status_by_track("t-1") == {"estado": "Aceptado"}
    assert len(session.calls) == dgii_config.max_retries + 1


def test_query_gives_up_after_max_retries(dgii_config, credential):
    client, session = _client(dgii_config, credential, [requests.exceptions.ConnectionError("reset")] * 10)
    client.token = "tok"

    with pytest.raises(SubmissionError):
        client.track_statuses("130862346", "E310005000201")

    assert len(session.calls) == dgii_config.max_retries + 1
