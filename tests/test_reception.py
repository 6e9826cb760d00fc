from pathlib import Path
import threading
import sys

import pytest
import requests
from lxml import etree

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dgii_client.exceptions import DgiiValidationError, MalformedReception
from app.dgii_client.models import CommercialApproval, DocumentType
from app.dgii_client.notifier import ReceptionNotifier
from app.dgii_client.utils import find_text
from app.dgii_client.xml_signer import XmlSigner
from app.dgii_client.xml_transform import XSD_NS, XSI_NS
from dgii_gateway.reception import ReceptionPipeline, extract_payload

from _ecf_samples import RNC_COMPRADOR, RNC_EMISOR, assert_rsa_signature_valid, ecf_xml, multipart_body


class _SpySigner(XmlSigner):
    def __init__(self):
        super().__init__()
        self.signed = []

    def sign(self, xml_content, document_type, credential):
        self.signed.append(document_type)
        return super().sign(xml_content, document_type, credential)


class _FailingSession:
    def __init__(self):
        self.posts = 0
        self.closed = False

    def post(self, *args, **kwargs):
        self.posts += 1
        raise requests.exceptions.ConnectionError("webhook caído")

    def close(self):
        self.closed = True


class _RecordingSession:
    def __init__(self):
        self.payloads = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None):
        self.payloads.append({"url": url, "json": json, "headers": headers})
        return type("Resp", (), {"status_code": 200, "text": "ok"})()

    def close(self):
        self.closed = True


def _pipeline(dgii_config, dispatcher, signer=None, notifier=None) -> ReceptionPipeline:
    return ReceptionPipeline(
        dgii_config,
        resolver=dispatcher.resolver,
        signer=signer or dispatcher.signer,
        bridge=dispatcher.bridge,
        notifier=notifier or ReceptionNotifier(None),
    )


def test_received_ecf_gets_signed_acknowledgment(reception):
    result = reception.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR)

    root = etree.fromstring(result.signed_ack.encode("utf-8"))
    assert root.tag == "ARECF"
    assert root.nsmap.get("xsi") == XSI_NS
    assert root.nsmap.get("xsd") == XSD_NS
    assert find_text(root, "Estado") == "0"
    assert find_text(root, "CodigoMotivoNoRecibido") is None
    assert find_text(root, "RNCComprador") == RNC_COMPRADOR
    assert result.ack_data["estado"] == "0"
    assert result.ack_data["eNCF"] == "E310005000201"
    assert result.ack_data["buyer_mismatch"] is False
    assert result.ack_data["signature_valid"] is None
    assert result.context.stage.value == "acknowledged"


def test_acknowledgment_signature_verifies(reception, credential):
    result = reception.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR)

    XmlSigner().verify(result.signed_ack)
    assert_rsa_signature_valid(result.signed_ack, credential.certificate)


def test_receiver_defaults_to_buyer_in_document(reception):
    result = reception.process(ecf_xml())

    assert result.ack_data["rncComprador"] == RNC_COMPRADOR


def test_not_received_requires_reason(reception):
    with pytest.raises(DgiiValidationError) as excinfo:
        reception.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR, accepted=False)

    assert excinfo.value.field == "CodigoMotivoNoRecibido"


def test_not_received_with_reason(reception):
    result = reception.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR, accepted=False, reject_reason="3")

    root = etree.fromstring(result.signed_ack.encode("utf-8"))
    assert find_text(root, "Estado") == "1"
    assert find_text(root, "CodigoMotivoNoRecibido") == "3"


def test_invalid_reason_code_is_rejected(reception):
    with pytest.raises(DgiiValidationError):
        reception.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR, accepted=False, reject_reason="9")


def test_buyer_mismatch_is_reported(reception):
    result = reception.process(ecf_xml(), receiver_rnc="101010101")

    assert result.ack_data["buyer_mismatch"] is True
    assert result.ack_data["estado"] == "0"


def test_buyer_mismatch_can_reject_with_reason_four(reception):
    result = reception.process(ecf_xml(), receiver_rnc="101010101", reject_on_buyer_mismatch=True)

    assert result.ack_data["estado"] == "1"
    assert result.ack_data["codigoMotivoNoRecibido"] == "4"


@pytest.mark.parametrize(
    "raw",
    ["", "esto no es xml", "<ECF><Encabezado>", "<RFCE><Encabezado/></RFCE>", "<ECF><Encabezado/></ECF>"],
)
def test_malformed_reception_signs_nothing(dgii_config, dispatcher, raw):
    spy = _SpySigner()
    pipeline = _pipeline(dgii_config, dispatcher, signer=spy)

    with pytest.raises(MalformedReception):
        pipeline.process_request(raw, "application/xml")

    assert spy.signed == []


def test_multipart_reception_uses_xml_part(reception):
    body, content_type = multipart_body(ecf_xml())

    result = reception.process_request(body, content_type, receiver_rnc=RNC_COMPRADOR)

    assert result.ack_data["eNCF"] == "E310005000201"


def test_extract_payload_prefers_part_named_xml():
    boundary = "b0und4ry"
    body = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="otro"\r\n\r\n'
        "<Otro/>\r\n"
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="xml"; filename="e.xml"\r\n'
        "Content-Type: text/xml\r\n\r\n"
        "<ECF><x/></ECF>\r\n"
        f"--{boundary}--\r\n"
    ).encode("utf-8")

    assert extract_payload(body, f"multipart/form-data; boundary={boundary}") == "<ECF><x/></ECF>"


def test_extract_payload_reads_plain_form_field_and_keeps_utf8():
    xml = "<ECF><RazonSocialEmisor>Compañía Ñandú SRL</RazonSocialEmisor></ECF>"
    body = (
        "--fr0ntera\r\n"
        'Content-Disposition: form-data; name="documento"\r\n\r\n'
        f"{xml}\r\n"
        "--fr0ntera--\r\n"
    ).encode("utf-8")

    assert extract_payload(body, "multipart/form-data; boundary=fr0ntera") == xml


def test_extract_payload_multipart_without_boundary_is_malformed():
    body, _ = multipart_body(ecf_xml())

    with pytest.raises(MalformedReception):
        extract_payload(body, "multipart/form-data")


def test_extract_payload_from_json_field():
    assert extract_payload(b'{"ecfXml": "<ECF/>"}', "application/json") == "<ECF/>"
    assert extract_payload({"xml": " <ECF/> "}) == "<ECF/>"

    with pytest.raises(MalformedReception):
        extract_payload({"ecf": "<ECF/>"})
    with pytest.raises(MalformedReception):
        extract_payload(b"{no es json", "application/json")


def test_signed_incoming_ecf_reports_valid_signature(reception, credential):
    signed = XmlSigner().sign(ecf_xml(), DocumentType.ECF, credential)

    result = reception.process(signed.signed_xml, receiver_rnc=RNC_COMPRADOR)

    assert result.ack_data["signature_valid"] is True


def test_tampered_incoming_ecf_is_still_acknowledged(reception, credential):
    signed = XmlSigner().sign(ecf_xml(), DocumentType.ECF, credential)
    tampered = signed.signed_xml.replace("11800.00", "1.00")

    result = reception.process(tampered, receiver_rnc=RNC_COMPRADOR)

    assert result.ack_data["signature_valid"] is False
    assert result.ack_data["estado"] == "0"


def test_notifier_failure_does_not_break_reception(dgii_config, dispatcher):
    session = _FailingSession()
    notifier = ReceptionNotifier("https://odoo.example/dgii/webhook", session_factory=lambda: session)
    pipeline = _pipeline(dgii_config, dispatcher, notifier=notifier)

    result = pipeline.process(ecf_xml(), receiver_rnc=RNC_COMPRADOR)
    for thread in [t for t in threading.enumerate() if t.name == "reception-notifier"]:
        thread.join(timeout=5)

    assert result.ack_data["estado"] == "0"
    assert session.posts == 1
    assert session.closed


def test_notifier_delivers_acknowledgment(dgii_config, dispatcher):
    session = _RecordingSession()
    notifier = ReceptionNotifier("https://odoo.example/dgii/webhook", api_key="k3y", session_factory=lambda: session)

    thread = notifier.notify({"event": "ecf_recibido"})
    thread.join(timeout=5)

    assert session.payloads[0]["json"] == {"event": "ecf_recibido"}
    assert session.payloads[0]["headers"]["X-API-Key"] == "k3y"
    assert ReceptionNotifier(None).notify({"event": "x"}) is None


def test_each_delivery_uses_its_own_session():
    sessions = []

    def factory():
        session = _RecordingSession()
        sessions.append(session)
        return session

    notifier = ReceptionNotifier("https://odoo.example/dgii/webhook", session_factory=factory)
    threads = [notifier.notify({"n": n}) for n in range(3)]
    for thread in threads:
        thread.join(timeout=5)

    assert len(sessions) == 3
    assert all(s.closed and len(s.payloads) == 1 for s in sessions)
    assert sorted(s.payloads[0]["json"]["n"] for s in sessions) == [0, 1, 2]


def test_receive_commercial_approval(reception, credential, dispatcher):
    approval = CommercialApproval.build(
        rnc_emisor=RNC_EMISOR,
        encf="E310005000201",
        fecha_emision="2025-01-15",
        monto_total="11800.00",
        rnc_comprador=RNC_COMPRADOR,
        state="1",
    )
    signed = XmlSigner().sign(dispatcher.bridge.to_xml(approval), DocumentType.ACECF, credential)

    summary = reception.receive_commercial_approval(signed.signed_xml, "application/xml")

    assert summary["eNCF"] == "E310005000201"
    assert summary["estado"] == "1"
    assert summary["fechaEmision"] == "15-01-2025"
    assert summary["signature_valid"] is True


def test_receive_commercial_approval_rejects_other_documents(reception):
    with pytest.raises(MalformedReception):
        reception.receive_commercial_approval(ecf_xml(), "application/xml")
