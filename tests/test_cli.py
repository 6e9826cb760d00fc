from pathlib import Path
import json
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dgii_gateway.api import main

from _ecf_samples import RNC_EMISOR, ecf_payload, ecf_xml


def _run(capsys, argv, dgii_config, dispatcher):
    code = main(argv, config=dgii_config, dispatcher=dispatcher)
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def test_sign_writes_signed_file(tmp_path, capsys, dgii_config, dispatcher):
    src = tmp_path / "ecf.xml"
    src.write_text(ecf_xml(), encoding="utf-8")
    out = tmp_path / "ecf_firmado.xml"

    code, result = _run(capsys, ["sign", str(src), "--rnc", RNC_EMISOR, "--out", str(out)], dgii_config, dispatcher)

    assert code == 0
    assert result["success"] is True
    assert result["data"]["documentType"] == "ECF"
    assert "<Signature" in out.read_text(encoding="utf-8")


def test_sign_with_mismatched_type_fails(tmp_path, capsys, dgii_config, dispatcher):
    src = tmp_path / "ecf.xml"
    src.write_text(ecf_xml(), encoding="utf-8")

    code, result = _run(capsys, ["sign", str(src), "--type", "RFCE", "--rnc", RNC_EMISOR], dgii_config, dispatcher)

    assert code == 1
    assert result["success"] is False
    assert result["error_type"] == "SigningError"


def test_send_json_document(tmp_path, capsys, dgii_config, dispatcher, dgii_calls):
    src = tmp_path / "ecf.json"
    src.write_text(json.dumps({"ECF": ecf_payload()}), encoding="utf-8")

    code, result = _run(capsys, ["send", str(src), "--rnc", RNC_EMISOR, "--env", "test"], dgii_config, dispatcher)

    assert code == 0
    assert result["data"]["trackId"] == "a1b2c3d4-track"
    assert [c["op"] for c in dgii_calls] == ["authenticate", "send_electronic_document"]


def test_status(capsys, dgii_config, dispatcher):
    code, result = _run(capsys, ["status", "a1b2c3d4-track"], dgii_config, dispatcher)

    assert code == 0
    assert result["data"]["trackId"] == "a1b2c3d4-track"


def test_qr(capsys, dgii_config, dispatcher):
    code, result = _run(
        capsys,
        [
            "qr",
            "--rnc-emisor", RNC_EMISOR,
            "--encf", "E310005000201",
            "--monto-total", "11800.00",
            "--codigo-seguridad", "aB3xYz",
            "--fecha-emision", "2025-01-15",
        ],
        dgii_config,
        dispatcher,
    )

    assert code == 0
    assert "ConsultaTimbre?" in result["data"]
    assert "FechaEmision=15-01-2025" in result["data"]


def test_cert_info_for_unknown_rnc_fails(capsys, dgii_config, dispatcher):
    code, result = _run(capsys, ["cert-info", "--rnc", "101010101"], dgii_config, dispatcher)

    assert code == 1
    assert result["code"] == "CERT_NOT_FOUND"


def test_send_acknowledgment_is_not_submitted(tmp_path, capsys, dgii_config, dispatcher, dgii_calls):
    src = tmp_path / "arecf.json"
    src.write_text(
        json.dumps(
            {
                "ARECF": {
                    "DetalleAcusedeRecibo": {
                        "RNCEmisor": RNC_EMISOR,
                        "RNCComprador": "131880681",
                        "eNCF": "E310005000201",
                        "Estado": "0",
                    }
                }
            }
        ),
        encoding="utf-8",
    )

    code, result = _run(capsys, ["send", str(src), "--rnc", RNC_EMISOR], dgii_config, dispatcher)

    assert code == 1
    assert result["error_type"] == "DgiiValidationError"
    assert dgii_calls == []
