import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from app.dgii_client.config import DgiiConfig, configure_logging, get_dgii_config
from app.dgii_client.credentials import CredentialResolver
from app.dgii_client.exceptions import DgiiException, DgiiValidationError
from app.dgii_client.models import DocumentType, FiscalDocument, Invoice

from .core_send import run_operation
from .dispatcher import ProtocolDispatcher


def _read_text(path: Path) -> str:
    p = Path(path).expanduser()
    if not p.exists() or not p.is_file():
        raise SystemExit(f"ERROR: archivo no existe o no es archivo: {p}")
    return p.read_text(encoding="utf-8")


def _load_document(path: Path) -> FiscalDocument:
    payload = json.loads(_read_text(path))
    if isinstance(payload, dict) and len(payload) == 1:
        return FiscalDocument.from_payload(payload)
    # JSON de ECF sin nodo raíz
    return Invoice(payload)


def _print(result: Dict[str, Any]) -> int:
    text = json.dumps(result, ensure_ascii=False, indent=2, default=str)
    print(text)
    return 0 if result.get("success") else 1


def _send(dispatcher: ProtocolDispatcher, document: FiscalDocument, rnc: Optional[str], env: Optional[str]):
    senders = {
        DocumentType.ECF: dispatcher.send_invoice,
        DocumentType.RFCE: dispatcher.send_summary,
        DocumentType.ACECF: dispatcher.send_commercial_approval,
        DocumentType.ANECF: dispatcher.void_sequence,
    }
    sender = senders.get(document.document_type)
    if sender is None:
        # ARECF y SemillaModel se devuelven a la contraparte, no van a DGII
        raise DgiiValidationError(
            f"{document.document_type.value} no se envía a DGII", field="documentType"
        )
    return sender(document, rnc=rnc, environment=env)


def main(argv=None, config: Optional[DgiiConfig] = None, dispatcher: Optional[ProtocolDispatcher] = None) -> int:
    parser = argparse.ArgumentParser(prog="dgii_gateway")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_sign = sub.add_parser("sign", help="Firmar un XML (ECF, RFCE, ARECF, ACECF, ANECF)")
    p_sign.add_argument("xml_file", type=Path)
    p_sign.add_argument("--type", dest="document_type", default=None)
    p_sign.add_argument("--rnc", default=None)
    p_sign.add_argument("--out", type=Path, default=None, help="Escribir el XML firmado en este archivo")

    p_send = sub.add_parser("send", help="Firmar y enviar un documento JSON")
    p_send.add_argument("json_file", type=Path)
    p_send.add_argument("--rnc", default=None)
    p_send.add_argument("--env", default=None, choices=list(DgiiConfig.ENVIRONMENTS))

    p_status = sub.add_parser("status", help="Consultar resultado por trackId")
    p_status.add_argument("track_id")
    p_status.add_argument("--rnc", default=None)
    p_status.add_argument("--env", default=None, choices=list(DgiiConfig.ENVIRONMENTS))

    p_qr = sub.add_parser("qr", help="Generar URL de consulta (QR)")
    p_qr.add_argument("--rnc-emisor", required=True)
    p_qr.add_argument("--encf", required=True)
    p_qr.add_argument("--monto-total", required=True)
    p_qr.add_argument("--codigo-seguridad", required=True)
    p_qr.add_argument("--rnc-comprador", default=None)
    p_qr.add_argument("--fecha-emision", default=None)
    p_qr.add_argument("--fecha-firma", default=None)
    p_qr.add_argument("--env", default=None, choices=list(DgiiConfig.ENVIRONMENTS))

    p_cert = sub.add_parser("cert-info", help="Datos del certificado")
    p_cert.add_argument("--rnc", default=None)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    config = config or get_dgii_config()
    dispatcher = dispatcher or ProtocolDispatcher(config)

    if args.cmd == "sign":
        xml = _read_text(args.xml_file)
        result = run_operation(dispatcher.sign_only, xml, args.document_type, args.rnc)
        if result.get("success") and args.out is not None:
            Path(args.out).expanduser().write_text(result["data"]["signedXml"], encoding="utf-8")
        return _print(result)

    if args.cmd == "send":
        try:
            document = _load_document(args.json_file)
        except (ValueError, DgiiException) as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        return _print(run_operation(_send, dispatcher, document, args.rnc, args.env))

    if args.cmd == "status":
        return _print(run_operation(dispatcher.get_status, args.track_id, rnc=args.rnc, environment=args.env))

    if args.cmd == "qr":
        return _print(
            run_operation(
                dispatcher.generate_qr,
                rnc_emisor=args.rnc_emisor,
                encf=args.encf,
                monto_total=args.monto_total,
                security_code=args.codigo_seguridad,
                rnc_comprador=args.rnc_comprador,
                fecha_emision=args.fecha_emision,
                fecha_firma=args.fecha_firma,
                environment=args.env,
            )
        )

    if args.cmd == "cert-info":
        resolver: CredentialResolver = dispatcher.resolver
        return _print(run_operation(resolver.certificate_info, args.rnc))

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
