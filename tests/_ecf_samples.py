"""Documentos de ejemplo compartidos por los tests"""
from __future__ import annotations

import base64
import hashlib
from copy import deepcopy
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

DS = "{http://www.w3.org/2000/09/xmldsig#}"

RNC_EMISOR = "130862346"
RNC_COMPRADOR = "131880681"
P12_PASSWORD = "secret"
API_KEY = "test-api-key"


def assert_rsa_signature_valid(signed_xml: str, certificate) -> None:
    """
    Comprueba la firma sin pasar por xmlsec: DigestValue contra el documento
    sin Signature y SignatureValue contra SignedInfo, ambos en C14N inclusivo
    """
    root = etree.fromstring(signed_xml.encode("utf-8"))
    signature = root.find(f"{DS}Signature")
    assert signature is not None

    unsigned = deepcopy(root)
    unsigned.remove(unsigned.find(f"{DS}Signature"))
    digest = hashlib.sha256(etree.tostring(unsigned, method="c14n", with_comments=False)).digest()
    digest_value = "".join(signature.find(f"{DS}SignedInfo/{DS}Reference/{DS}DigestValue").text.split())
    assert base64.b64decode(digest_value) == digest

    signed_info = etree.tostring(signature.find(f"{DS}SignedInfo"), method="c14n", with_comments=False)
    value = base64.b64decode("".join(signature.find(f"{DS}SignatureValue").text.split()))
    # InvalidSignature si no corresponde
    certificate.public_key().verify(value, signed_info, padding.PKCS1v15(), hashes.SHA256())


def ecf_payload(
    encf: str = "E310005000201",
    monto_total: str = "11800.00",
    rnc_emisor: str = RNC_EMISOR,
    rnc_comprador: str = RNC_COMPRADOR,
) -> Dict[str, Any]:
    tipo = encf[1:3]
    gravado = "10000.00" if monto_total == "11800.00" else monto_total
    return {
        "Encabezado": {
            "Version": "1.0",
            "IdDoc": {
                "TipoeCF": tipo,
                "eNCF": encf,
                "FechaVencimientoSecuencia": "2026-12-31",
                "IndicadorMontoGravado": "0",
                "TipoIngresos": "01",
                "TipoPago": "1",
            },
            "Emisor": {
                "RNCEmisor": rnc_emisor,
                "RazonSocialEmisor": "Contribuyente de Prueba SRL",
                "DireccionEmisor": "Av. 27 de Febrero 1, Santo Domingo",
                "FechaEmision": "2025-01-15",
            },
            "Comprador": {
                "RNCComprador": rnc_comprador,
                "RazonSocialComprador": "Comprador de Prueba SRL",
                "ContactoComprador": "",
            },
            "Totales": {
                "MontoGravadoTotal": gravado,
                "MontoGravadoI1": gravado,
                "ITBIS1": "18",
                "TotalITBIS": "1800.00" if monto_total == "11800.00" else None,
                "MontoTotal": monto_total,
            },
        },
        "DetallesItems": {
            "Item": [
                {
                    "NumeroLinea": 1,
                    "IndicadorFacturacion": 1,
                    "NombreItem": "Servicio de consultoría",
                    "IndicadorBienoServicio": 2,
                    "CantidadItem": 1,
                    "PrecioUnitarioItem": gravado,
                    "MontoItem": gravado,
                }
            ]
        },
    }


def ecf_xml(encf: str = "E310005000201", monto_total: str = "11800.00", rnc_comprador: str = RNC_COMPRADOR) -> str:
    """ECF sin firmar tal como lo enviaría un emisor"""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<ECF><Encabezado><Version>1.0</Version>"
        f"<IdDoc><TipoeCF>{encf[1:3]}</TipoeCF><eNCF>{encf}</eNCF></IdDoc>"
        f"<Emisor><RNCEmisor>{RNC_EMISOR}</RNCEmisor>"
        "<RazonSocialEmisor>Contribuyente de Prueba SRL</RazonSocialEmisor>"
        "<FechaEmision>15-01-2025</FechaEmision></Emisor>"
        f"<Comprador><RNCComprador>{rnc_comprador}</RNCComprador></Comprador>"
        f"<Totales><MontoTotal>{monto_total}</MontoTotal></Totales></Encabezado>"
        "<DetallesItems><Item><NumeroLinea>1</NumeroLinea><MontoItem>10000.00</MontoItem></Item></DetallesItems>"
        "<FechaHoraFirma>15-01-2025 10:30:00</FechaHoraFirma>"
        "</ECF>"
    )


def multipart_body(xml: str, field: str = "xml", boundary: str = "----dgiiBoundary7MA4YWxk"):
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="documento.xml"\r\n'
        "Content-Type: text/xml\r\n"
        "\r\n"
        f"{xml}\r\n"
        f"--{boundary}--\r\n"
    ).encode("utf-8")
    return body, f"multipart/form-data; boundary={boundary}"
