"""
Firma digital XML para documentos DGII e-CF usando python-xmlsec

Requisitos DGII:
- XML Digital Signature Enveloped (Signature como último hijo de la raíz)
- Reference URI="" (documento completo) con transform enveloped-signature
- Canonicalización C14N inclusiva (REC-xml-c14n-20010315)
- RSA-SHA256 / SHA-256
- Certificado X.509 embebido en KeyInfo
- <Signature xmlns="http://www.w3.org/2000/09/xmldsig#"> sin prefijo ds:

El árbol de firma se construye a mano con lxml en el namespace por defecto
(xmlsec.template.create fuerza el prefijo ds) y xmlsec calcula DigestValue y
SignatureValue sobre ese mismo árbol.

El código de seguridad del e-CF son los primeros 6 caracteres del
SignatureValue.
"""
import logging
from typing import Optional, Union

import xmlsec
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from lxml import etree

from .credentials import Credential
from .exceptions import DgiiValidationError, SigningError, TransformError
from .models import DocumentType, SignedDocument
from .utils import localname, parse_xml

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
C14N_INCLUSIVE = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

SECURITY_CODE_LENGTH = 6


def _parse(xml_content: Union[str, bytes], context: str) -> etree._Element:
    try:
        return parse_xml(xml_content, context)
    except TransformError as exc:
        raise SigningError(exc.message) from exc


def _ds(name: str) -> etree.QName:
    return etree.QName(DS_NS, name)


def derive_security_code(signed_xml: Union[str, bytes]) -> str:
    """
    Código de seguridad: primeros 6 caracteres del SignatureValue

    Raises:
        SigningError: si el XML no tiene SignatureValue
    """
    root = _parse(signed_xml, "XML firmado")
    nodes = root.xpath("//*[local-name()='SignatureValue']")
    value = "".join((nodes[0].text or "").split()) if nodes else ""
    if not value:
        raise SigningError("SignatureValue no encontrado en el XML firmado")
    return value[:SECURITY_CODE_LENGTH]


def embedded_certificate(root: etree._Element) -> x509.Certificate:
    """Certificado X.509 incluido en KeyInfo/X509Data"""
    nodes = root.xpath("//*[local-name()='X509Certificate']")
    if not nodes or not (nodes[0].text or "").strip():
        raise SigningError("El XML firmado no incluye X509Certificate")
    b64 = "".join(nodes[0].text.split())
    pem = "-----BEGIN CERTIFICATE-----\n"
    pem += "\n".join(b64[i:i + 64] for i in range(0, len(b64), 64))
    pem += "\n-----END CERTIFICATE-----\n"
    try:
        return x509.load_pem_x509_certificate(pem.encode("ascii"))
    except ValueError as exc:
        raise SigningError(f"X509Certificate inválido: {exc}") from exc


def build_signature_template(c14n_algorithm: str = C14N_INCLUSIVE) -> etree._Element:
    """
    Árbol <Signature> vacío en namespace por defecto

    DigestValue, SignatureValue y X509Certificate quedan vacíos; xmlsec los
    completa al firmar con la clave y el certificado cargados.
    """
    sig = etree.Element(_ds("Signature"), nsmap={None: DS_NS})

    signed_info = etree.SubElement(sig, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod")).set("Algorithm", c14n_algorithm)
    etree.SubElement(signed_info, _ds("SignatureMethod")).set("Algorithm", RSA_SHA256)

    ref = etree.SubElement(signed_info, _ds("Reference"))
    ref.set("URI", "")
    transforms = etree.SubElement(ref, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform")).set("Algorithm", ENVELOPED)
    etree.SubElement(ref, _ds("DigestMethod")).set("Algorithm", SHA256)
    etree.SubElement(ref, _ds("DigestValue"))

    etree.SubElement(sig, _ds("SignatureValue"))

    key_info = etree.SubElement(sig, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate"))
    return sig


class XmlSigner:
    """Firma y verifica XML DGII con xmlsec"""

    def __init__(self, c14n_algorithm: str = C14N_INCLUSIVE):
        self.c14n_algorithm = c14n_algorithm

    @staticmethod
    def _signing_key(credential: Credential) -> xmlsec.Key:
        key_pem = credential.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        key = xmlsec.Key.from_memory(key_pem, xmlsec.KeyFormat.PEM)
        key.load_cert_from_memory(credential.certificate_pem.encode("ascii"), xmlsec.KeyFormat.PEM)
        return key

    def sign(
        self,
        xml_content: Union[str, bytes],
        document_type: Union[DocumentType, str],
        credential: Credential,
    ) -> SignedDocument:
        """
        Firma un XML y calcula su código de seguridad

        Args:
            xml_content: XML sin firmar
            document_type: Tipo esperado; debe coincidir con el nodo raíz
            credential: Clave + certificado del firmante

        Returns:
            SignedDocument con el XML firmado y el código de seguridad

        Raises:
            SigningError: XML inválido, raíz distinta al tipo o fallo de firma
        """
        if not isinstance(document_type, DocumentType):
            try:
                document_type = DocumentType.from_tag(document_type)
            except DgiiValidationError as exc:
                raise SigningError(exc.message, rnc=credential.rnc) from exc

        root = _parse(xml_content, f"XML {document_type.value}")
        root_name = localname(root.tag)
        if root_name != document_type.value:
            raise SigningError(
                f"El nodo raíz <{root_name}> no corresponde al tipo {document_type.value}",
                document_type=document_type.value,
                rnc=credential.rnc,
            )

        # Re-firmar reemplaza cualquier firma previa
        for previous in root.findall(_ds("Signature")):
            root.remove(previous)

        sig = build_signature_template(self.c14n_algorithm)
        root.append(sig)

        try:
            ctx = xmlsec.SignatureContext()
            ctx.key = self._signing_key(credential)
            ctx.sign(sig)
        except (xmlsec.Error, ValueError, TypeError) as exc:
            raise SigningError(
                f"Error al firmar {document_type.value}: {exc}",
                document_type=document_type.value,
                rnc=credential.rnc,
            ) from exc

        signed_xml = etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")
        security_code = derive_security_code(signed_xml)
        logger.info(
            "%s firmado (RNC %s, código de seguridad %s)",
            document_type.value,
            credential.rnc or "default",
            security_code,
        )
        return SignedDocument(document_type=document_type, signed_xml=signed_xml, security_code=security_code)

    def verify(
        self,
        signed_xml: Union[str, bytes],
        certificate: Optional[x509.Certificate] = None,
    ) -> x509.Certificate:
        """
        Verifica la firma enveloped

        Solo se acepta una firma hija de la raíz con Reference URI="" (el
        documento completo), con o sin prefijo.

        Args:
            signed_xml: XML firmado
            certificate: Certificado esperado; por defecto el embebido en KeyInfo

        Returns:
            Certificado con el que se verificó la firma

        Raises:
            SigningError: si la firma no es válida
        """
        root = _parse(signed_xml, "XML firmado")
        signatures = root.findall(_ds("Signature"))
        if len(signatures) != 1:
            raise SigningError(f"Se esperaba una Signature en la raíz, hay {len(signatures)}")
        sig = signatures[0]
        uris = [ref.get("URI") for ref in sig.iter(_ds("Reference"))]
        if uris != [""]:
            raise SigningError(f"La firma debe cubrir el documento completo (URI=\"\"), se encontró {uris}")

        cert = certificate or embedded_certificate(root)
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        try:
            ctx = xmlsec.SignatureContext()
            ctx.key = xmlsec.Key.from_memory(cert_pem, xmlsec.KeyFormat.CERT_PEM)
            ctx.verify(sig)
        except xmlsec.Error as exc:
            raise SigningError(f"Firma inválida: {exc}") from exc
        return cert
