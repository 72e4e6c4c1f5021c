"""
xml_builder.py - EBICS Request Document Construction

Builds the request documents of the three transaction phases, the unsecured
key management request used by INI, and the S001 order data documents that
travel inside them. Documents are lxml element trees; the caller signs them
with envelope.authenticate_document and then calls serialize().

Version: 1.0.0

Functions:
    ebics_namespace(version)                        -> str
    build_init_request(header, order, ...)          -> etree._Element
    build_transfer_request(header, transaction_id, segment_number, last_segment, order_data)
                                                    -> etree._Element
    build_receipt_request(header, transaction_id)   -> etree._Element
    build_unsecured_request(header, order, order_data) -> etree._Element
    build_user_signature_data(...)                  -> etree._Element
    build_signature_pubkey_order_data(...)          -> etree._Element
    serialize(root)                                 -> bytes

Request Layout (H004, H005 uses the same layout under its own namespace):
    ebicsRequest
      header authenticate="true"
        static    HostID, Nonce, Timestamp, PartnerID, UserID, OrderDetails,
                  BankPubKeyDigests, SecurityMedium, NumSegments
                  (Transfer/Receipt: HostID, TransactionID)
        mutable   TransactionPhase, SegmentNumber lastSegment=...
      AuthSignature
      body
"""

import base64
from dataclasses import dataclass
from datetime import date
from typing import Optional

from lxml import etree

from ebics_types import DEFAULT_SECURITY_MEDIUM, EbicsVersion, PHASE_NAMES, TransactionPhase


# ============================================================================
# CONSTANTS
# ============================================================================

EBICS_NAMESPACES = {
    EbicsVersion.H004: "urn:org:ebics:H004",
    EbicsVersion.H005: "urn:org:ebics:H005",
}
DS_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
S001_NAMESPACE = "http://www.ebics.org/S001"
SHA256_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"

RECEIPT_CODE_OK = "0"
DATE_FORMAT = "%Y-%m-%d"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class RequestHeader:
    """Subscriber and protocol values repeated in every request header."""
    host_id: str
    partner_id: str = ""
    user_id: str = ""
    version: str = "H004"
    revision: int = 1
    security_medium: str = DEFAULT_SECURITY_MEDIUM
    nonce: str = ""
    timestamp: str = ""


@dataclass
class OrderDetails:
    order_type: str
    order_attribute: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    standard_params: bool = True


@dataclass
class BankKeyDigests:
    authentication: bytes
    encryption: bytes
    authentication_version: str = "X002"
    encryption_version: str = "E002"


# ============================================================================
# INTERNAL HELPER FUNCTIONS
# ============================================================================

def ebics_namespace(version: str) -> str:
    """Namespace URI for "H004" or "H005". Unknown versions raise KeyError."""
    return EBICS_NAMESPACES[EbicsVersion[version]]


def _sub(parent: etree._Element, tag: str, text: Optional[str] = None, **attrib) -> etree._Element:
    """Child element in the parent's namespace."""
    ns = etree.QName(parent).namespace
    element = etree.SubElement(parent, f"{{{ns}}}{tag}" if ns else tag, **attrib)
    if text is not None:
        element.text = text
    return element


def _root(tag: str, header: RequestHeader) -> etree._Element:
    ns = ebics_namespace(header.version)
    return etree.Element(
        f"{{{ns}}}{tag}",
        nsmap={None: ns, "ds": DS_NAMESPACE},
        Version=header.version,
        Revision=str(header.revision)
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _order_details(parent: etree._Element, order: OrderDetails) -> None:
    details = _sub(parent, "OrderDetails")
    _sub(details, "OrderType", order.order_type)
    _sub(details, "OrderAttribute", order.order_attribute)
    if not order.standard_params:
        return
    params = _sub(details, "StandardOrderParams")
    if order.start_date is not None or order.end_date is not None:
        date_range = _sub(params, "DateRange")
        _sub(date_range, "Start", order.start_date.strftime(DATE_FORMAT) if order.start_date else "")
        _sub(date_range, "End", order.end_date.strftime(DATE_FORMAT) if order.end_date else "")


def _mutable(header_el: etree._Element, phase: TransactionPhase,
             segment_number: Optional[int] = None, last_segment: bool = False) -> None:
    mutable = _sub(header_el, "mutable")
    _sub(mutable, "TransactionPhase", PHASE_NAMES[phase])
    if segment_number is not None:
        _sub(mutable, "SegmentNumber", str(segment_number), lastSegment="true" if last_segment else "false")


def _transaction_static(root: etree._Element, header: RequestHeader, transaction_id: str) -> etree._Element:
    header_el = _sub(root, "header", authenticate="true")
    static = _sub(header_el, "static")
    _sub(static, "HostID", header.host_id)
    _sub(static, "TransactionID", transaction_id)
    return header_el


# ============================================================================
# REQUEST DOCUMENTS
# ============================================================================

def build_init_request(
    header: RequestHeader,
    order: OrderDetails,
    bank_digests: BankKeyDigests,
    num_segments: Optional[int] = None,
    encryption_pubkey_digest: Optional[bytes] = None,
    wrapped_transaction_key: Optional[bytes] = None,
    signature_data: Optional[str] = None
) -> etree._Element:
    """
    Build an Initialisation request.

    Uploads pass num_segments, the digest of the bank encryption key, the
    RSA-wrapped transaction key and the encrypted signature data (base64).
    Downloads pass none of them and get an empty body.
    """
    root = _root("ebicsRequest", header)
    header_el = _sub(root, "header", authenticate="true")
    static = _sub(header_el, "static")
    _sub(static, "HostID", header.host_id)
    _sub(static, "Nonce", header.nonce)
    _sub(static, "Timestamp", header.timestamp)
    _sub(static, "PartnerID", header.partner_id)
    _sub(static, "UserID", header.user_id)
    _order_details(static, order)

    digests = _sub(static, "BankPubKeyDigests")
    _sub(digests, "Authentication", _b64(bank_digests.authentication),
         Version=bank_digests.authentication_version, Algorithm=SHA256_ALGORITHM)
    _sub(digests, "Encryption", _b64(bank_digests.encryption),
         Version=bank_digests.encryption_version, Algorithm=SHA256_ALGORITHM)

    _sub(static, "SecurityMedium", header.security_medium)
    if num_segments is not None:
        _sub(static, "NumSegments", str(num_segments))

    _mutable(header_el, TransactionPhase.INITIALISATION)
    _sub(root, "AuthSignature")

    body = _sub(root, "body")
    if wrapped_transaction_key is not None:
        transfer = _sub(body, "DataTransfer")
        info = _sub(transfer, "DataEncryptionInfo", authenticate="true")
        _sub(info, "EncryptionPubKeyDigest", _b64(encryption_pubkey_digest or b""),
             Version=bank_digests.encryption_version, Algorithm=SHA256_ALGORITHM)
        _sub(info, "TransactionKey", _b64(wrapped_transaction_key))
        _sub(transfer, "SignatureData", signature_data or "", authenticate="true")

    return root


def build_transfer_request(
    header: RequestHeader,
    transaction_id: str,
    segment_number: int,
    last_segment: bool,
    order_data: Optional[str] = None
) -> etree._Element:
    """Transfer request for one segment. Downloads send no order data."""
    root = _root("ebicsRequest", header)
    header_el = _transaction_static(root, header, transaction_id)
    _mutable(header_el, TransactionPhase.TRANSFER, segment_number, last_segment)
    _sub(root, "AuthSignature")

    body = _sub(root, "body")
    if order_data is not None:
        transfer = _sub(body, "DataTransfer")
        _sub(transfer, "OrderData", order_data)
    return root


def build_receipt_request(header: RequestHeader, transaction_id: str,
                          receipt_code: str = RECEIPT_CODE_OK) -> etree._Element:
    root = _root("ebicsRequest", header)
    header_el = _transaction_static(root, header, transaction_id)
    _mutable(header_el, TransactionPhase.RECEIPT)
    _sub(root, "AuthSignature")

    body = _sub(root, "body")
    receipt = _sub(body, "TransferReceipt", authenticate="true")
    _sub(receipt, "ReceiptCode", receipt_code)
    return root


def build_unsecured_request(header: RequestHeader, order: OrderDetails, order_data: str) -> etree._Element:
    """
    ebicsUnsecuredRequest for key initialisation orders. It carries no
    transaction id, no bank key digests and no authentication signature.
    """
    root = _root("ebicsUnsecuredRequest", header)
    header_el = _sub(root, "header", authenticate="true")
    static = _sub(header_el, "static")
    _sub(static, "HostID", header.host_id)
    _sub(static, "PartnerID", header.partner_id)
    _sub(static, "UserID", header.user_id)
    _order_details(static, order)
    _sub(static, "SecurityMedium", header.security_medium)
    _sub(header_el, "mutable")

    body = _sub(root, "body")
    transfer = _sub(body, "DataTransfer")
    _sub(transfer, "OrderData", order_data)
    return root


# ============================================================================
# ORDER DATA DOCUMENTS (S001)
# ============================================================================

def build_user_signature_data(signature_version: str, signature_value: str,
                              partner_id: str, user_id: str) -> etree._Element:
    root = etree.Element(f"{{{S001_NAMESPACE}}}UserSignatureData", nsmap={None: S001_NAMESPACE})
    signature = _sub(root, "OrderSignatureData")
    _sub(signature, "SignatureVersion", signature_version)
    _sub(signature, "SignatureValue", signature_value)
    _sub(signature, "PartnerID", partner_id)
    _sub(signature, "UserID", user_id)
    return root


def build_signature_pubkey_order_data(modulus: int, exponent: int, signature_version: str,
                                      partner_id: str, user_id: str, timestamp: str) -> etree._Element:
    """INI order data: the user's public signature key as ds:RSAKeyValue."""
    root = etree.Element(
        f"{{{S001_NAMESPACE}}}SignaturePubKeyOrderData",
        nsmap={None: S001_NAMESPACE, "ds": DS_NAMESPACE}
    )
    info = _sub(root, "SignaturePubKeyInfo")
    value = _sub(info, "PubKeyValue")
    rsa_value = etree.SubElement(value, f"{{{DS_NAMESPACE}}}RSAKeyValue")
    etree.SubElement(rsa_value, f"{{{DS_NAMESPACE}}}Modulus").text = _b64(_int_bytes(modulus))
    etree.SubElement(rsa_value, f"{{{DS_NAMESPACE}}}Exponent").text = _b64(_int_bytes(exponent))
    _sub(value, "TimeStamp", timestamp)
    _sub(info, "SignatureVersion", signature_version)
    _sub(root, "PartnerID", partner_id)
    _sub(root, "UserID", user_id)
    return root


def _int_bytes(value: int) -> bytes:
    return value.to_bytes((value.bit_length() + 7) // 8 or 1, 'big')


def serialize(root: etree._Element) -> bytes:
    """UTF-8 bytes with an XML declaration, no pretty printing."""
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")
