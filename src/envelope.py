"""
envelope.py - Cryptographic Envelope for EBICS Transactions

Compression, AES session-key encryption, RSA key wrapping, detached order
signatures and the XML authentication signature carried by every request.
Uses pycryptodome for all cryptographic operations and lxml for canonical
XML serialization.

Version: 1.0.0

Pipeline:
    outbound:  compress_data -> encrypt_aes -> base64 -> (segment)
    inbound:   base64 -> decrypt_aes -> decompress_data

    Feeding the steps in the wrong order fails with a non-SUCCESS code
    (bad padding or a zlib error); it never produces silent garbage.

Functions:
    generate_transaction_key()                 -> bytes[16]
    generate_nonce()                           -> str (32 hex chars)
    utc_timestamp()                            -> str
    canonicalize_document(xml_text)            -> str
    compress_data(data)                        -> (CryptoErrorCode, bytes)
    decompress_data(data)                      -> (CryptoErrorCode, bytes)
    encrypt_aes(data, key)                     -> (CryptoErrorCode, bytes)
    decrypt_aes(data, key)                     -> (CryptoErrorCode, bytes)
    encrypt_rsa(session_key, public_key)       -> (CryptoErrorCode, bytes)
    decrypt_rsa(wrapped_key, private_key)      -> (CryptoErrorCode, bytes)
    sign_data(data, sign_key, version)         -> (CryptoErrorCode, base64 str)
    verify_data(data, signature, key, version) -> CryptoErrorCode
    public_key_digest(public_key)              -> (CryptoErrorCode, bytes[32])
    decrypt_order_data(document, private_key, transaction_key=None)
                                               -> (CryptoErrorCode, (compressed bytes, session key))
    authenticate_document(root, auth_key)      -> CryptoErrorCode
    verify_document(root, bank_auth_key)       -> CryptoErrorCode

AES Details (EBICS E002):
    - AES-128 in CBC mode with an all-zero IV
    - ANSI X9.23 padding, always at least one pad byte
    - A fresh session key per transaction makes the fixed IV safe
"""

import base64
import zlib
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from Crypto.Cipher import AES, PKCS1_v1_5
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes
from Crypto.Signature import pkcs1_15, pss
from Crypto.Util.Padding import pad, unpad
from lxml import etree

from ebics_types import CryptoErrorCode
from logger import log_debug, log_error


# ============================================================================
# CONSTANTS
# ============================================================================

AES_KEY_SIZE = 16
AES_BLOCK_SIZE = 16
AES_IV = bytes(AES_BLOCK_SIZE)
NONCE_SIZE = 16

SIGNATURE_VERSIONS = ("A005", "A006")
DEFAULT_SIGNATURE_VERSION = "A006"

DS_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
RSA_SHA256_ALGORITHM = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"
AUTHENTICATE_XPATH = "//*[@authenticate='true']"
AUTHENTICATE_URI = "#xpointer(//*[@authenticate='true'])"

ENVELOPE_CONTEXT = "Envelope"


# ============================================================================
# INTERNAL HELPER FUNCTIONS
# ============================================================================

def _is_rsa_key(key: Any) -> bool:
    return isinstance(key, RSA.RsaKey)


def _ds(tag: str) -> str:
    return f"{{{DS_NAMESPACE}}}{tag}"


def _authenticated_digest(root: etree._Element) -> bytes:
    """SHA-256 over the concatenated canonical form of all authenticate="true" elements."""
    h = SHA256.new()
    for element in root.xpath(AUTHENTICATE_XPATH):
        h.update(etree.tostring(element, method="c14n"))
    return h.digest()


def _find_auth_signature(root: etree._Element) -> Optional[etree._Element]:
    return root.find("{*}AuthSignature")


# ============================================================================
# KEYS, NONCES AND CANONICAL FORM
# ============================================================================

def generate_transaction_key() -> bytes:
    """Fresh 16-byte AES session key. Must never be reused across transactions."""
    return get_random_bytes(AES_KEY_SIZE)


def generate_nonce() -> str:
    """Random 16-byte nonce as 32 uppercase hex characters."""
    return get_random_bytes(NONCE_SIZE).hex().upper()


def utc_timestamp() -> str:
    """Current UTC time as xs:dateTime with milliseconds, e.g. 2026-10-16T09:12:01.442Z"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def canonicalize_document(xml_text: str) -> str:
    """
    Strip newlines, carriage returns and tabs from a serialized document.

    Order signatures are computed over this exact form; the bank recomputes
    it before verification.
    """
    return xml_text.replace("\n", "").replace("\r", "").replace("\t", "")


# ============================================================================
# COMPRESSION
# ============================================================================

def compress_data(
    data: bytes,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """zlib (deflate) compression applied before encryption."""
    try:
        compressed = zlib.compress(data)
    except (TypeError, zlib.error) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Compression failed", str(e))
        return CryptoErrorCode.ERR_COMPRESSION_FAILED, None

    log_debug(logger_handle, ENVELOPE_CONTEXT, f"Compressed {len(data)} -> {len(compressed)} bytes")
    return CryptoErrorCode.SUCCESS, compressed


def decompress_data(
    data: bytes,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """Inverse of compress_data."""
    try:
        plain = zlib.decompress(data)
    except (TypeError, zlib.error) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Decompression failed", str(e))
        return CryptoErrorCode.ERR_DECOMPRESSION_FAILED, None

    return CryptoErrorCode.SUCCESS, plain


# ============================================================================
# SYMMETRIC ENCRYPTION
# ============================================================================

def encrypt_aes(
    data: bytes,
    key: bytes,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """
    Encrypt with the transaction's session key (AES-128-CBC, zero IV, X9.23 padding).

    Returns:
        SUCCESS, ciphertext
        ERR_INVALID_KEY, None if the key is not 16 bytes
        ERR_ENCRYPTION_FAILED, None on any cipher error

    Example:
        err, encrypted = encrypt_aes(compressed, ctx.transaction_key)
    """
    if key is None or len(key) != AES_KEY_SIZE:
        log_error(
            logger_handle, ENVELOPE_CONTEXT,
            "AES encryption failed",
            f"key must be {AES_KEY_SIZE} bytes (got {len(key) if key else 0})"
        )
        return CryptoErrorCode.ERR_INVALID_KEY, None

    try:
        cipher = AES.new(key, AES.MODE_CBC, iv=AES_IV)
        encrypted = cipher.encrypt(pad(data, AES_BLOCK_SIZE, style='x923'))
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "AES encryption failed", str(e))
        return CryptoErrorCode.ERR_ENCRYPTION_FAILED, None

    return CryptoErrorCode.SUCCESS, encrypted


def decrypt_aes(
    data: bytes,
    key: bytes,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """Inverse of encrypt_aes. Wrong length or padding -> ERR_DECRYPTION_FAILED."""
    if key is None or len(key) != AES_KEY_SIZE:
        log_error(
            logger_handle, ENVELOPE_CONTEXT,
            "AES decryption failed",
            f"key must be {AES_KEY_SIZE} bytes (got {len(key) if key else 0})"
        )
        return CryptoErrorCode.ERR_INVALID_KEY, None

    if data is None or len(data) == 0 or len(data) % AES_BLOCK_SIZE != 0:
        log_error(
            logger_handle, ENVELOPE_CONTEXT,
            "AES decryption failed",
            f"ciphertext length {len(data) if data else 0} is not a positive multiple of {AES_BLOCK_SIZE}"
        )
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    try:
        cipher = AES.new(key, AES.MODE_CBC, iv=AES_IV)
        plain = unpad(cipher.decrypt(data), AES_BLOCK_SIZE, style='x923')
    except ValueError as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "AES decryption failed", str(e))
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    return CryptoErrorCode.SUCCESS, plain


# ============================================================================
# ASYMMETRIC OPERATIONS
# ============================================================================

def encrypt_rsa(
    session_key: bytes,
    public_key: Any,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """Wrap the session key with the bank's encryption key (RSAES-PKCS1-v1_5)."""
    if not _is_rsa_key(public_key):
        log_error(logger_handle, ENVELOPE_CONTEXT, "RSA key wrap failed", "bank encryption key missing")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    try:
        wrapped = PKCS1_v1_5.new(public_key).encrypt(session_key)
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "RSA key wrap failed", str(e))
        return CryptoErrorCode.ERR_ENCRYPTION_FAILED, None

    return CryptoErrorCode.SUCCESS, wrapped


def decrypt_rsa(
    wrapped_key: bytes,
    private_key: Any,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """Unwrap a session key with the user's encryption private key."""
    if not _is_rsa_key(private_key) or not private_key.has_private():
        log_error(logger_handle, ENVELOPE_CONTEXT, "RSA key unwrap failed", "user encryption private key missing")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    sentinel = None
    try:
        session_key = PKCS1_v1_5.new(private_key).decrypt(wrapped_key, sentinel)
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "RSA key unwrap failed", str(e))
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    if session_key is sentinel or len(session_key) != AES_KEY_SIZE:
        log_error(logger_handle, ENVELOPE_CONTEXT, "RSA key unwrap failed", "invalid transaction key block")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    return CryptoErrorCode.SUCCESS, session_key


def sign_data(
    data: bytes,
    sign_key: Any,
    version: str = DEFAULT_SIGNATURE_VERSION,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[str]]:
    """
    Detached order signature over already canonical bytes.

    A006 uses RSASSA-PSS with SHA-256, A005 uses PKCS#1 v1.5 with SHA-256.

    Returns:
        SUCCESS, base64 signature value
        ERR_INVALID_KEY, None if no private signature key is loaded
        ERR_SIGNATURE_FAILED, None on unknown version or signer error
    """
    if not _is_rsa_key(sign_key) or not sign_key.has_private():
        log_error(logger_handle, ENVELOPE_CONTEXT, "Signing failed", "user signature private key missing")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    if version not in SIGNATURE_VERSIONS:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Signing failed", f"unsupported signature version {version}")
        return CryptoErrorCode.ERR_SIGNATURE_FAILED, None

    try:
        digest = SHA256.new(data)
        if version == "A006":
            signature = pss.new(sign_key).sign(digest)
        else:
            signature = pkcs1_15.new(sign_key).sign(digest)
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Signing failed", str(e))
        return CryptoErrorCode.ERR_SIGNATURE_FAILED, None

    log_debug(logger_handle, ENVELOPE_CONTEXT, f"Signed {len(data)} bytes ({version})")
    return CryptoErrorCode.SUCCESS, base64.b64encode(signature).decode('ascii')


def verify_data(
    data: bytes,
    signature_b64: str,
    public_key: Any,
    version: str = DEFAULT_SIGNATURE_VERSION
) -> CryptoErrorCode:
    """Check a detached order signature produced by sign_data."""
    if not _is_rsa_key(public_key):
        return CryptoErrorCode.ERR_INVALID_KEY

    try:
        digest = SHA256.new(data)
        signature = base64.b64decode(signature_b64)
        if version == "A006":
            pss.new(public_key).verify(digest, signature)
        else:
            pkcs1_15.new(public_key).verify(digest, signature)
    except (TypeError, ValueError):
        return CryptoErrorCode.ERR_VERIFICATION_FAILED

    return CryptoErrorCode.SUCCESS


def public_key_digest(public_key: Any) -> Tuple[CryptoErrorCode, Optional[bytes]]:
    """
    EBICS public key hash: SHA-256 over "<exponent hex> <modulus hex>",
    lowercase with leading zeros removed.
    """
    if not _is_rsa_key(public_key):
        return CryptoErrorCode.ERR_INVALID_KEY, None

    text = f"{public_key.e:x} {public_key.n:x}"
    return CryptoErrorCode.SUCCESS, SHA256.new(text.encode('ascii')).digest()


# ============================================================================
# RESPONSE ORDER DATA
# ============================================================================

def decrypt_order_data(
    document: etree._Element,
    private_key: Any,
    transaction_key: Optional[bytes] = None,
    logger_handle: Optional[object] = None
) -> Tuple[CryptoErrorCode, Optional[Tuple[bytes, bytes]]]:
    """
    Extract and decrypt the OrderData element of a parsed response.

    The session key is taken from DataEncryptionInfo/TransactionKey when the
    response carries one (Initialisation), otherwise transaction_key is used
    (Transfer). The result is still compressed; call decompress_data next.

    Returns:
        SUCCESS, (compressed_bytes, session_key)
    """
    order_data = document.find(".//{*}DataTransfer/{*}OrderData")
    if order_data is None or not (order_data.text or "").strip():
        log_error(logger_handle, ENVELOPE_CONTEXT, "Order data extraction failed", "no OrderData element")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    wrapped = document.find(".//{*}DataEncryptionInfo/{*}TransactionKey")
    if wrapped is not None and (wrapped.text or "").strip():
        try:
            wrapped_key = base64.b64decode(wrapped.text.strip(), validate=True)
        except ValueError as e:
            log_error(logger_handle, ENVELOPE_CONTEXT, "Transaction key extraction failed", f"invalid base64: {e}")
            return CryptoErrorCode.ERR_DECRYPTION_FAILED, None
        err, transaction_key = decrypt_rsa(wrapped_key, private_key, logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            return err, None

    if transaction_key is None:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Order data extraction failed", "no transaction key available")
        return CryptoErrorCode.ERR_INVALID_KEY, None

    try:
        encrypted = base64.b64decode(order_data.text.strip(), validate=True)
    except ValueError as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Order data extraction failed", f"invalid base64: {e}")
        return CryptoErrorCode.ERR_DECRYPTION_FAILED, None

    err, compressed = decrypt_aes(encrypted, transaction_key, logger_handle)
    if err != CryptoErrorCode.SUCCESS:
        return err, None

    return CryptoErrorCode.SUCCESS, (compressed, transaction_key)


# ============================================================================
# XML AUTHENTICATION SIGNATURE (X002)
# ============================================================================

def authenticate_document(
    root: etree._Element,
    auth_key: Any,
    logger_handle: Optional[object] = None
) -> CryptoErrorCode:
    """
    Fill the document's AuthSignature element with an XML-DSig signature over
    every element marked authenticate="true".

    The document must already contain an empty AuthSignature element.
    """
    if not _is_rsa_key(auth_key) or not auth_key.has_private():
        log_error(logger_handle, ENVELOPE_CONTEXT, "Request authentication failed", "authentication private key missing")
        return CryptoErrorCode.ERR_INVALID_KEY

    auth_signature = _find_auth_signature(root)
    if auth_signature is None:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Request authentication failed", "no AuthSignature element")
        return CryptoErrorCode.ERR_SIGNATURE_FAILED

    for child in list(auth_signature):
        auth_signature.remove(child)

    signed_info = etree.SubElement(auth_signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=RSA_SHA256_ALGORITHM)
    reference = etree.SubElement(signed_info, _ds("Reference"), URI=AUTHENTICATE_URI)
    transforms = etree.SubElement(reference, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(reference, _ds("DigestMethod"), Algorithm=SHA256_ALGORITHM)
    digest_value = etree.SubElement(reference, _ds("DigestValue"))
    digest_value.text = base64.b64encode(_authenticated_digest(root)).decode('ascii')

    try:
        signature = pkcs1_15.new(auth_key).sign(SHA256.new(etree.tostring(signed_info, method="c14n")))
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Request authentication failed", str(e))
        return CryptoErrorCode.ERR_SIGNATURE_FAILED

    signature_value = etree.SubElement(auth_signature, _ds("SignatureValue"))
    signature_value.text = base64.b64encode(signature).decode('ascii')
    return CryptoErrorCode.SUCCESS


def verify_document(
    root: etree._Element,
    bank_auth_key: Any,
    logger_handle: Optional[object] = None
) -> CryptoErrorCode:
    """
    Verify the bank's AuthSignature: recompute the digest of the
    authenticate="true" elements and check the RSA signature over SignedInfo.
    """
    if not _is_rsa_key(bank_auth_key):
        log_error(logger_handle, ENVELOPE_CONTEXT, "Response verification failed", "bank authentication key missing")
        return CryptoErrorCode.ERR_INVALID_KEY

    auth_signature = _find_auth_signature(root)
    signed_info = auth_signature.find(_ds("SignedInfo")) if auth_signature is not None else None
    signature_value = auth_signature.find(_ds("SignatureValue")) if auth_signature is not None else None
    if signed_info is None or signature_value is None:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Response verification failed", "response is not signed")
        return CryptoErrorCode.ERR_VERIFICATION_FAILED

    digest_value = signed_info.find(f"{_ds('Reference')}/{_ds('DigestValue')}")
    expected = base64.b64encode(_authenticated_digest(root)).decode('ascii')
    if digest_value is None or (digest_value.text or "").strip() != expected:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Response verification failed", "digest mismatch")
        return CryptoErrorCode.ERR_VERIFICATION_FAILED

    try:
        pkcs1_15.new(bank_auth_key).verify(
            SHA256.new(etree.tostring(signed_info, method="c14n")),
            base64.b64decode(signature_value.text or "")
        )
    except (TypeError, ValueError) as e:
        log_error(logger_handle, ENVELOPE_CONTEXT, "Response verification failed", f"bad signature: {e}")
        return CryptoErrorCode.ERR_VERIFICATION_FAILED

    return CryptoErrorCode.SUCCESS
