"""
response.py - EBICS Response Interpreter

Turns a raw bank response body into a DeserializedResponse.

Version: 1.0.0

Interpretation Order:
    1. Parse the XML (no DTDs, no entity resolution, no network access)
    2. Read the technical (header/mutable/ReturnCode) and business
       (body/ReturnCode) return codes. An error class code sets has_error,
       the recovery sync code sets is_recovery_sync; both stop here.
    3. Verify the bank's AuthSignature against its authentication key
    4. Extract phase, transaction id, segment number, lastSegment, NumSegments

Order data is not decrypted here; download commands do that with the
transaction key they hold (see commands.py).

Functions:
    parse_document(raw)                                  -> etree._Element
    is_error_code(code)                                  -> bool
    parse_response(raw, order_type, bank_auth_key, ...)  -> (EbicsErrorCode, DeserializedResponse | EbicsError)
"""

from typing import Any, Optional, Tuple, Union

from lxml import etree

from ebics_types import (
    CryptoErrorCode, DeserializedResponse, EbicsError, EbicsErrorCode,
    ERROR_CODE_CLASSES, PHASES_BY_NAME, RC_OK, RC_TX_RECOVERY_SYNC, RETURN_CODE_TEXT,
)
from envelope import verify_document
from logger import log_debug, log_error, log_warning


RESPONSE_CONTEXT = "Response"

# Key management responses (INI, HIA) are not signed by the bank
UNSIGNED_RESPONSE_TAGS = ("ebicsKeyManagementResponse",)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=True)


# ============================================================================
# INTERNAL HELPER FUNCTIONS
# ============================================================================

def parse_document(raw: Union[str, bytes]) -> etree._Element:
    """Parse a response body. Raises etree.XMLSyntaxError on malformed input."""
    if isinstance(raw, str):
        # lxml refuses str input that carries an encoding declaration
        raw = raw.encode('utf-8')
    return etree.fromstring(raw, _PARSER)


def _text(root: etree._Element, path: str, default: str = "") -> str:
    element = root.find(path)
    if element is None or element.text is None:
        return default
    return element.text.strip()


def is_error_code(code: str) -> bool:
    return code[:2] in ERROR_CODE_CLASSES and code != RC_TX_RECOVERY_SYNC


def _describe_code(code: str) -> str:
    return f"{code} {RETURN_CODE_TEXT.get(code, 'UNKNOWN')}"


# ============================================================================
# PUBLIC API
# ============================================================================

def parse_response(
    raw: Union[str, bytes],
    order_type: str = "",
    bank_auth_key: Optional[Any] = None,
    verify_signature: bool = True,
    logger_handle: Optional[object] = None
) -> Tuple[EbicsErrorCode, Union[DeserializedResponse, EbicsError]]:
    """
    Interpret one response body.

    A response carrying an error or recovery sync code is still a successful
    interpretation: SUCCESS is returned with has_error / is_recovery_sync set
    and every other field left at its default. The transaction layer decides
    what to do with it.

    Returns:
        SUCCESS, DeserializedResponse
        ERR_DESERIALIZATION, EbicsError (payload = raw body) if the body cannot
        be parsed, the signature does not verify, or a field is malformed
    """
    payload = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw

    try:
        root = parse_document(raw)

        technical = _text(root, "{*}header/{*}mutable/{*}ReturnCode", RC_OK)
        business = _text(root, "{*}body/{*}ReturnCode", RC_OK)
        report = _text(root, "{*}header/{*}mutable/{*}ReportText")

        for code in (technical, business):
            if is_error_code(code):
                log_error(logger_handle, RESPONSE_CONTEXT,
                          f"{order_type} response rejected", f"{_describe_code(code)} {report}".strip())
                return EbicsErrorCode.SUCCESS, DeserializedResponse(
                    technical_code=technical, business_code=business,
                    report_text=report, has_error=True, document=root
                )

        if RC_TX_RECOVERY_SYNC in (technical, business):
            log_warning(logger_handle, RESPONSE_CONTEXT, f"{order_type} transaction recovery sync requested")
            return EbicsErrorCode.SUCCESS, DeserializedResponse(
                technical_code=technical, business_code=business,
                report_text=report, is_recovery_sync=True, document=root
            )

        if verify_signature and etree.QName(root).localname not in UNSIGNED_RESPONSE_TAGS:
            if bank_auth_key is None:
                log_warning(logger_handle, RESPONSE_CONTEXT,
                            f"{order_type} response accepted unverified: no bank authentication key")
            elif verify_document(root, bank_auth_key, logger_handle) != CryptoErrorCode.SUCCESS:
                return EbicsErrorCode.ERR_DESERIALIZATION, EbicsError(
                    code=EbicsErrorCode.ERR_DESERIALIZATION, order_type=order_type,
                    message="bank authentication signature invalid", payload=payload
                )

        phase_name = _text(root, "{*}header/{*}mutable/{*}TransactionPhase")
        phase = PHASES_BY_NAME.get(phase_name)
        if phase_name and phase is None:
            raise ValueError(f"unknown transaction phase {phase_name!r}")

        segment = root.find("{*}header/{*}mutable/{*}SegmentNumber")
        segment_number = int(segment.text) if segment is not None and segment.text else 0
        last_segment = segment is not None and segment.get("lastSegment", "false").lower() == "true"
        num_segments_text = _text(root, "{*}header/{*}static/{*}NumSegments")
        num_segments = int(num_segments_text) if num_segments_text else 0

        response = DeserializedResponse(
            phase=phase,
            transaction_id=_text(root, "{*}header/{*}static/{*}TransactionID") or None,
            segment_number=segment_number,
            num_segments=num_segments,
            last_segment=last_segment,
            technical_code=technical,
            business_code=business,
            report_text=report,
            document=root,
        )
    except (etree.XMLSyntaxError, ValueError, TypeError) as e:
        log_error(logger_handle, RESPONSE_CONTEXT, f"Cannot interpret {order_type} response", str(e))
        return EbicsErrorCode.ERR_DESERIALIZATION, EbicsError(
            code=EbicsErrorCode.ERR_DESERIALIZATION, order_type=order_type,
            message="malformed response", cause=e, payload=payload
        )

    log_debug(logger_handle, RESPONSE_CONTEXT,
              f"{order_type} {phase_name or '-'} response: tx={response.transaction_id} "
              f"segment={response.segment_number}/{response.num_segments} last={response.last_segment}")
    return EbicsErrorCode.SUCCESS, response
