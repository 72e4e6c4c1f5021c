"""
network.py - HTTP Transport for EBICS Requests

Posts one serialized request document to the bank's EBICS URL and returns
the raw response body. Requests are never retried here: replaying a
Transfer in a live transaction would desynchronize segment numbering.

Version: 1.0.0

Functions:
    post_request(url, document, timeout_sec, logger_handle) -> (EbicsErrorCode, str)
    make_transport(url, timeout_sec, logger_handle)        -> transport callable
"""

import socket
import urllib.error
import urllib.request
from typing import Callable, Optional, Tuple

from ebics_types import EbicsErrorCode
from logger import log_debug, log_error


# ============================================================================
# CONSTANTS
# ============================================================================

CONTENT_TYPE = "text/xml; charset=UTF-8"
USER_AGENT = "EBICS-Client/1.0"
DEFAULT_TIMEOUT_SEC = 60

NETWORK_CONTEXT = "Network"


# ============================================================================
# PUBLIC API
# ============================================================================

def post_request(
    url: str,
    document: bytes,
    timeout_sec: int = DEFAULT_TIMEOUT_SEC,
    logger_handle: Optional[object] = None
) -> Tuple[EbicsErrorCode, str]:
    """
    POST an EBICS request document.

    Args:
        url: Bank EBICS endpoint
        document: Serialized request (UTF-8 XML)
        timeout_sec: Socket timeout in seconds
        logger_handle: Optional logger

    Returns:
        SUCCESS, response body
        ERR_TRANSPORT, error description on HTTP errors, timeouts or
        unreachable hosts
    """
    log_debug(logger_handle, NETWORK_CONTEXT, f"POST {len(document)} bytes to {url}")

    try:
        request = urllib.request.Request(
            url,
            data=document,
            method="POST",
            headers={'Content-Type': CONTENT_TYPE, 'User-Agent': USER_AGENT}
        )

        with urllib.request.urlopen(request, timeout=timeout_sec) as response:
            body = response.read().decode('utf-8')
            log_debug(logger_handle, NETWORK_CONTEXT, f"Received {len(body)} bytes from {url}")
            return EbicsErrorCode.SUCCESS, body

    except urllib.error.HTTPError as e:
        log_error(logger_handle, NETWORK_CONTEXT, f"HTTP error from {url}", f"{e.code} {e.reason}")
        return EbicsErrorCode.ERR_TRANSPORT, f"HTTP {e.code} {e.reason}"
    except urllib.error.URLError as e:
        log_error(logger_handle, NETWORK_CONTEXT, f"Network error posting to {url}", str(e.reason))
        return EbicsErrorCode.ERR_TRANSPORT, f"network error: {e.reason}"
    except (TimeoutError, socket.timeout):
        log_error(logger_handle, NETWORK_CONTEXT, f"Timeout posting to {url}", f"{timeout_sec}s")
        return EbicsErrorCode.ERR_TRANSPORT, f"timeout after {timeout_sec}s"
    except (UnicodeDecodeError, ValueError) as e:
        log_error(logger_handle, NETWORK_CONTEXT, f"Invalid request or response for {url}", str(e))
        return EbicsErrorCode.ERR_TRANSPORT, str(e)


def make_transport(
    url: str,
    timeout_sec: int = DEFAULT_TIMEOUT_SEC,
    logger_handle: Optional[object] = None
) -> Callable[[bytes], Tuple[EbicsErrorCode, str]]:
    """Bind url and timeout into the transport callable Transaction.run expects."""
    def transport(document: bytes) -> Tuple[EbicsErrorCode, str]:
        return post_request(url, document, timeout_sec, logger_handle)
    return transport
