"""
segmentation.py - Order Data Segmentation for EBICS Transactions

Splits a base64-encoded, encrypted order payload into ordered segments for
upload, and collects download segments by segment number into one buffer.

Version: 1.0.0

Functions:
    calculate_segment_count(length, max_size)  -> int
    split_into_segments(payload, max_size)     -> (ErrorCode, List[str])
    OrderDataBuffer(num_segments)              -> reassembly buffer

Segment numbers on the wire are 1-based; the buffer slot for segment n is n - 1.
A zero-length payload yields zero segments and no Transfer requests.
"""

from typing import List, Optional, Tuple

from ebics_types import ErrorCode
from logger import log_debug, log_error


# ============================================================================
# CONSTANTS
# ============================================================================

# EBICS limits one order data segment to 1 MB of base64 text
DEFAULT_SEGMENT_SIZE = 1024 * 1024

SEGMENT_CONTEXT = "Segmentation"


# ============================================================================
# SPLITTING
# ============================================================================

def calculate_segment_count(length: int, max_size: int = DEFAULT_SEGMENT_SIZE) -> int:
    """
    Number of segments needed for a payload of the given length.

    Returns:
        ceil(length / max_size), 0 for an empty payload or invalid size
    """
    if length <= 0 or max_size <= 0:
        return 0
    return (length + max_size - 1) // max_size


def split_into_segments(
    payload: str,
    max_size: int = DEFAULT_SEGMENT_SIZE,
    logger_handle: Optional[object] = None
) -> Tuple[ErrorCode, List[str]]:
    """
    Split a payload into chunks of at most max_size characters.

    Concatenating the result in order reproduces the payload exactly. The
    length of the list is the NumSegments value reported to the bank.

    Returns:
        SUCCESS, list of segments (empty for an empty payload)
        ERR_INVALID_PARAM, [] if max_size <= 0 or payload is not a string

    Example:
        err, segments = split_into_segments("ABCDEFG", 3)
        # segments == ["ABC", "DEF", "G"]
    """
    if max_size <= 0:
        log_error(logger_handle, SEGMENT_CONTEXT, "Cannot segment payload",
                  f"max_size must be positive (got {max_size})")
        return ErrorCode.ERR_INVALID_PARAM, []

    if not isinstance(payload, str):
        log_error(logger_handle, SEGMENT_CONTEXT, "Cannot segment payload",
                  f"expected str, got {type(payload).__name__}")
        return ErrorCode.ERR_INVALID_PARAM, []

    segments = [payload[i:i + max_size] for i in range(0, len(payload), max_size)]

    log_debug(logger_handle, SEGMENT_CONTEXT,
              f"Split {len(payload)} chars into {len(segments)} segment(s) of <= {max_size}")
    return ErrorCode.SUCCESS, segments


# ============================================================================
# REASSEMBLY
# ============================================================================

class OrderDataBuffer:
    """
    Download reassembly buffer with one slot per segment.

    The slot count is fixed when the Initialisation response reveals the
    number of segments. Each response stores its decoded text at
    segment_number - 1; the full text is read with join() once every slot
    is filled.
    """

    def __init__(self, num_segments: int):
        self.num_segments = max(num_segments, 0)
        self._slots: List[Optional[str]] = [None] * self.num_segments

    def store(self, segment_number: int, text: str) -> ErrorCode:
        if segment_number < 1 or segment_number > self.num_segments:
            return ErrorCode.ERR_INVALID_PARAM
        self._slots[segment_number - 1] = text
        return ErrorCode.SUCCESS

    @property
    def filled(self) -> int:
        return sum(1 for slot in self._slots if slot is not None)

    @property
    def is_complete(self) -> bool:
        return self.filled == self.num_segments

    def partial(self) -> str:
        """Running concatenation; unfilled slots render as empty strings."""
        return "".join(slot or "" for slot in self._slots)

    def join(self) -> Tuple[ErrorCode, Optional[str]]:
        if not self.is_complete:
            return ErrorCode.ERR_NOT_FOUND, None
        return ErrorCode.SUCCESS, "".join(self._slots)

    def __len__(self) -> int:
        return self.num_segments
