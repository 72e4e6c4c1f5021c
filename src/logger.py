"""
logger.py - Logging Module for the EBICS Client

Thread-safe buffered file logging with gzip archive rotation. Every engine
module logs through a LoggerHandle; passing None as the handle turns all
calls into no-ops so library code can log unconditionally.

Version: 1.0.0

Log Format:
    [2026-10-16 09:12:01.442] INFO  | Transaction  | STA Initialisation finished in 84.2 ms
    [2026-10-16 09:12:01.913] ERROR | Response     | Response rejected | REASON: 091005 EBICS_INVALID_ORDER_TYPE

Functions:
    init_logger(log_path, ...)                 -> LoggerHandle or None
    parse_level(name)                          -> LogLevel
    log_debug(handle, context, message)        -> None
    log_info(handle, context, message)         -> None
    log_warning(handle, context, message)      -> None
    log_error(handle, context, message, reason=None) -> None
    phase_span(handle, context, label)         -> context manager
    flush_log(handle)                          -> None
    close_logger(handle)                       -> None

Key material must never be passed to these functions; log lengths or
digests instead.
"""

import gzip
import os
import shutil
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Iterator, Optional, TextIO


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_MAX_ARCHIVES = 5
DEFAULT_BUFFER_SIZE = 8192
CONTEXT_WIDTH = 12


# ============================================================================
# LOG LEVELS
# ============================================================================

class LogLevel(IntEnum):
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


LEVEL_NAMES = {
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO ",
    LogLevel.WARNING: "WARN ",
    LogLevel.ERROR: "ERROR",
}


# ============================================================================
# LOGGER HANDLE
# ============================================================================

@dataclass
class LoggerHandle:
    """State of one open log file."""
    path: str
    file: Optional[TextIO] = None
    buffer: bytearray = field(default_factory=bytearray)
    buffer_size: int = DEFAULT_BUFFER_SIZE
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_archives: int = DEFAULT_MAX_ARCHIVES
    mutex: threading.Lock = field(default_factory=threading.Lock)
    min_level: LogLevel = LogLevel.DEBUG


# ============================================================================
# INTERNAL HELPER FUNCTIONS
# ============================================================================

def _timestamp() -> str:
    now = datetime.now()
    return now.strftime("%Y-%m-%d %H:%M:%S.") + f"{now.microsecond // 1000:03d}"


def _format_context(context: str) -> str:
    """Pad or truncate context to exactly CONTEXT_WIDTH characters."""
    return context[:CONTEXT_WIDTH].ljust(CONTEXT_WIDTH)


def _write_entry(
    handle: Optional[LoggerHandle],
    level: LogLevel,
    context: str,
    message: str,
    reason: Optional[str] = None
) -> None:
    if handle is None or handle.file is None or level < handle.min_level:
        return

    entry = f"[{_timestamp()}] {LEVEL_NAMES[level]} | {_format_context(context)} | {message}"
    if reason and level == LogLevel.ERROR:
        entry += f" | REASON: {reason}"
    entry += "\n"

    with handle.mutex:
        handle.buffer.extend(entry.encode('utf-8'))
        # Errors are written through so they survive a crash
        if level == LogLevel.ERROR or len(handle.buffer) >= handle.buffer_size:
            _flush_buffer(handle)


def _flush_buffer(handle: LoggerHandle) -> None:
    """Write the buffer to disk. Caller must hold handle.mutex."""
    if handle.file is None or not handle.buffer:
        return

    try:
        handle.file.write(handle.buffer.decode('utf-8'))
        handle.file.flush()
        handle.buffer.clear()
        if os.path.getsize(handle.path) >= handle.max_file_size:
            _rotate(handle)
    except OSError as e:
        print(f"Logger write error: {e}", file=sys.stderr)


def _rotate(handle: LoggerHandle) -> None:
    """
    Rotate ebics.log -> ebics.log.1.gz -> ebics.log.2.gz ...
    Caller must hold handle.mutex.
    """
    try:
        if handle.file:
            handle.file.close()
            handle.file = None

        oldest = f"{handle.path}.{handle.max_archives}.gz"
        if os.path.exists(oldest):
            os.remove(oldest)

        for i in range(handle.max_archives - 1, 0, -1):
            src = f"{handle.path}.{i}.gz"
            if os.path.exists(src):
                os.replace(src, f"{handle.path}.{i + 1}.gz")

        if os.path.exists(handle.path):
            with open(handle.path, 'rb') as f_in, gzip.open(f"{handle.path}.1.gz", 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
            os.remove(handle.path)
    except OSError as e:
        print(f"Logger rotation error: {e}", file=sys.stderr)
    finally:
        try:
            handle.file = open(handle.path, 'a', encoding='utf-8')
        except OSError as e:
            print(f"Logger reopen error: {e}", file=sys.stderr)


# ============================================================================
# PUBLIC API FUNCTIONS
# ============================================================================

def parse_level(name: str) -> LogLevel:
    """Map a config level name ("debug", "info", ...) to a LogLevel. Defaults to INFO."""
    try:
        return LogLevel[name.strip().upper()]
    except (KeyError, AttributeError):
        return LogLevel.INFO


def init_logger(
    log_path: str,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    max_archives: int = DEFAULT_MAX_ARCHIVES,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    min_level: LogLevel = LogLevel.DEBUG
) -> Optional[LoggerHandle]:
    """
    Open (or create) a log file and return its handle.

    Args:
        log_path: Path to the log file (e.g., "Data/ebics.log")
        max_file_size: Size in bytes that triggers rotation
        max_archives: Number of gzip archives to keep
        buffer_size: Bytes buffered before a write
        min_level: Entries below this level are dropped

    Returns:
        LoggerHandle, or None if the file cannot be opened
    """
    try:
        parent_dir = os.path.dirname(log_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        file_handle = open(log_path, 'a', encoding='utf-8')
        file_handle.write(f"=== Logger initialized: {_timestamp()} ===\n")
        file_handle.flush()
    except OSError as e:
        print(f"Failed to initialize logger: {e}", file=sys.stderr)
        return None

    return LoggerHandle(
        path=log_path,
        file=file_handle,
        buffer_size=buffer_size,
        max_file_size=max_file_size,
        max_archives=max_archives,
        min_level=min_level
    )


def log_debug(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_entry(handle, LogLevel.DEBUG, context, message)


def log_info(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_entry(handle, LogLevel.INFO, context, message)


def log_warning(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_entry(handle, LogLevel.WARNING, context, message)


def log_error(
    handle: Optional[LoggerHandle],
    context: str,
    message: str,
    reason: Optional[str] = None
) -> None:
    """
    Log an error with an optional REASON field. Errors are flushed immediately.

    Example:
        log_error(handle, "Envelope", "AES decryption failed", "bad padding")
        # [..] ERROR | Envelope     | AES decryption failed | REASON: bad padding
    """
    _write_entry(handle, LogLevel.ERROR, context, message, reason)


@contextmanager
def phase_span(handle: Optional[LoggerHandle], context: str, label: str) -> Iterator[None]:
    """
    Trace one protocol phase: logs its start, and its end with the elapsed time.

    Example:
        with phase_span(handle, "Transaction", "STA Transfer 2/3"):
            err, body = transport(request)
    """
    started = time.monotonic()
    _write_entry(handle, LogLevel.DEBUG, context, f"{label} started")
    try:
        yield
    except Exception:
        _write_entry(handle, LogLevel.WARNING, context, f"{label} aborted by exception")
        raise
    elapsed_ms = (time.monotonic() - started) * 1000
    _write_entry(handle, LogLevel.INFO, context, f"{label} finished in {elapsed_ms:.1f} ms")


def flush_log(handle: Optional[LoggerHandle]) -> None:
    if handle is None:
        return
    with handle.mutex:
        _flush_buffer(handle)


def close_logger(handle: Optional[LoggerHandle]) -> None:
    """Flush, write the session end marker, and close the file."""
    if handle is None:
        return

    with handle.mutex:
        _flush_buffer(handle)
        if handle.file:
            try:
                handle.file.write(f"=== Logger closed: {_timestamp()} ===\n")
                handle.file.close()
            except OSError as e:
                print(f"Logger close error: {e}", file=sys.stderr)
        handle.file = None
