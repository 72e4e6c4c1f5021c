"""
config.py - Configuration Management for the EBICS Client

Loads, saves and validates ebics.toml and loads the subscriber and bank RSA
keys it points to.

Version: 1.0.0

Functions:
    load_config(config_path)             -> EbicsConfig or None
    save_config(config, path)            -> bool
    get_config_value(config, key)        -> value
    set_config_value(config, key, val)   -> None
    validate_config(config)              -> ValidationResult
    load_keys(config)                    -> (ErrorCode, KeyRing)
    create_default_config_file(path)     -> bool

Example ebics.toml:
    [client]
    url = "https://ebics.bank.example/ebicsweb"
    version = "H004"
    revision = 1
    segment_size = 1048576
    verify_bank_signature = true

    [user]
    host_id = "BANKHOST"
    partner_id = "PARTNER1"
    user_id = "USER1"
    authentication_key_path = "keys/user_x002.pem"
    signature_key_path = "keys/user_a006.pem"
    encryption_key_path = "keys/user_e002.pem"

    [bank]
    authentication_key_path = "keys/bank_x002.pem"
    encryption_key_path = "keys/bank_e002.pem"
"""

import os
import tomllib
from typing import Any, Optional, Tuple

import tomli_w
from Crypto.PublicKey import RSA

from ebics_types import (
    BankConfig, ClientConfig, EbicsConfig, EbicsVersion, ErrorCode, KeyRing,
    LoggingConfig, NetworkConfig, UserConfig, ValidationResult,
)
from logger import log_error, log_info


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CONFIG_FILENAME = "config/ebics.toml"

SIGNATURE_VERSIONS = ("A005", "A006")
AUTHENTICATION_VERSIONS = ("X002",)
ENCRYPTION_VERSIONS = ("E002",)
LOG_LEVELS = ("debug", "info", "warning", "error")

# EBICS caps one segment at 1 MB of base64 order data
MAX_SEGMENT_SIZE = 1024 * 1024

CONFIG_CONTEXT = "Config"


# ============================================================================
# LOAD CONFIG
# ============================================================================

def _section(data: dict, name: str, cls):
    """Build a section dataclass from a TOML table, ignoring unknown keys."""
    values = data.get(name, {})
    known = {k: v for k, v in values.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(config_path: str) -> Optional[EbicsConfig]:
    """
    Load configuration from a TOML file.

    Args:
        config_path: Path to the ebics.toml configuration file

    Returns:
        EbicsConfig if successful, None if the file is missing or invalid
    """
    if not os.path.isfile(config_path):
        print(f"Error: Config file not found: {config_path}")
        return None

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        print(f"Error: Invalid TOML syntax in {config_path}: {e}")
        return None
    except OSError as e:
        print(f"Error: Could not read {config_path}: {e}")
        return None

    try:
        return EbicsConfig(
            client=_section(data, "client", ClientConfig),
            user=_section(data, "user", UserConfig),
            bank=_section(data, "bank", BankConfig),
            network=_section(data, "network", NetworkConfig),
            logging=_section(data, "logging", LoggingConfig),
        )
    except (AttributeError, TypeError) as e:
        print(f"Error: Invalid section layout in {config_path}: {e}")
        return None


# ============================================================================
# SAVE CONFIG
# ============================================================================

def _config_to_dict(config: EbicsConfig) -> dict:
    """TOML-compatible dictionary; unset optional values are omitted."""
    user = {k: v for k, v in vars(config.user).items() if v is not None}
    return {
        "client": dict(vars(config.client)),
        "user": user,
        "bank": dict(vars(config.bank)),
        "network": dict(vars(config.network)),
        "logging": dict(vars(config.logging)),
    }


def save_config(config: EbicsConfig, path: str) -> bool:
    """
    Save configuration to a TOML file.

    Returns:
        True if successful, False if failed
    """
    data = _config_to_dict(config)
    try:
        parent_dir = os.path.dirname(path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(data, f)
        return True
    except OSError as e:
        print(f"Error: Could not write to {path}: {e}")
        return False


def create_default_config_file(path: str = DEFAULT_CONFIG_FILENAME) -> bool:
    """Write a config file with default values; existing files are left alone."""
    if os.path.exists(path):
        return False
    return save_config(EbicsConfig(), path)


# ============================================================================
# GET / SET CONFIG VALUE
# ============================================================================

def get_config_value(config: EbicsConfig, key: str) -> Any:
    """
    Get a configuration value by dot-notation key.

    Examples:
        get_config_value(config, "client.version")  -> "H004"
        get_config_value(config, "user.host_id")    -> "BANKHOST"
        get_config_value(config, "user.missing")    -> None
    """
    current = config
    for part in key.split("."):
        if not hasattr(current, part):
            return None
        current = getattr(current, part)
    return current


def set_config_value(config: EbicsConfig, key: str, value: Any) -> None:
    """Set a configuration value by dot-notation key. Unknown keys are ignored."""
    parts = key.split(".")
    current = config
    for part in parts[:-1]:
        if not hasattr(current, part):
            return
        current = getattr(current, part)

    if hasattr(current, parts[-1]):
        setattr(current, parts[-1], value)


# ============================================================================
# VALIDATE CONFIG
# ============================================================================

def validate_config(config: EbicsConfig) -> ValidationResult:
    """
    Check a configuration for completeness and correctness.

    Returns:
        ValidationResult with is_valid and lists of errors/warnings
    """
    result = ValidationResult(is_valid=True)

    # --- Client ---
    if not config.client.url:
        result.add_error("client.url is required")
    elif not config.client.url.startswith("https://"):
        result.add_warning("client.url should use https://")
    if config.client.version not in EbicsVersion.__members__:
        result.add_error(f"client.version must be one of {tuple(EbicsVersion.__members__)}")
    if config.client.revision < 1:
        result.add_error("client.revision must be at least 1")
    if config.client.segment_size < 1:
        result.add_error("client.segment_size must be positive")
    elif config.client.segment_size > MAX_SEGMENT_SIZE:
        result.add_warning(f"client.segment_size exceeds the EBICS limit of {MAX_SEGMENT_SIZE}")
    if not config.client.verify_bank_signature:
        result.add_warning("client.verify_bank_signature is disabled")

    # --- User ---
    for name in ("host_id", "partner_id", "user_id"):
        if not getattr(config.user, name):
            result.add_error(f"user.{name} is required")
    if config.user.signature_version not in SIGNATURE_VERSIONS:
        result.add_error(f"user.signature_version must be one of {SIGNATURE_VERSIONS}")
    if config.user.authentication_version not in AUTHENTICATION_VERSIONS:
        result.add_error(f"user.authentication_version must be one of {AUTHENTICATION_VERSIONS}")
    if config.user.encryption_version not in ENCRYPTION_VERSIONS:
        result.add_error(f"user.encryption_version must be one of {ENCRYPTION_VERSIONS}")
    for name in ("authentication_key_path", "signature_key_path", "encryption_key_path"):
        if not getattr(config.user, name):
            result.add_error(f"user.{name} is required")

    # --- Bank ---
    for name in ("authentication_key_path", "encryption_key_path"):
        if not getattr(config.bank, name):
            result.add_warning(f"bank.{name} is not set - only INI/HIA can be sent")

    # --- Network ---
    if config.network.timeout_sec < 1:
        result.add_error("network.timeout_sec must be at least 1")

    # --- Logging ---
    if config.logging.level.lower() not in LOG_LEVELS:
        result.add_error(f"logging.level must be one of {LOG_LEVELS}")
    if config.logging.max_size_mb < 1:
        result.add_error("logging.max_size_mb must be at least 1")
    if config.logging.backup_count < 0:
        result.add_error("logging.backup_count cannot be negative")

    return result


# ============================================================================
# KEYS
# ============================================================================

def _load_key(path: str, passphrase: Optional[str], name: str,
              logger_handle: Optional[object]) -> Tuple[ErrorCode, Any]:
    if not path:
        return ErrorCode.SUCCESS, None
    try:
        with open(path, "rb") as f:
            return ErrorCode.SUCCESS, RSA.import_key(f.read(), passphrase=passphrase)
    except FileNotFoundError:
        log_error(logger_handle, CONFIG_CONTEXT, f"Key file for {name} not found", path)
        return ErrorCode.ERR_NOT_FOUND, None
    except OSError as e:
        log_error(logger_handle, CONFIG_CONTEXT, f"Cannot read key file for {name}", str(e))
        return ErrorCode.ERR_IO, None
    except (ValueError, IndexError, TypeError) as e:
        log_error(logger_handle, CONFIG_CONTEXT, f"Invalid RSA key for {name}", f"{path}: {e}")
        return ErrorCode.ERR_INVALID_PARAM, None


def load_keys(config: EbicsConfig, logger_handle: Optional[object] = None) -> Tuple[ErrorCode, Optional[KeyRing]]:
    """
    Load the PEM keys named in the configuration.

    User keys are private keys protected by user.key_passphrase; bank keys
    are public keys. Keys with an empty path are left as None.

    Returns:
        SUCCESS, KeyRing
        ERR_NOT_FOUND / ERR_IO / ERR_INVALID_PARAM, None on the first bad key
    """
    sources = (
        ("user_authentication", config.user.authentication_key_path, config.user.key_passphrase),
        ("user_signature", config.user.signature_key_path, config.user.key_passphrase),
        ("user_encryption", config.user.encryption_key_path, config.user.key_passphrase),
        ("bank_authentication", config.bank.authentication_key_path, None),
        ("bank_encryption", config.bank.encryption_key_path, None),
    )

    keys = KeyRing()
    for name, path, passphrase in sources:
        err, key = _load_key(path, passphrase, name, logger_handle)
        if err != ErrorCode.SUCCESS:
            return err, None
        setattr(keys, name, key)

    loaded = sum(1 for name, _, _ in sources if getattr(keys, name) is not None)
    log_info(logger_handle, CONFIG_CONTEXT, f"Loaded {loaded} RSA key(s)")
    return ErrorCode.SUCCESS, keys
