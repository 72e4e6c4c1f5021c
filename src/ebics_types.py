"""
ebics_types.py - Core Type Definitions for the EBICS Client

This module defines the enums and data structures shared by the transaction
engine: error codes, transaction phases, order parameters, the per-transaction
context and the interpreted bank response.

Version: 1.0.0

Sections:
    1. Error codes
    2. Protocol enums and return codes
    3. Order parameters
    4. Transaction state
    5. Configuration
"""

from dataclasses import dataclass, field
from datetime import date
from enum import IntEnum
from typing import Any, List, Optional


# ============================================================================
# 1. ERROR CODES
# ============================================================================

class ErrorCode(IntEnum):
    """General error codes used by helper modules."""
    SUCCESS = 0
    ERR_INVALID_PARAM = 1
    ERR_NOT_FOUND = 2
    ERR_IO = 3
    ERR_INTERNAL = 4


class EbicsErrorCode(IntEnum):
    """
    Error kinds surfaced by the transaction engine.

    Every public engine operation returns (EbicsErrorCode, value). On failure
    the value is an EbicsError describing the order type, phase and cause.
    """
    SUCCESS = 0
    ERR_PROTOCOL = 1          # Bank rejected the request (error return code)
    ERR_RECOVERY_SYNC = 2     # Bank demands transaction resynchronization
    ERR_CONSTRUCTION = 3      # Request could not be built
    ERR_DESERIALIZATION = 4   # Response could not be parsed/decrypted/verified
    ERR_TRANSPORT = 5         # Request could not be delivered


class CryptoErrorCode(IntEnum):
    """Error codes for envelope (compression and cryptography) operations."""
    SUCCESS = 0
    ERR_INVALID_KEY = 1
    ERR_ENCRYPTION_FAILED = 2
    ERR_DECRYPTION_FAILED = 3
    ERR_SIGNATURE_FAILED = 4
    ERR_VERIFICATION_FAILED = 5
    ERR_COMPRESSION_FAILED = 6
    ERR_DECOMPRESSION_FAILED = 7


# ============================================================================
# 2. PROTOCOL ENUMS AND RETURN CODES
# ============================================================================

class EbicsVersion(IntEnum):
    """Supported EBICS protocol versions."""
    H004 = 4
    H005 = 5


class KeyType(IntEnum):
    """The three subscriber key pairs."""
    AUTHENTICATION = 0
    SIGNATURE = 1
    ENCRYPTION = 2


class TransactionType(IntEnum):
    """Direction of an order's payload."""
    UPLOAD = 0
    DOWNLOAD = 1


class TransactionPhase(IntEnum):
    """Phase named in the mutable header of requests and responses."""
    INITIALISATION = 0
    TRANSFER = 1
    RECEIPT = 2


# Wire names of the phases
PHASE_NAMES = {
    TransactionPhase.INITIALISATION: "Initialisation",
    TransactionPhase.TRANSFER: "Transfer",
    TransactionPhase.RECEIPT: "Receipt",
}

PHASES_BY_NAME = {name: phase for phase, name in PHASE_NAMES.items()}


class CommandState(IntEnum):
    """Position of one transaction in the phase state machine."""
    INITIALISATION = 0
    TRANSFER = 1
    RECEIPT = 2
    COMPLETE = 3
    FAILED = 4


# Return codes used by the engine. The vocabulary is defined by the EBICS
# standard; only the codes the engine acts on are named here.
RC_OK = "000000"
RC_DOWNLOAD_POSTPROCESS_DONE = "011000"
RC_DOWNLOAD_POSTPROCESS_SKIPPED = "011001"
RC_TX_SEGMENT_NUMBER_UNDERRUN = "011101"
RC_ORDER_PARAMS_IGNORED = "031001"
RC_AUTHENTICATION_FAILED = "061001"
RC_INVALID_REQUEST = "061002"
RC_INTERNAL_ERROR = "061099"
RC_TX_RECOVERY_SYNC = "061101"
RC_INVALID_USER_OR_USER_STATE = "091002"
RC_NO_DOWNLOAD_DATA_AVAILABLE = "090005"
RC_INVALID_ORDER_TYPE = "091005"

RETURN_CODE_TEXT = {
    RC_OK: "EBICS_OK",
    RC_DOWNLOAD_POSTPROCESS_DONE: "EBICS_DOWNLOAD_POSTPROCESS_DONE",
    RC_DOWNLOAD_POSTPROCESS_SKIPPED: "EBICS_DOWNLOAD_POSTPROCESS_SKIPPED",
    RC_TX_SEGMENT_NUMBER_UNDERRUN: "EBICS_TX_SEGMENT_NUMBER_UNDERRUN",
    RC_ORDER_PARAMS_IGNORED: "EBICS_ORDER_PARAMS_IGNORED",
    RC_AUTHENTICATION_FAILED: "EBICS_AUTHENTICATION_FAILED",
    RC_INVALID_REQUEST: "EBICS_INVALID_REQUEST",
    RC_INTERNAL_ERROR: "EBICS_INTERNAL_ERROR",
    RC_TX_RECOVERY_SYNC: "EBICS_TX_RECOVERY_SYNC",
    RC_INVALID_USER_OR_USER_STATE: "EBICS_INVALID_USER_OR_USER_STATE",
    RC_NO_DOWNLOAD_DATA_AVAILABLE: "EBICS_NO_DOWNLOAD_DATA_AVAILABLE",
    RC_INVALID_ORDER_TYPE: "EBICS_INVALID_ORDER_TYPE",
}

# First two digits of a return code: 00 ok, 01 note, 03 warning, 06/09 error
ERROR_CODE_CLASSES = ("06", "09")

# Statement download order types (STA and bank specific variants)
STA_ORDER_TYPES = ("STA", "Z01", "Z53", "Z54", "ZS2", "ZS3", "ZS4", "ZQR", "ZRF", "XTD")

DEFAULT_SECURITY_MEDIUM = "0000"


# ============================================================================
# 3. ORDER PARAMETERS
# ============================================================================

@dataclass
class CreditTransferTransactionInfo:
    """One credit transfer inside a payment information block."""
    amount: str = ""
    currency_code: str = "EUR"
    creditor_name: str = ""
    creditor_account: str = ""      # IBAN
    creditor_agent: str = ""        # BIC
    remittance_info: str = ""
    end_to_end_id: Optional[str] = None


@dataclass
class PaymentInfo:
    """A batch of credit transfers debited from one account."""
    debtor_name: str = ""
    debtor_account: str = ""        # IBAN
    debtor_agent: str = ""          # BIC
    execution_date: str = ""        # yyyy-mm-dd
    batch_booking: bool = True
    credit_transfer_transaction_infos: List[CreditTransferTransactionInfo] = field(default_factory=list)


@dataclass
class CctParams:
    initiating_party: str = ""
    payment_infos: List[PaymentInfo] = field(default_factory=list)
    security_medium: str = DEFAULT_SECURITY_MEDIUM


@dataclass
class IniParams:
    security_medium: str = DEFAULT_SECURITY_MEDIUM


@dataclass
class SprParams:
    security_medium: str = DEFAULT_SECURITY_MEDIUM


@dataclass
class PtkParams:
    security_medium: str = DEFAULT_SECURITY_MEDIUM
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass
class StaParams:
    order_type: str = "STA"
    security_medium: str = DEFAULT_SECURITY_MEDIUM
    start_date: Optional[date] = None
    end_date: Optional[date] = None


# ============================================================================
# 4. TRANSACTION STATE
# ============================================================================

@dataclass(frozen=True)
class DeserializedResponse:
    """
    The bank's reply to one request, as interpreted by the engine.

    Segment numbers are 1-based. When has_error or is_recovery_sync is set
    the remaining fields are left at their defaults. The parsed document is
    kept for order data extraction and excluded from comparisons.
    """
    phase: Optional[TransactionPhase] = None
    transaction_id: Optional[str] = None
    segment_number: int = 0
    num_segments: int = 0
    last_segment: bool = False
    technical_code: str = RC_OK
    business_code: str = RC_OK
    report_text: str = ""
    has_error: bool = False
    is_recovery_sync: bool = False
    order_data: Optional[bytes] = None
    document: Any = field(default=None, compare=False, repr=False)


@dataclass
class EbicsError:
    """Failure record returned alongside a non-SUCCESS EbicsErrorCode."""
    code: EbicsErrorCode
    order_type: str = ""
    phase: Optional[TransactionPhase] = None
    message: str = ""
    cause: Optional[BaseException] = None
    payload: Optional[str] = None
    return_code: str = ""

    def describe(self) -> str:
        """Single line summary for logs and user messages."""
        phase = PHASE_NAMES.get(self.phase, "-") if self.phase is not None else "-"
        text = f"{self.code.name} [{self.order_type or '?'}/{phase}] {self.message}"
        if self.return_code:
            text += f" (return code {self.return_code})"
        if self.cause is not None:
            text += f": {self.cause}"
        return text


@dataclass
class TransactionContext:
    """
    Mutable state of one transaction, owned by exactly one Transaction.

    Command methods receive the context explicitly; nothing transaction
    specific is stored on the command itself.
    """
    order_type: str
    state: CommandState = CommandState.INITIALISATION
    transaction_id: Optional[str] = None
    transaction_key: Optional[bytes] = None
    segments: List[str] = field(default_factory=list)
    num_segments: int = 0
    init_segment: int = 0
    init_last_segment: bool = False
    acknowledged_segments: int = 0
    last_segment_seen: bool = False
    order_data: Any = None          # segmentation.OrderDataBuffer for downloads


@dataclass
class TransactionResult:
    """Outcome of a completed transaction."""
    order_type: str
    transaction_id: Optional[str] = None
    num_segments: int = 0
    data: Optional[str] = None
    binary_data: Optional[bytes] = None
    last_response: Optional[DeserializedResponse] = None


# ============================================================================
# 5. CONFIGURATION
# ============================================================================

@dataclass
class ClientConfig:
    url: str = ""
    version: str = "H004"
    revision: int = 1
    segment_size: int = 1024 * 1024
    verify_bank_signature: bool = True


@dataclass
class UserConfig:
    host_id: str = ""
    partner_id: str = ""
    user_id: str = ""
    security_medium: str = DEFAULT_SECURITY_MEDIUM
    signature_version: str = "A006"
    authentication_version: str = "X002"
    encryption_version: str = "E002"
    authentication_key_path: str = ""
    signature_key_path: str = ""
    encryption_key_path: str = ""
    key_passphrase: Optional[str] = None


@dataclass
class BankConfig:
    authentication_key_path: str = ""
    encryption_key_path: str = ""
    authentication_version: str = "X002"
    encryption_version: str = "E002"


@dataclass
class NetworkConfig:
    timeout_sec: int = 60


@dataclass
class LoggingConfig:
    path: str = "Data/ebics.log"
    level: str = "info"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class EbicsConfig:
    """Top-level configuration object."""
    client: ClientConfig = field(default_factory=ClientConfig)
    user: UserConfig = field(default_factory=UserConfig)
    bank: BankConfig = field(default_factory=BankConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class KeyRing:
    """
    Loaded RSA keys (pycryptodome RsaKey objects).

    User keys are private key pairs; bank keys are public keys.
    """
    user_authentication: Any = None
    user_signature: Any = None
    user_encryption: Any = None
    bank_authentication: Any = None
    bank_encryption: Any = None


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
