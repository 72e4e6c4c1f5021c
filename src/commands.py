"""
commands.py - EBICS Order Commands

One command class per order type. A command knows which documents its order
type sends in each phase and how to interpret the bank's replies; all state
of a running transaction lives in the TransactionContext passed to it.

Version: 1.0.0

Order Types:
    CCT  OZHNN  Upload    signed pain.001, every segment sent as a Transfer
    INI  DZNNN  Upload    unsecured key initialisation, single round trip
    PTK  DZHNN  Download  protocol file, Initialisation + Receipt
    SPR  UZHNN  Upload    signed placeholder " ", Initialisation only
    STA  DZHNN  Download  statements by date range (also Z01, Z53, Z54,
                          ZS2, ZS3, ZS4, ZQR, ZRF, XTD)

Command Interface:
    new_context()                     -> TransactionContext
    build_init_request(ctx)           -> (EbicsErrorCode, bytes | EbicsError)
    build_transfer_requests(ctx)      -> (EbicsErrorCode, List[bytes] | None | EbicsError)
    build_receipt_request(ctx)        -> (EbicsErrorCode, bytes | None | EbicsError)
    pending_transfers(ctx)            -> int
    interpret(ctx, raw)               -> (EbicsErrorCode, DeserializedResponse | EbicsError)

Registry:
    COMMAND_REGISTRY maps order type code -> command class
    create_command(order_type, config, keys, params) -> (EbicsErrorCode, Command | EbicsError)
"""

import base64
from typing import Any, Dict, List, Optional, Tuple, Type

from ebics_types import (
    CctParams, CommandState, CryptoErrorCode, DeserializedResponse, EbicsConfig,
    EbicsError, EbicsErrorCode, ErrorCode, IniParams, KeyRing, PtkParams, SprParams,
    STA_ORDER_TYPES, StaParams, TransactionContext, TransactionPhase, TransactionType,
)
from credit_transfer import build_credit_transfer_document, document_to_string
from envelope import (
    authenticate_document, canonicalize_document, compress_data, decompress_data,
    decrypt_order_data, encrypt_aes, encrypt_rsa, generate_nonce, generate_transaction_key,
    public_key_digest, sign_data, utc_timestamp,
)
from logger import log_debug, log_error, log_info
from response import parse_response
from segmentation import OrderDataBuffer, split_into_segments
from xml_builder import (
    BankKeyDigests, OrderDetails, RequestHeader, build_init_request, build_receipt_request,
    build_signature_pubkey_order_data, build_transfer_request, build_unsecured_request,
    build_user_signature_data, serialize,
)


COMMAND_CONTEXT = "Command"

# Order data signed by SPR in place of a business document
SPR_PLACEHOLDER = b" "

# Phase a response is expected to report, by transaction state
EXPECTED_PHASE = {
    CommandState.INITIALISATION: TransactionPhase.INITIALISATION,
    CommandState.TRANSFER: TransactionPhase.TRANSFER,
    CommandState.RECEIPT: TransactionPhase.RECEIPT,
}


class _BuildError(Exception):
    """Raised inside request builders; converted to ERR_CONSTRUCTION at the boundary."""


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


# ============================================================================
# BASE COMMAND
# ============================================================================

class Command:
    order_type = ""
    order_attribute = ""
    transaction_type = TransactionType.UPLOAD
    needs_receipt = False
    params_class: Type = object

    def __init__(self, config: EbicsConfig, keys: KeyRing, params: Any = None,
                 logger_handle: Optional[object] = None):
        self.config = config
        self.keys = keys
        self.params = params if params is not None else self.params_class()
        self.logger_handle = logger_handle

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.order_type}/{self.order_attribute})"

    def new_context(self) -> TransactionContext:
        return TransactionContext(order_type=self.order_type)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_init_request(self, ctx: TransactionContext) -> Tuple[EbicsErrorCode, Any]:
        return self._guard(TransactionPhase.INITIALISATION, self._init_request, ctx)

    def build_transfer_requests(self, ctx: TransactionContext) -> Tuple[EbicsErrorCode, Any]:
        if self.pending_transfers(ctx) == 0:
            return EbicsErrorCode.SUCCESS, None
        return self._guard(TransactionPhase.TRANSFER, self._transfer_requests, ctx)

    def build_receipt_request(self, ctx: TransactionContext) -> Tuple[EbicsErrorCode, Any]:
        if not self.needs_receipt:
            return EbicsErrorCode.SUCCESS, None
        return self._guard(TransactionPhase.RECEIPT, self._receipt_request, ctx)

    def pending_transfers(self, ctx: TransactionContext) -> int:
        """Number of Transfer round trips still owed after Initialisation."""
        return 0

    def _init_request(self, ctx: TransactionContext) -> bytes:
        raise NotImplementedError

    def _transfer_requests(self, ctx: TransactionContext) -> List[bytes]:
        raise NotImplementedError

    def _receipt_request(self, ctx: TransactionContext) -> bytes:
        self._require_transaction_id(ctx)
        return self._authenticated(build_receipt_request(self._header(), ctx.transaction_id))

    def _guard(self, phase: TransactionPhase, builder, ctx: TransactionContext) -> Tuple[EbicsErrorCode, Any]:
        """Run a builder; any failure becomes one ERR_CONSTRUCTION error naming order type and phase."""
        try:
            return EbicsErrorCode.SUCCESS, builder(ctx)
        except (_BuildError, KeyError, ValueError, TypeError) as e:
            log_error(self.logger_handle, COMMAND_CONTEXT,
                      f"Cannot create {self.order_type} request", str(e))
            return EbicsErrorCode.ERR_CONSTRUCTION, EbicsError(
                code=EbicsErrorCode.ERR_CONSTRUCTION, order_type=self.order_type,
                phase=phase, message=f"can't create {self.order_type} request", cause=e
            )

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _header(self) -> RequestHeader:
        user = self.config.user
        return RequestHeader(
            host_id=user.host_id,
            partner_id=user.partner_id,
            user_id=user.user_id,
            version=self.config.client.version,
            revision=self.config.client.revision,
            security_medium=getattr(self.params, "security_medium", user.security_medium),
            nonce=generate_nonce(),
            timestamp=utc_timestamp(),
        )

    def _order_details(self) -> OrderDetails:
        return OrderDetails(order_type=self.order_type, order_attribute=self.order_attribute)

    def _bank_digests(self) -> BankKeyDigests:
        err_auth, auth_digest = public_key_digest(self.keys.bank_authentication)
        err_enc, enc_digest = public_key_digest(self.keys.bank_encryption)
        if err_auth != CryptoErrorCode.SUCCESS or err_enc != CryptoErrorCode.SUCCESS:
            raise _BuildError("bank public keys are not loaded")
        return BankKeyDigests(
            authentication=auth_digest,
            encryption=enc_digest,
            authentication_version=self.config.bank.authentication_version,
            encryption_version=self.config.bank.encryption_version,
        )

    def _authenticated(self, root) -> bytes:
        err = authenticate_document(root, self.keys.user_authentication, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"authentication signature failed ({err.name})")
        return serialize(root)

    def _protect(self, data: bytes, key: bytes) -> str:
        """compress -> encrypt -> base64"""
        err, compressed = compress_data(data, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"compression failed ({err.name})")
        err, encrypted = encrypt_aes(compressed, key, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"encryption failed ({err.name})")
        return _b64(encrypted)

    def _signature_data(self, signed_bytes: bytes, key: bytes) -> str:
        """Sign order data and wrap the signature as encrypted UserSignatureData."""
        user = self.config.user
        err, signature = sign_data(signed_bytes, self.keys.user_signature,
                                   user.signature_version, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"order signature failed ({err.name})")
        user_signature = build_user_signature_data(user.signature_version, signature,
                                                   user.partner_id, user.user_id)
        return self._protect(serialize(user_signature), key)

    def _wrapped_key(self, key: bytes) -> Tuple[bytes, bytes]:
        err, wrapped = encrypt_rsa(key, self.keys.bank_encryption, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"transaction key wrap failed ({err.name})")
        return wrapped, public_key_digest(self.keys.bank_encryption)[1]

    def _require_transaction_id(self, ctx: TransactionContext) -> None:
        if not ctx.transaction_id:
            raise _BuildError("no transaction id; Initialisation has not completed")

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def interpret(self, ctx: TransactionContext, raw: Any) -> Tuple[EbicsErrorCode, Any]:
        """
        Interpret one response and update the context.

        Error and recovery sync responses are returned untouched with
        SUCCESS; the context is not modified for them.
        """
        err, dr = parse_response(
            raw, self.order_type,
            bank_auth_key=self.keys.bank_authentication,
            verify_signature=self.config.client.verify_bank_signature,
            logger_handle=self.logger_handle
        )
        if err != EbicsErrorCode.SUCCESS or dr.has_error or dr.is_recovery_sync:
            return err, dr

        expected = EXPECTED_PHASE.get(ctx.state)
        if dr.phase is not None and dr.phase != expected:
            return self._deserialization_error(
                ctx, raw, f"unexpected {dr.phase.name} response in state {ctx.state.name}")

        try:
            if dr.phase == TransactionPhase.INITIALISATION:
                self._on_init_response(ctx, dr)
                ctx.transaction_id = dr.transaction_id
            elif dr.phase == TransactionPhase.TRANSFER:
                self._on_transfer_response(ctx, dr)
                ctx.acknowledged_segments += 1
        except (_BuildError, ValueError, TypeError) as e:
            return self._deserialization_error(ctx, raw, str(e), e)

        return EbicsErrorCode.SUCCESS, dr

    def _on_init_response(self, ctx: TransactionContext, dr: DeserializedResponse) -> None:
        pass

    def _on_transfer_response(self, ctx: TransactionContext, dr: DeserializedResponse) -> None:
        pass

    def _deserialization_error(self, ctx: TransactionContext, raw: Any, message: str,
                               cause: Optional[BaseException] = None) -> Tuple[EbicsErrorCode, EbicsError]:
        log_error(self.logger_handle, COMMAND_CONTEXT, f"Cannot deserialize {self.order_type} response", message)
        payload = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw
        return EbicsErrorCode.ERR_DESERIALIZATION, EbicsError(
            code=EbicsErrorCode.ERR_DESERIALIZATION, order_type=self.order_type,
            phase=EXPECTED_PHASE.get(ctx.state), message=message, cause=cause, payload=payload
        )


# ============================================================================
# UPLOAD COMMANDS
# ============================================================================

class UploadCommand(Command):
    """Signed upload: transaction key, encrypted signature data, segmented order data."""
    transaction_type = TransactionType.UPLOAD

    def order_document(self) -> Optional[bytes]:
        """Canonical order data to sign and upload; None for signature-only orders."""
        raise NotImplementedError

    def signed_bytes(self, document: Optional[bytes]) -> bytes:
        return document

    def _init_request(self, ctx: TransactionContext) -> bytes:
        document = self.order_document()
        key = generate_transaction_key()
        signature_data = self._signature_data(self.signed_bytes(document), key)

        segments = []
        if document is not None:
            err, segments = split_into_segments(self._protect(document, key),
                                                self.config.client.segment_size, self.logger_handle)
            if err != ErrorCode.SUCCESS:
                raise _BuildError(f"segmentation failed ({err.name})")

        wrapped, encryption_digest = self._wrapped_key(key)
        root = build_init_request(
            self._header(), self._order_details(), self._bank_digests(),
            num_segments=len(segments),
            encryption_pubkey_digest=encryption_digest,
            wrapped_transaction_key=wrapped,
            signature_data=signature_data,
        )
        request = self._authenticated(root)

        # Context is only updated once the request is complete
        ctx.transaction_key = key
        ctx.segments = segments
        ctx.num_segments = len(segments)
        log_info(self.logger_handle, COMMAND_CONTEXT,
                 f"{self.order_type} upload prepared: {ctx.num_segments} segment(s)")
        return request

    def pending_transfers(self, ctx: TransactionContext) -> int:
        return max(len(ctx.segments) - ctx.acknowledged_segments, 0)

    def _transfer_requests(self, ctx: TransactionContext) -> List[bytes]:
        self._require_transaction_id(ctx)
        requests = []
        total = len(ctx.segments)
        # Acknowledged segments are not sent again
        for index in range(ctx.acknowledged_segments, total):
            segment = ctx.segments[index]
            log_debug(self.logger_handle, COMMAND_CONTEXT, f"Creating transfer request {index + 1}/{total}")
            root = build_transfer_request(self._header(), ctx.transaction_id,
                                          index + 1, index + 1 == total, segment)
            requests.append(self._authenticated(root))
        return requests


class CctCommand(UploadCommand):
    """SEPA credit transfer upload (pain.001)."""
    order_type = "CCT"
    order_attribute = "OZHNN"
    params_class = CctParams

    def order_document(self) -> bytes:
        err, document = build_credit_transfer_document(self.params, self.logger_handle)
        if err != ErrorCode.SUCCESS:
            raise _BuildError(f"invalid amount or empty payment in {self.order_type} parameters")
        return canonicalize_document(document_to_string(document)).encode('utf-8')


class SprCommand(UploadCommand):
    """Suspension of the subscriber's signature authorisation."""
    order_type = "SPR"
    order_attribute = "UZHNN"
    params_class = SprParams

    def order_document(self) -> None:
        return None

    def signed_bytes(self, document: Optional[bytes]) -> bytes:
        return SPR_PLACEHOLDER


class IniCommand(Command):
    """Sends the user's public signature key in an unsecured request."""
    order_type = "INI"
    order_attribute = "DZNNN"
    params_class = IniParams

    def _init_request(self, ctx: TransactionContext) -> bytes:
        key = self.keys.user_signature
        if key is None:
            raise _BuildError("user signature key is not loaded")
        user = self.config.user
        order_data = build_signature_pubkey_order_data(
            key.n, key.e, user.signature_version, user.partner_id, user.user_id, utc_timestamp()
        )
        err, compressed = compress_data(serialize(order_data), self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"compression failed ({err.name})")
        order = OrderDetails(self.order_type, self.order_attribute, standard_params=False)
        return serialize(build_unsecured_request(self._header(), order, _b64(compressed)))


# ============================================================================
# DOWNLOAD COMMANDS
# ============================================================================

class DownloadCommand(Command):
    """Download with receipt: order data decrypted per segment into an OrderDataBuffer."""
    transaction_type = TransactionType.DOWNLOAD
    needs_receipt = True
    uses_transfer = True

    def _order_details(self) -> OrderDetails:
        return OrderDetails(
            self.order_type, self.order_attribute,
            start_date=getattr(self.params, "start_date", None),
            end_date=getattr(self.params, "end_date", None),
        )

    def _init_request(self, ctx: TransactionContext) -> bytes:
        root = build_init_request(self._header(), self._order_details(), self._bank_digests())
        return self._authenticated(root)

    def pending_transfers(self, ctx: TransactionContext) -> int:
        if not self.uses_transfer or ctx.init_last_segment or ctx.num_segments <= ctx.init_segment:
            return 0
        return max(ctx.num_segments - ctx.init_segment - ctx.acknowledged_segments, 0)

    def _transfer_requests(self, ctx: TransactionContext) -> List[bytes]:
        self._require_transaction_id(ctx)
        requests = []
        first = ctx.init_segment + ctx.acknowledged_segments + 1
        for segment_number in range(first, ctx.num_segments + 1):
            log_debug(self.logger_handle, COMMAND_CONTEXT,
                      f"Creating transfer request for segment {segment_number}/{ctx.num_segments}")
            root = build_transfer_request(self._header(), ctx.transaction_id, segment_number,
                                          segment_number == ctx.num_segments)
            requests.append(self._authenticated(root))
        return requests

    def _on_init_response(self, ctx: TransactionContext, dr: DeserializedResponse) -> None:
        ctx.num_segments = dr.num_segments
        ctx.init_segment = dr.segment_number or (1 if dr.num_segments > 0 else 0)
        ctx.init_last_segment = dr.last_segment or dr.num_segments <= 1
        ctx.order_data = OrderDataBuffer(dr.num_segments)
        if dr.num_segments > 0:
            self._store_segment(ctx, dr, ctx.init_segment)
        ctx.last_segment_seen = ctx.init_last_segment

    def _on_transfer_response(self, ctx: TransactionContext, dr: DeserializedResponse) -> None:
        self._store_segment(ctx, dr, dr.segment_number)
        ctx.last_segment_seen = ctx.last_segment_seen or dr.last_segment

    def _store_segment(self, ctx: TransactionContext, dr: DeserializedResponse, segment_number: int) -> None:
        err, value = decrypt_order_data(dr.document, self.keys.user_encryption,
                                        ctx.transaction_key, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"order data decryption failed ({err.name})")
        compressed, ctx.transaction_key = value
        err, plain = decompress_data(compressed, self.logger_handle)
        if err != CryptoErrorCode.SUCCESS:
            raise _BuildError(f"order data decompression failed ({err.name})")
        try:
            text = plain.decode('utf-8')
        except UnicodeDecodeError as e:
            raise _BuildError(f"order data is not UTF-8: {e}") from e
        if ctx.order_data.store(segment_number, text) != ErrorCode.SUCCESS:
            raise _BuildError(f"segment {segment_number} outside 1..{ctx.num_segments}")
        log_debug(self.logger_handle, COMMAND_CONTEXT,
                  f"{self.order_type} segment {segment_number}/{ctx.num_segments}: {len(plain)} bytes")


class PtkCommand(DownloadCommand):
    """Customer protocol (pending transaction) download, delivered in Initialisation."""
    order_type = "PTK"
    order_attribute = "DZHNN"
    params_class = PtkParams
    uses_transfer = False


class StaCommand(DownloadCommand):
    """Account statement download for STA and the bank specific variants."""
    order_attribute = "DZHNN"
    params_class = StaParams

    def __init__(self, config: EbicsConfig, keys: KeyRing, params: Any = None,
                 logger_handle: Optional[object] = None):
        super().__init__(config, keys, params, logger_handle)
        self.order_type = (self.params.order_type or "STA").upper()


# ============================================================================
# REGISTRY
# ============================================================================

COMMAND_REGISTRY: Dict[str, Type[Command]] = {
    "CCT": CctCommand,
    "INI": IniCommand,
    "PTK": PtkCommand,
    "SPR": SprCommand,
}
COMMAND_REGISTRY.update({code: StaCommand for code in STA_ORDER_TYPES})


def create_command(
    order_type: str,
    config: EbicsConfig,
    keys: KeyRing,
    params: Any = None,
    logger_handle: Optional[object] = None
) -> Tuple[EbicsErrorCode, Any]:
    """
    Look up and construct the command for an order type code.

    STA family codes set StaParams.order_type so the request names the
    requested variant.

    Returns:
        SUCCESS, Command
        ERR_CONSTRUCTION, EbicsError for an unknown order type or wrong params type
    """
    code = (order_type or "").upper()
    command_class = COMMAND_REGISTRY.get(code)
    if command_class is None:
        log_error(logger_handle, COMMAND_CONTEXT, "Unknown order type", repr(order_type))
        return EbicsErrorCode.ERR_CONSTRUCTION, EbicsError(
            code=EbicsErrorCode.ERR_CONSTRUCTION, order_type=code,
            message=f"unsupported order type {order_type!r}"
        )

    if params is None:
        params = command_class.params_class()
    if not isinstance(params, command_class.params_class):
        return EbicsErrorCode.ERR_CONSTRUCTION, EbicsError(
            code=EbicsErrorCode.ERR_CONSTRUCTION, order_type=code,
            message=f"{code} expects {command_class.params_class.__name__}, got {type(params).__name__}"
        )
    if command_class is StaCommand:
        params.order_type = code

    return EbicsErrorCode.SUCCESS, command_class(config, keys, params, logger_handle)
