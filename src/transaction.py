"""
transaction.py - EBICS Transaction Phase State Machine

A Transaction owns the context of exactly one protocol transaction and drives
its command through Initialisation -> Transfer x N -> Receipt.

Version: 1.0.0

States:
    INITIALISATION -> TRANSFER -> RECEIPT -> COMPLETE
           |              |          |
           +--------------+----------+----> FAILED

    A state is skipped when the order type has nothing to send in it. An
    error response, a recovery sync request, an unreadable response or a
    transport failure moves the transaction to FAILED; nothing is retried.

Usage (step by step):
    tx = Transaction(command, logger_handle)
    err, request = tx.init_request()
    err, dr = tx.deserialize(send(request))
    err, requests = tx.transfer_requests()     # None when nothing to transfer
    for request in requests or []:
        err, dr = tx.deserialize(send(request))
    err, request = tx.receipt_request()        # None when no receipt is needed
    ...
    tx.data                                    # str once COMPLETE

Usage (driven):
    err, result = Transaction(command).run(transport)
    # transport(document: bytes) -> (EbicsErrorCode, response body or error text)
"""

from typing import Any, Callable, Optional, Tuple

from ebics_types import (
    CommandState, DeserializedResponse, EbicsError, EbicsErrorCode, ErrorCode,
    PHASE_NAMES, RETURN_CODE_TEXT, TransactionPhase, TransactionResult, TransactionType,
)
from commands import EXPECTED_PHASE
from logger import log_error, log_info, log_warning, phase_span


TRANSACTION_CONTEXT = "Transaction"

Transport = Callable[[bytes], Tuple[EbicsErrorCode, str]]


class Transaction:

    def __init__(self, command, logger_handle: Optional[object] = None):
        self.command = command
        self.ctx = command.new_context()
        self.logger_handle = logger_handle
        self.last_response: Optional[DeserializedResponse] = None
        self.error: Optional[EbicsError] = None

    @property
    def state(self) -> CommandState:
        return self.ctx.state

    @property
    def order_type(self) -> str:
        return self.command.order_type

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def init_request(self) -> Tuple[EbicsErrorCode, Any]:
        """First request document of the transaction."""
        if self.ctx.state != CommandState.INITIALISATION:
            return self._state_error(TransactionPhase.INITIALISATION)
        return self._checked(self.command.build_init_request(self.ctx))

    def transfer_requests(self) -> Tuple[EbicsErrorCode, Any]:
        """Transfer request documents in ascending segment order, or None."""
        if self.ctx.state != CommandState.TRANSFER:
            return EbicsErrorCode.SUCCESS, None
        return self._checked(self.command.build_transfer_requests(self.ctx))

    def receipt_request(self) -> Tuple[EbicsErrorCode, Any]:
        """Closing receipt document, or None when the order type sends none."""
        if self.ctx.state != CommandState.RECEIPT:
            return EbicsErrorCode.SUCCESS, None
        return self._checked(self.command.build_receipt_request(self.ctx))

    def _checked(self, outcome: Tuple[EbicsErrorCode, Any]) -> Tuple[EbicsErrorCode, Any]:
        err, value = outcome
        if err != EbicsErrorCode.SUCCESS:
            self._fail(value)
        return err, value

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def deserialize(self, body: Any) -> Tuple[EbicsErrorCode, Any]:
        """
        Feed one raw response body and advance the state machine.

        Returns:
            SUCCESS, DeserializedResponse for normal progress
            ERR_PROTOCOL, EbicsError when the bank returned an error code
            ERR_RECOVERY_SYNC, EbicsError when the bank requests recovery
            ERR_DESERIALIZATION, EbicsError when the body cannot be interpreted
        """
        phase = EXPECTED_PHASE.get(self.ctx.state)
        if phase is None:
            return self._state_error(None)

        err, dr = self.command.interpret(self.ctx, body)
        if err != EbicsErrorCode.SUCCESS:
            self._fail(dr)
            return err, dr

        self.last_response = dr
        if dr.has_error:
            code = dr.business_code if dr.technical_code[:2] == "00" else dr.technical_code
            return self._fail(EbicsError(
                code=EbicsErrorCode.ERR_PROTOCOL, order_type=self.order_type, phase=phase,
                message=dr.report_text or RETURN_CODE_TEXT.get(code, "bank returned an error"),
                return_code=code
            ))
        if dr.is_recovery_sync:
            return self._fail(EbicsError(
                code=EbicsErrorCode.ERR_RECOVERY_SYNC, order_type=self.order_type, phase=phase,
                message="bank requested transaction recovery synchronisation",
                return_code=dr.technical_code
            ))

        self._advance()
        return EbicsErrorCode.SUCCESS, dr

    def _advance(self) -> None:
        state = self.ctx.state
        if state in (CommandState.INITIALISATION, CommandState.TRANSFER) \
                and self.command.pending_transfers(self.ctx) > 0:
            self.ctx.state = CommandState.TRANSFER
        elif state != CommandState.RECEIPT and self.command.needs_receipt:
            self.ctx.state = CommandState.RECEIPT
        else:
            self.ctx.state = CommandState.COMPLETE
            log_info(self.logger_handle, TRANSACTION_CONTEXT,
                     f"{self.order_type} transaction {self.ctx.transaction_id or '-'} complete")

    def _fail(self, error: EbicsError) -> Tuple[EbicsErrorCode, EbicsError]:
        self.ctx.state = CommandState.FAILED
        self.error = error
        log_error(self.logger_handle, TRANSACTION_CONTEXT,
                  f"{self.order_type} transaction failed", error.describe())
        return error.code, error

    def _state_error(self, phase: Optional[TransactionPhase]) -> Tuple[EbicsErrorCode, EbicsError]:
        return EbicsErrorCode.ERR_CONSTRUCTION, EbicsError(
            code=EbicsErrorCode.ERR_CONSTRUCTION, order_type=self.order_type, phase=phase,
            message=f"transaction is {self.ctx.state.name}"
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def data(self) -> Optional[str]:
        """Downloaded order data; None until the transaction is COMPLETE with every segment."""
        buffer = self.ctx.order_data
        if self.ctx.state != CommandState.COMPLETE or buffer is None or not self.ctx.last_segment_seen:
            return None
        err, text = buffer.join()
        return text if err == ErrorCode.SUCCESS else None

    @property
    def binary_data(self) -> Optional[bytes]:
        text = self.data
        return text.encode('utf-8') if text is not None else None

    def partial_data(self) -> str:
        """Whatever has been downloaded so far; unreceived segments are empty."""
        return self.ctx.order_data.partial() if self.ctx.order_data is not None else ""

    def result(self) -> TransactionResult:
        return TransactionResult(
            order_type=self.order_type,
            transaction_id=self.ctx.transaction_id,
            num_segments=self.ctx.num_segments,
            data=self.data,
            binary_data=self.binary_data,
            last_response=self.last_response,
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _exchange(self, transport: Transport, request: bytes, label: str,
                  phase: TransactionPhase) -> Tuple[EbicsErrorCode, Any]:
        with phase_span(self.logger_handle, TRANSACTION_CONTEXT, label):
            err, body = transport(request)
            if err != EbicsErrorCode.SUCCESS:
                return self._fail(EbicsError(
                    code=EbicsErrorCode.ERR_TRANSPORT, order_type=self.order_type, phase=phase,
                    message=str(body) if body else "transport failed"
                ))
            return self.deserialize(body)

    def run(self, transport: Transport) -> Tuple[EbicsErrorCode, Any]:
        """
        Drive the whole transaction over a transport.

        Download Transfer responses must arrive in ascending segment order;
        a response for any other segment fails the transaction.

        Returns:
            SUCCESS, TransactionResult
            error code, EbicsError from the phase that failed
        """
        order = self.order_type
        err, request = self.init_request()
        if err != EbicsErrorCode.SUCCESS:
            return err, request

        err, value = self._exchange(transport, request, f"{order} {PHASE_NAMES[TransactionPhase.INITIALISATION]}",
                                    TransactionPhase.INITIALISATION)
        if err != EbicsErrorCode.SUCCESS:
            return err, value

        err, requests = self.transfer_requests()
        if err != EbicsErrorCode.SUCCESS:
            return err, requests

        requests = requests or []
        for index, request in enumerate(requests):
            err, value = self._exchange(transport, request, f"{order} Transfer {index + 1}/{len(requests)}",
                                        TransactionPhase.TRANSFER)
            if err != EbicsErrorCode.SUCCESS:
                return err, value

            expected = self.ctx.init_segment + index + 1
            if self.command.transaction_type == TransactionType.DOWNLOAD and value.segment_number != expected:
                log_warning(self.logger_handle, TRANSACTION_CONTEXT,
                            f"{order} segment {value.segment_number} received, expected {expected}")
                return self._fail(EbicsError(
                    code=EbicsErrorCode.ERR_DESERIALIZATION, order_type=order,
                    phase=TransactionPhase.TRANSFER,
                    message=f"segment {value.segment_number} out of order, expected {expected}"
                ))

        err, request = self.receipt_request()
        if err != EbicsErrorCode.SUCCESS:
            return err, request
        if request is not None:
            err, value = self._exchange(transport, request, f"{order} {PHASE_NAMES[TransactionPhase.RECEIPT]}",
                                        TransactionPhase.RECEIPT)
            if err != EbicsErrorCode.SUCCESS:
                return err, value

        if self.ctx.state != CommandState.COMPLETE:
            return self._fail(EbicsError(
                code=EbicsErrorCode.ERR_PROTOCOL, order_type=order,
                message=f"transaction ended in state {self.ctx.state.name}"
            ))

        return EbicsErrorCode.SUCCESS, self.result()
