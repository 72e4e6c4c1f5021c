"""
client.py - EBICS Client Facade

Entry point for callers: builds the command for an order type, runs its
transaction over the configured transport and returns the result.

Version: 1.0.0

Usage:
    config = load_config("config/ebics.toml")
    err, keys = load_keys(config)
    client = EbicsClient(config, keys, logger_handle=init_logger(config.logging.path))

    err, result = client.sta(StaParams(start_date=date(2026, 10, 1), end_date=date(2026, 10, 15)))
    if err == EbicsErrorCode.SUCCESS:
        print(result.data)
    else:
        print(result.describe())
"""

from typing import Any, Callable, Optional, Tuple

from ebics_types import (
    CctParams, EbicsConfig, EbicsErrorCode, IniParams, KeyRing, PtkParams, SprParams, StaParams,
)
from commands import create_command
from logger import log_info
from network import make_transport
from transaction import Transaction


CLIENT_CONTEXT = "Client"


class EbicsClient:
    """
    Runs one transaction per call. Calls may run concurrently from several
    threads; each gets its own Transaction and transaction key.
    """

    def __init__(
        self,
        config: EbicsConfig,
        keys: KeyRing,
        transport: Optional[Callable[[bytes], Tuple[EbicsErrorCode, str]]] = None,
        logger_handle: Optional[object] = None
    ):
        self.config = config
        self.keys = keys
        self.logger_handle = logger_handle
        self.transport = transport or make_transport(
            config.client.url, config.network.timeout_sec, logger_handle
        )

    def run(self, order_type: str, params: Any = None) -> Tuple[EbicsErrorCode, Any]:
        """
        Run a complete transaction for an order type code.

        Returns:
            SUCCESS, TransactionResult
            error code, EbicsError
        """
        err, command = create_command(order_type, self.config, self.keys, params, self.logger_handle)
        if err != EbicsErrorCode.SUCCESS:
            return err, command

        log_info(self.logger_handle, CLIENT_CONTEXT, f"Starting {command.order_type} ({command.order_attribute})")
        return Transaction(command, self.logger_handle).run(self.transport)

    def cct(self, params: CctParams) -> Tuple[EbicsErrorCode, Any]:
        return self.run("CCT", params)

    def ini(self, params: Optional[IniParams] = None) -> Tuple[EbicsErrorCode, Any]:
        return self.run("INI", params)

    def ptk(self, params: Optional[PtkParams] = None) -> Tuple[EbicsErrorCode, Any]:
        return self.run("PTK", params)

    def spr(self, params: Optional[SprParams] = None) -> Tuple[EbicsErrorCode, Any]:
        return self.run("SPR", params)

    def sta(self, params: Optional[StaParams] = None) -> Tuple[EbicsErrorCode, Any]:
        order_type = params.order_type if params is not None else "STA"
        return self.run(order_type, params)
