"""
test_client.py - Integration Tests for the EBICS Client Facade

Full transactions through EbicsClient against the mock bank.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from test_utils import ScriptedTransport, create_cct_params
from client import EbicsClient
from ebics_types import EbicsError, EbicsErrorCode, StaParams, TransactionResult
from logger import close_logger, init_logger

pytestmark = pytest.mark.integration


def test_sta_download(ebics_config, keyring, mock_bank):
    transport = ScriptedTransport(mock_bank.download_responses(["first,", "second"]))
    client = EbicsClient(ebics_config, keyring, transport=transport)

    err, result = client.sta()
    assert err == EbicsErrorCode.SUCCESS
    assert isinstance(result, TransactionResult)
    assert result.order_type == "STA"
    assert result.data == "first,second"
    assert len(transport.requests) == 3


def test_bank_specific_statement_code(ebics_config, keyring, mock_bank):
    transport = ScriptedTransport(mock_bank.download_responses(["camt"]))
    err, result = EbicsClient(ebics_config, keyring, transport=transport).sta(StaParams(order_type="Z53"))
    assert err == EbicsErrorCode.SUCCESS
    assert result.order_type == "Z53"
    assert b"<OrderType>Z53</OrderType>" in transport.requests[0]


def test_cct_upload(ebics_config, keyring, mock_bank):
    transport = ScriptedTransport(mock_bank.upload_responses(1))
    err, result = EbicsClient(ebics_config, keyring, transport=transport).cct(create_cct_params("99.95"))
    assert err == EbicsErrorCode.SUCCESS
    assert result.transaction_id == mock_bank.transaction_id


def test_spr_and_ptk(ebics_config, keyring, mock_bank):
    client = EbicsClient(ebics_config, keyring, transport=ScriptedTransport(mock_bank.upload_responses(0)))
    assert client.spr()[0] == EbicsErrorCode.SUCCESS

    client.transport = ScriptedTransport(mock_bank.download_responses(["entry"]))
    err, result = client.ptk()
    assert err == EbicsErrorCode.SUCCESS
    assert result.data == "entry"


def test_ini(ebics_config, keyring, mock_bank):
    transport = ScriptedTransport([mock_bank.key_management_response()])
    err, _ = EbicsClient(ebics_config, keyring, transport=transport).ini()
    assert err == EbicsErrorCode.SUCCESS
    assert b"ebicsUnsecuredRequest" in transport.requests[0]


def test_unknown_order_type_sends_nothing(ebics_config, keyring):
    transport = ScriptedTransport([])
    err, error = EbicsClient(ebics_config, keyring, transport=transport).run("XYZ")
    assert err == EbicsErrorCode.ERR_CONSTRUCTION
    assert isinstance(error, EbicsError)
    assert transport.requests == []


def test_error_logged(ebics_config, keyring, mock_bank, temp_dir):
    log_path = os.path.join(temp_dir, "ebics.log")
    handle = init_logger(log_path)
    transport = ScriptedTransport([mock_bank.response("Initialisation", technical_code="091116",
                                                      report_text="[EBICS_MAX_TRANSACTIONS_EXCEEDED]")])
    err, error = EbicsClient(ebics_config, keyring, transport=transport, logger_handle=handle).sta()
    close_logger(handle)

    assert err == EbicsErrorCode.ERR_PROTOCOL
    assert error.return_code == "091116"
    with open(log_path, encoding='utf-8') as f:
        content = f.read()
    assert "STA transaction failed" in content
    assert "EBICS_MAX_TRANSACTIONS_EXCEEDED" in content


def test_default_transport_posts_to_configured_url(ebics_config, keyring, monkeypatch):
    calls = []

    def fake_post(url, document, timeout_sec, logger_handle):
        calls.append((url, timeout_sec))
        return EbicsErrorCode.ERR_TRANSPORT, "unreachable"

    monkeypatch.setattr("network.post_request", fake_post)
    err, _ = EbicsClient(ebics_config, keyring).sta()
    assert err == EbicsErrorCode.ERR_TRANSPORT
    assert calls == [("https://ebics.bank.test/ebicsweb", 60)]
