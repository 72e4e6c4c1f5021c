"""
credit_transfer.py - SEPA Credit Transfer Document Builder (pain.001.001.03)

Builds the customer credit transfer initiation document uploaded with the
CCT order type. Amounts are parsed as Decimal and validated before any part
of the document is built, so an invalid amount never reaches the envelope.

Version: 1.0.0

Functions:
    parse_amount(text)                        -> (ErrorCode, Decimal)
    format_amount(value)                      -> str ("10.00")
    calculate_control_sum(payment_infos)      -> (ErrorCode, (Decimal, int))
    build_credit_transfer_document(params)    -> (ErrorCode, etree._Element)
    document_to_string(document)              -> str

Document Totals:
    GrpHdr/NbOfTxs and GrpHdr/CtrlSum cover every transaction of every
    payment information block; each PmtInf carries its own NbOfTxs/CtrlSum.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Tuple

from lxml import etree

from ebics_types import CctParams, ErrorCode, PaymentInfo
from envelope import generate_nonce, utc_timestamp
from logger import log_debug, log_error


# ============================================================================
# CONSTANTS
# ============================================================================

PAIN_NAMESPACE = "urn:iso:std:iso:20022:tech:xsd:pain.001.001.03"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"

PAYMENT_METHOD = "TRF"
SERVICE_LEVEL = "SEPA"
CHARGE_BEARER = "SLEV"
END_TO_END_NOT_PROVIDED = "NOTPROVIDED"

CENTS = Decimal("0.01")

CCT_CONTEXT = "CreditXfer"


# ============================================================================
# AMOUNTS
# ============================================================================

def parse_amount(text: str) -> Tuple[ErrorCode, Optional[Decimal]]:
    """
    Parse an amount string such as "10.00" or "1,250.50".

    Returns:
        SUCCESS, Decimal
        ERR_INVALID_PARAM, None for empty, non-numeric, non-finite or negative input,
        or for amounts with fractions of a cent
    """
    if not isinstance(text, str) or not text.strip():
        return ErrorCode.ERR_INVALID_PARAM, None

    try:
        value = Decimal(text.strip().replace(",", ""))
    except InvalidOperation:
        return ErrorCode.ERR_INVALID_PARAM, None

    if not value.is_finite() or value < 0:
        return ErrorCode.ERR_INVALID_PARAM, None
    # Amounts are exact to the cent; "10.000" passes, "0.005" does not
    if value.normalize().as_tuple().exponent < -2:
        return ErrorCode.ERR_INVALID_PARAM, None

    return ErrorCode.SUCCESS, value


def format_amount(value: Decimal) -> str:
    return str(value.quantize(CENTS, rounding=ROUND_HALF_UP))


def calculate_control_sum(
    payment_infos: List[PaymentInfo],
    logger_handle: Optional[object] = None
) -> Tuple[ErrorCode, Optional[Tuple[Decimal, int]]]:
    """
    Sum of all amounts and number of transactions across payment infos.

    Example:
        err, (total, count) = calculate_control_sum(params.payment_infos)
        # format_amount(total) == "15.50", count == 2
    """
    total = Decimal(0)
    count = 0
    for pi in payment_infos:
        for cti in pi.credit_transfer_transaction_infos:
            err, amount = parse_amount(cti.amount)
            if err != ErrorCode.SUCCESS:
                log_error(logger_handle, CCT_CONTEXT, "Invalid amount in credit transfer", repr(cti.amount))
                return err, None
            total += amount
            count += 1
    return ErrorCode.SUCCESS, (total, count)


# ============================================================================
# DOCUMENT
# ============================================================================

def _sub(parent: etree._Element, tag: str, text: Optional[str] = None, **attrib) -> etree._Element:
    element = etree.SubElement(parent, f"{{{PAIN_NAMESPACE}}}{tag}", **attrib)
    if text is not None:
        element.text = text
    return element


def _account(parent: etree._Element, tag: str, iban: str) -> None:
    account = _sub(parent, tag)
    identifier = _sub(account, "Id")
    _sub(identifier, "IBAN", iban)


def _agent(parent: etree._Element, tag: str, bic: str) -> None:
    agent = _sub(parent, tag)
    institution = _sub(agent, "FinInstnId")
    _sub(institution, "BIC", bic)


def _payment_info(parent: etree._Element, pi: PaymentInfo) -> None:
    control_sum = Decimal(0)
    for cti in pi.credit_transfer_transaction_infos:
        control_sum += parse_amount(cti.amount)[1]

    block = _sub(parent, "PmtInf")
    _sub(block, "PmtInfId", generate_nonce())
    _sub(block, "PmtMtd", PAYMENT_METHOD)
    _sub(block, "BtchBookg", "true" if pi.batch_booking else "false")
    _sub(block, "NbOfTxs", str(len(pi.credit_transfer_transaction_infos)))
    _sub(block, "CtrlSum", format_amount(control_sum))
    type_info = _sub(block, "PmtTpInf")
    service_level = _sub(type_info, "SvcLvl")
    _sub(service_level, "Cd", SERVICE_LEVEL)
    _sub(block, "ReqdExctnDt", pi.execution_date)
    debtor = _sub(block, "Dbtr")
    _sub(debtor, "Nm", pi.debtor_name)
    _account(block, "DbtrAcct", pi.debtor_account)
    _agent(block, "DbtrAgt", pi.debtor_agent)
    _sub(block, "ChrgBr", CHARGE_BEARER)

    for cti in pi.credit_transfer_transaction_infos:
        tx = _sub(block, "CdtTrfTxInf")
        payment_id = _sub(tx, "PmtId")
        _sub(payment_id, "EndToEndId", cti.end_to_end_id or END_TO_END_NOT_PROVIDED)
        amount = _sub(tx, "Amt")
        _sub(amount, "InstdAmt", format_amount(parse_amount(cti.amount)[1]), Ccy=cti.currency_code)
        _agent(tx, "CdtrAgt", cti.creditor_agent)
        creditor = _sub(tx, "Cdtr")
        _sub(creditor, "Nm", cti.creditor_name)
        _account(tx, "CdtrAcct", cti.creditor_account)
        remittance = _sub(tx, "RmtInf")
        _sub(remittance, "Ustrd", cti.remittance_info)


def build_credit_transfer_document(
    params: CctParams,
    logger_handle: Optional[object] = None
) -> Tuple[ErrorCode, Optional[etree._Element]]:
    """
    Build the pain.001.001.03 Document element for a CCT upload.

    All amounts are validated first; on any invalid amount nothing is built.

    Returns:
        SUCCESS, Document element
        ERR_INVALID_PARAM, None if there are no transactions or an amount is invalid
    """
    err, totals = calculate_control_sum(params.payment_infos, logger_handle)
    if err != ErrorCode.SUCCESS:
        return err, None

    total, count = totals
    if count == 0:
        log_error(logger_handle, CCT_CONTEXT, "Cannot build credit transfer", "no transactions")
        return ErrorCode.ERR_INVALID_PARAM, None

    root = etree.Element(
        f"{{{PAIN_NAMESPACE}}}Document",
        nsmap={None: PAIN_NAMESPACE, "xsi": XSI_NAMESPACE}
    )
    initiation = _sub(root, "CstmrCdtTrfInitn")
    group_header = _sub(initiation, "GrpHdr")
    _sub(group_header, "MsgId", generate_nonce())
    _sub(group_header, "CreDtTm", utc_timestamp())
    _sub(group_header, "NbOfTxs", str(count))
    _sub(group_header, "CtrlSum", format_amount(total))
    initiating_party = _sub(group_header, "InitgPty")
    _sub(initiating_party, "Nm", params.initiating_party)

    for pi in params.payment_infos:
        _payment_info(initiation, pi)

    log_debug(logger_handle, CCT_CONTEXT,
              f"Built pain.001 with {count} transaction(s), control sum {format_amount(total)}")
    return ErrorCode.SUCCESS, root


def document_to_string(document: etree._Element) -> str:
    """Serialized document without XML declaration, as signed and uploaded."""
    return etree.tostring(document, encoding="unicode")
