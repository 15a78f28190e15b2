"""Arbitrum retryable ticket messaging.

An L1 -> L2 message on Arbitrum is a *retryable ticket* created by
``Inbox.createRetryableTicket()``. The L1 transaction pre-pays all L2 costs:

- **Submission cost**: storage of the ticket on L2, a function of the L1 base fee
  and the calldata length. We multiply the estimate by a safety factor, because
  the L1 base fee may rise between estimation and inclusion. Unused funds are refunded.
- **Gas price bid**: the current L2 gas price
- **Max gas**: gas limit of the L2 call, simulated with the ``NodeInterface``
  precompile

The value attached to the L1 transaction is ``submission cost + gas price bid * max gas``
(plus any ETH passed to the L2 call).

Once the ticket is created on L2, the sequencer tries to execute it automatically
("auto-redeem"). If the gas bid was too low, the ticket stays alive for a week
and anyone can execute it with ``ArbRetryableTx.redeem(ticketId)``.
:py:meth:`RetryableTicketMessenger.wait_for_delivery` does this once
on our behalf when an L2 account is configured.

Example:

.. code-block:: python

    messenger = RetryableTicketMessenger(
        l1_web3,
        l2_web3,
        inbox_address="0x4Dbd4fc535Ac27206064B68FfCf827b0A60BAB3f",
        l2_sender=operator.address,
        l2_hot_wallet=operator_l2,
    )
    prepared = messenger.prepare_message(
        MessageData(sender=agent, recipient=executor, calldata=queue_calldata)
    )
    # ... send prepared.calldata to prepared.to with prepared.value from L1
    report = messenger.wait_for_delivery(l1_tx_hash, timeout=3600)
    assert report.is_delivered()
"""

import logging
import threading
import time
from dataclasses import dataclass

import rlp
from eth_typing import HexAddress
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD
from web3.types import TxReceipt

from eth_l2_bridge.abi import get_contract, get_deployed_contract
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.messaging.base import (
    DeliveryReport,
    ManualFinalizationRequired,
    MessageData,
    MessageDeliveryTimeout,
    MessageExecutionFailed,
    MessageStatus,
    PreparedMessage,
    advance_status,
    create_source_timeout_report,
    fetch_receipt,
)
from eth_l2_bridge.polling import BackoffPolicy, suspend_until
from eth_l2_bridge.trace import TransactionAssertionError, assert_transaction_success, send_contract_call

logger = logging.getLogger(__name__)


#: ``ArbRetryableTx`` precompile on every Arbitrum chain
ARB_RETRYABLE_TX_ADDRESS = "0x000000000000000000000000000000000000006E"

#: ``NodeInterface`` virtual contract, only callable with ``eth_call`` / ``eth_estimateGas``
NODE_INTERFACE_ADDRESS = "0x00000000000000000000000000000000000000C8"

#: Bridge message kind of ``createRetryableTicket``
L1_MESSAGE_TYPE_SUBMIT_RETRYABLE_TX = 9

#: Transaction type byte of a retryable ticket submission on L2
ARBITRUM_SUBMIT_RETRYABLE_TX_TYPE = 0x69

#: Default safety factor for the submission cost estimate
DEFAULT_SUBMISSION_FEE_MULTIPLIER = 5

#: ETH the gas estimation pretends the sender deposits, so that the simulated
#: ticket creation does not fail on insufficient funds
ESTIMATION_DEPOSIT = 10**18


@dataclass(slots=True)
class RetryableTicketParams:
    """Pre-paid L2 costs of a retryable ticket."""

    #: Maximum submission cost, already multiplied by the safety factor
    max_submission_cost: int

    #: L2 gas price bid, wei
    gas_price_bid: int

    #: L2 gas limit
    max_gas: int

    #: ETH passed to the L2 call, wei
    l2_call_value: int = 0

    @property
    def deposit_value(self) -> int:
        """ETH to attach to the L1 ``createRetryableTicket()`` call."""
        return calculate_deposit_value(self.max_submission_cost, self.gas_price_bid, self.max_gas, self.l2_call_value)


def calculate_deposit_value(max_submission_cost: int, gas_price_bid: int, max_gas: int, l2_call_value: int = 0) -> int:
    """L1 call value that funds a retryable ticket.

    ``submission cost + gas price bid * max gas``, plus the ETH passed along to the L2 call.
    """
    assert max_submission_cost >= 0 and gas_price_bid >= 0 and max_gas >= 0 and l2_call_value >= 0
    return max_submission_cost + gas_price_bid * max_gas + l2_call_value


class RetryableGasEstimator:
    """Read the inputs of retryable ticket pricing from L1 and L2 nodes."""

    def __init__(self, l1_web3: Web3, l2_web3: Web3, inbox_address: HexAddress | str):
        self.l1_web3 = l1_web3
        self.l2_web3 = l2_web3
        self.inbox = get_deployed_contract(l1_web3, "ArbitrumInbox.json", inbox_address)
        self.node_interface = get_deployed_contract(l2_web3, "NodeInterface.json", NODE_INTERFACE_ADDRESS)

    def fetch_l1_base_fee(self) -> int:
        block = self.l1_web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        assert base_fee is not None, "Latest L1 block did not contain base fee. Is the L1 network EIP-1559 enabled?"
        return base_fee

    def estimate_submission_fee(self, data_length: int, l1_base_fee: int) -> int:
        """Submission cost for a ticket carrying ``data_length`` bytes of calldata."""
        return self.inbox.functions.calculateRetryableSubmissionFee(data_length, l1_base_fee).call()

    def fetch_l2_gas_price(self) -> int:
        return self.l2_web3.eth.gas_price

    def estimate_retryable_gas_limit(self, message: MessageData) -> int:
        """Simulate the ticket creation and redeem on L2 and return the gas it uses."""
        refund_address = message.get_refund_address()
        return self.node_interface.functions.estimateRetryableTicket(
            Web3.to_checksum_address(message.sender),
            ESTIMATION_DEPOSIT + message.l2_call_value,
            Web3.to_checksum_address(message.recipient),
            message.l2_call_value,
            Web3.to_checksum_address(refund_address),
            Web3.to_checksum_address(refund_address),
            bytes(message.calldata),
        ).estimate_gas({"from": Web3.to_checksum_address(message.sender)})


@dataclass(slots=True)
class RetryableTicket:
    """A retryable ticket read back from the L1 transaction that created it."""

    #: L2 chain id
    l2_chain_id: int

    #: Inbox message number
    message_number: int

    #: Ticket id, equals the hash of the L2 ticket creation transaction
    ticket_id: HexBytes

    #: Aliased L1 sender
    sender: HexAddress

    #: L1 base fee at the time of the message
    l1_base_fee: int

    #: L2 call target
    destination: HexAddress

    l2_call_value: int

    #: ETH sent with the L1 transaction
    l1_value: int

    max_submission_fee: int

    excess_fee_refund_address: HexAddress

    call_value_refund_address: HexAddress

    gas_limit: int

    max_fee_per_gas: int

    #: L2 calldata
    data: bytes


@dataclass(slots=True)
class TicketStatus:
    """Observed state of a ticket on L2."""

    status: MessageStatus

    #: Successful redeem transaction, if any
    redeem_tx_hash: HexBytes | None = None


def decode_retryable_message_data(data: bytes) -> dict:
    """Decode the packed payload of an ``InboxMessageDelivered`` event of a retryable ticket.

    The payload is nine 32-byte words followed by the L2 calldata.
    """
    data = bytes(data)
    assert len(data) >= 9 * 32, f"Retryable message data too short: {len(data)} bytes"

    def word(i: int) -> int:
        return int.from_bytes(data[i * 32 : (i + 1) * 32], "big")

    def address(i: int) -> HexAddress:
        return to_checksum_address(data[i * 32 + 12 : (i + 1) * 32])

    data_length = word(8)
    call_data = data[9 * 32 : 9 * 32 + data_length]
    assert len(call_data) == data_length, f"Truncated retryable calldata: expected {data_length}, got {len(call_data)}"

    return {
        "destination": address(0),
        "l2_call_value": word(1),
        "l1_value": word(2),
        "max_submission_fee": word(3),
        "excess_fee_refund_address": address(4),
        "call_value_refund_address": address(5),
        "gas_limit": word(6),
        "max_fee_per_gas": word(7),
        "data": call_data,
    }


def calculate_submit_retryable_id(
    l2_chain_id: int,
    sender: HexAddress | str,
    message_number: int,
    l1_base_fee: int,
    destination: HexAddress | str,
    l2_call_value: int,
    l1_value: int,
    max_submission_fee: int,
    excess_fee_refund_address: HexAddress | str,
    call_value_refund_address: HexAddress | str,
    gas_limit: int,
    max_fee_per_gas: int,
    data: bytes,
) -> HexBytes:
    """Compute the L2 transaction hash of a retryable ticket creation.

    This is also the ticket id used with ``ArbRetryableTx``.
    The hash covers the typed transaction ``0x69 || rlp([...])``.
    """

    def to_addr_bytes(a: str) -> bytes:
        return bytes(HexBytes(a))

    dest_bytes = to_addr_bytes(destination)
    if dest_bytes == b"\x00" * 20:
        dest_bytes = b""

    fields = [
        l2_chain_id,
        message_number.to_bytes(32, "big"),
        to_addr_bytes(sender),
        l1_base_fee,
        l1_value,
        max_fee_per_gas,
        gas_limit,
        dest_bytes,
        l2_call_value,
        to_addr_bytes(call_value_refund_address),
        max_submission_fee,
        to_addr_bytes(excess_fee_refund_address),
        bytes(data),
    ]
    encoded = bytes([ARBITRUM_SUBMIT_RETRYABLE_TX_TYPE]) + rlp.encode(fields)
    return HexBytes(keccak(encoded))


class RetryableTicketMessenger:
    """Send and follow L1 -> L2 messages as Arbitrum retryable tickets."""

    def __init__(
        self,
        l1_web3: Web3,
        l2_web3: Web3,
        inbox_address: HexAddress | str,
        estimator: RetryableGasEstimator | None = None,
        submission_fee_multiplier: int = DEFAULT_SUBMISSION_FEE_MULTIPLIER,
        l2_sender: HexAddress | str | None = None,
        l2_hot_wallet: HotWallet | None = None,
        backoff: BackoffPolicy | None = None,
        cancel: threading.Event | None = None,
        redeem_gas: int | None = None,
    ):
        """
        :param inbox_address:
            Arbitrum ``Inbox`` (delayed inbox) on L1

        :param estimator:
            Pricing input source. Created from the connections when not given.

        :param submission_fee_multiplier:
            Safety factor on the submission cost estimate

        :param l2_sender:
            L2 account used to redeem tickets that were not auto-redeemed.
            Without it, such tickets are reported as needing manual finalization.

        :param l2_hot_wallet:
            Local signer for ``l2_sender``

        :param cancel:
            Set to abort :py:meth:`wait_for_delivery` from another thread
        """
        assert submission_fee_multiplier >= 1
        self.l1_web3 = l1_web3
        self.l2_web3 = l2_web3
        self.inbox = get_deployed_contract(l1_web3, "ArbitrumInbox.json", inbox_address)
        self.estimator = estimator or RetryableGasEstimator(l1_web3, l2_web3, inbox_address)
        self.submission_fee_multiplier = submission_fee_multiplier
        self.l2_sender = Web3.to_checksum_address(l2_sender) if l2_sender else None
        self.l2_hot_wallet = l2_hot_wallet
        self.backoff = backoff or BackoffPolicy()
        self.cancel = cancel
        self.redeem_gas = redeem_gas
        self.arb_retryable_tx = get_deployed_contract(l2_web3, "ArbRetryableTx.json", ARB_RETRYABLE_TX_ADDRESS)

    def __repr__(self):
        return f"<RetryableTicketMessenger inbox {self.inbox.address}>"

    def estimate_ticket_params(self, message: MessageData) -> RetryableTicketParams:
        """Price a retryable ticket for the message."""
        l1_base_fee = self.estimator.fetch_l1_base_fee()
        # Fee formula counts the 4-byte selector on top of the calldata
        submission_fee = self.estimator.estimate_submission_fee(len(message.calldata) + 4, l1_base_fee)
        gas_price_bid = self.estimator.fetch_l2_gas_price()
        max_gas = self.estimator.estimate_retryable_gas_limit(message)
        params = RetryableTicketParams(
            max_submission_cost=submission_fee * self.submission_fee_multiplier,
            gas_price_bid=gas_price_bid,
            max_gas=max_gas,
            l2_call_value=message.l2_call_value,
        )
        logger.info(
            "Retryable ticket params: submission cost %d (L1 base fee %d), gas price bid %d, max gas %d, deposit %d",
            params.max_submission_cost,
            l1_base_fee,
            params.gas_price_bid,
            params.max_gas,
            params.deposit_value,
        )
        return params

    def prepare_message(self, message: MessageData) -> PreparedMessage:
        """Build the L1 ``createRetryableTicket()`` call for a message."""
        params = self.estimate_ticket_params(message)
        refund_address = Web3.to_checksum_address(message.get_refund_address())
        calldata = self.inbox.encode_abi(
            "createRetryableTicket",
            args=[
                Web3.to_checksum_address(message.recipient),
                message.l2_call_value,
                params.max_submission_cost,
                refund_address,
                refund_address,
                params.max_gas,
                params.gas_price_bid,
                bytes(message.calldata),
            ],
        )
        return PreparedMessage(
            to=self.inbox.address,
            calldata=HexBytes(calldata),
            value=params.deposit_value,
            params={
                "max_submission_cost": params.max_submission_cost,
                "gas_price_bid": params.gas_price_bid,
                "max_gas": params.max_gas,
                "l2_call_value": params.l2_call_value,
            },
        )

    def fetch_source_receipt(self, source_tx_hash: HexBytes) -> TxReceipt | None:
        """Read the receipt of the L1 transaction that sent the message, ``None`` if not mined."""
        return fetch_receipt(self.l1_web3, source_tx_hash)

    def fetch_tickets(self, receipt: TxReceipt) -> list[RetryableTicket]:
        """Read retryable tickets created by an L1 transaction."""
        bridge_address = self.inbox.functions.bridge().call()
        bridge = get_contract(self.l1_web3, "ArbitrumBridge.json")(address=bridge_address)

        delivered = {}
        for evt in bridge.events.MessageDelivered().process_receipt(receipt, errors=DISCARD):
            if evt["address"] != bridge.address:
                continue
            if evt["args"]["kind"] != L1_MESSAGE_TYPE_SUBMIT_RETRYABLE_TX:
                continue
            delivered[evt["args"]["messageIndex"]] = evt["args"]

        l2_chain_id = self.l2_web3.eth.chain_id
        tickets = []
        for evt in self.inbox.events.InboxMessageDelivered().process_receipt(receipt, errors=DISCARD):
            if evt["address"] != self.inbox.address:
                continue
            message_number = evt["args"]["messageNum"]
            bridge_args = delivered.get(message_number)
            if bridge_args is None:
                continue

            decoded = decode_retryable_message_data(evt["args"]["data"])
            ticket_id = calculate_submit_retryable_id(
                l2_chain_id=l2_chain_id,
                sender=bridge_args["sender"],
                message_number=message_number,
                l1_base_fee=bridge_args["baseFeeL1"],
                **decoded,
            )
            tickets.append(
                RetryableTicket(
                    l2_chain_id=l2_chain_id,
                    message_number=message_number,
                    ticket_id=ticket_id,
                    sender=Web3.to_checksum_address(bridge_args["sender"]),
                    l1_base_fee=bridge_args["baseFeeL1"],
                    **decoded,
                )
            )
        return tickets

    def fetch_ticket_status(self, ticket: RetryableTicket) -> TicketStatus:
        """Read the L2 state of a ticket once."""
        creation_receipt = fetch_receipt(self.l2_web3, ticket.ticket_id)
        if creation_receipt is None:
            return TicketStatus(MessageStatus.pending)

        if creation_receipt["status"] != 1:
            return TicketStatus(MessageStatus.failed)

        auto_redeem_hash = None
        for evt in self.arb_retryable_tx.events.RedeemScheduled().process_receipt(creation_receipt, errors=DISCARD):
            if HexBytes(evt["args"]["ticketId"]) == ticket.ticket_id:
                auto_redeem_hash = HexBytes(evt["args"]["retryTxHash"])

        if auto_redeem_hash is not None:
            auto_redeem_receipt = fetch_receipt(self.l2_web3, auto_redeem_hash)
            if auto_redeem_receipt is None:
                return TicketStatus(MessageStatus.pending)
            if auto_redeem_receipt["status"] == 1:
                return TicketStatus(MessageStatus.auto_delivered, auto_redeem_hash)

        manual_redeem_hash = self.find_successful_redeem(ticket, creation_receipt["blockNumber"], exclude=auto_redeem_hash)
        if manual_redeem_hash is not None:
            return TicketStatus(MessageStatus.finalized, manual_redeem_hash)

        try:
            timeout = self.arb_retryable_tx.functions.getTimeout(ticket.ticket_id).call()
        except ContractLogicError:
            # NoTicketWithID: expired or cancelled
            return TicketStatus(MessageStatus.failed)

        now = self.l2_web3.eth.get_block("latest")["timestamp"]
        if timeout <= now:
            return TicketStatus(MessageStatus.failed)

        return TicketStatus(MessageStatus.needs_manual_finalization)

    def find_successful_redeem(self, ticket: RetryableTicket, from_block: int, exclude: HexBytes | None = None) -> HexBytes | None:
        """Find a later redeem attempt of a ticket that succeeded."""
        logs = self.arb_retryable_tx.events.RedeemScheduled().get_logs(
            argument_filters={"ticketId": ticket.ticket_id},
            from_block=from_block,
        )
        for evt in logs:
            retry_hash = HexBytes(evt["args"]["retryTxHash"])
            if retry_hash == exclude:
                continue
            receipt = fetch_receipt(self.l2_web3, retry_hash)
            if receipt is not None and receipt["status"] == 1:
                return retry_hash
        return None

    def redeem(self, ticket: RetryableTicket) -> HexBytes:
        """Execute a ticket manually with ``ArbRetryableTx.redeem()``.

        :return:
            Redeem transaction hash

        :raises TransactionAssertionError:
            The redeem transaction reverted
        """
        assert self.l2_sender, "No L2 account configured for redeems"
        logger.info("Redeeming retryable ticket %s from %s", ticket.ticket_id.hex(), self.l2_sender)
        func = self.arb_retryable_tx.functions.redeem(ticket.ticket_id)
        tx_hash = send_contract_call(self.l2_web3, func, self.l2_sender, self.l2_hot_wallet, gas=self.redeem_gas)
        assert_transaction_success(self.l2_web3, tx_hash, description=f"redeem ticket {ticket.ticket_id.hex()}")
        return tx_hash

    def wait_for_delivery(self, source_tx_hash: HexBytes | str, timeout: float) -> DeliveryReport:
        """Follow a retryable ticket until it is executed, fails or the timeout passes.

        If the ticket was created but not auto-redeemed, one redeem is attempted
        when an L2 account is configured. When that redeem does not execute the ticket,
        the report is ``failed`` with :py:class:`ManualFinalizationRequired` as the error:
        the ticket can still be redeemed by hand until it expires.
        """
        source_tx_hash = HexBytes(source_tx_hash)
        started = time.monotonic()

        def remaining() -> float:
            return max(0.0, timeout - (time.monotonic() - started))

        mined = suspend_until(
            poll=lambda: self.fetch_source_receipt(source_tx_hash),
            condition=lambda r: r is not None,
            timeout=remaining(),
            backoff=self.backoff,
            cancel=self.cancel,
            description=f"L1 transaction {source_tx_hash.hex()}",
        )
        if not mined.satisfied:
            return create_source_timeout_report(source_tx_hash, timeout)

        receipt = mined.value
        if receipt["status"] != 1:
            return DeliveryReport(
                status=MessageStatus.failed,
                source_tx_hash=source_tx_hash,
                error=MessageExecutionFailed(f"L1 transaction {source_tx_hash.hex()} reverted"),
            )

        tickets = self.fetch_tickets(receipt)
        assert len(tickets) == 1, f"Expected one retryable ticket in {source_tx_hash.hex()}, got {len(tickets)}"
        ticket = tickets[0]
        logger.info("L1 tx %s created retryable ticket %s", source_tx_hash.hex(), ticket.ticket_id.hex())

        status = MessageStatus.pending

        def poll() -> TicketStatus:
            return self.fetch_ticket_status(ticket)

        result = suspend_until(
            poll=poll,
            condition=lambda s: s.status != MessageStatus.pending,
            timeout=remaining(),
            backoff=self.backoff,
            cancel=self.cancel,
            description=f"retryable ticket {ticket.ticket_id.hex()}",
        )
        observed: TicketStatus = result.value
        status = advance_status(status, observed.status)

        report = DeliveryReport(
            status=status,
            source_tx_hash=source_tx_hash,
            destination_tx_hash=observed.redeem_tx_hash,
            message_id=ticket.ticket_id,
        )

        if not result.satisfied:
            report.timed_out = True
            report.error = MessageDeliveryTimeout(f"Retryable ticket {ticket.ticket_id.hex()} not created on L2 in {timeout}s")
            return report

        if status == MessageStatus.failed:
            report.error = MessageExecutionFailed(f"Retryable ticket {ticket.ticket_id.hex()} failed or expired on L2")
            return report

        if status != MessageStatus.needs_manual_finalization:
            return report

        if not self.l2_sender:
            report.error = ManualFinalizationRequired(f"Retryable ticket {ticket.ticket_id.hex()} was not auto-redeemed and no L2 account is configured to redeem it")
            return report

        # Exactly one redeem attempt
        try:
            redeem_tx_hash = self.redeem(ticket)
        except (TransactionAssertionError, ContractLogicError, ValueError) as e:
            logger.warning("Redeem of ticket %s failed: %s", ticket.ticket_id.hex(), e)
            report.status = advance_status(report.status, MessageStatus.failed)
            report.error = ManualFinalizationRequired(f"Redeem of retryable ticket {ticket.ticket_id.hex()} failed: {e}")
            return report

        report.follow_up_tx_hashes.append(redeem_tx_hash)

        result = suspend_until(
            poll=poll,
            condition=lambda s: s.status.is_terminal(),
            timeout=remaining(),
            backoff=self.backoff,
            cancel=self.cancel,
            description=f"redeem of ticket {ticket.ticket_id.hex()}",
        )
        observed = result.value
        report.status = advance_status(report.status, observed.status)
        report.destination_tx_hash = observed.redeem_tx_hash

        if report.status == MessageStatus.auto_delivered:
            # The sequencer got there first, still delivered
            return report

        if report.status == MessageStatus.failed:
            report.error = MessageExecutionFailed(f"Retryable ticket {ticket.ticket_id.hex()} failed after redeem {redeem_tx_hash.hex()}")
        elif report.status != MessageStatus.finalized:
            # Our one redeem did not execute the ticket, it stays redeemable by hand until it expires
            report.status = advance_status(report.status, MessageStatus.failed)
            report.timed_out = not result.satisfied
            report.error = ManualFinalizationRequired(f"Retryable ticket {ticket.ticket_id.hex()} still not executed after redeem {redeem_tx_hash.hex()}")

        return report
