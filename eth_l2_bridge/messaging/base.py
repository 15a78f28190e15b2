"""Cross-chain message types shared by all messenger families.

Every L2 family has its own way to deliver an L1 -> L2 (or L2 -> L1) call,
but the caller only needs two operations:

- :py:meth:`CrossChainMessenger.prepare_message`: build the source chain transaction
- :py:meth:`CrossChainMessenger.wait_for_delivery`: follow the message until it reaches
  a terminal :py:class:`MessageStatus` or the timeout passes

Waiting never raises for timeouts or failed executions: the outcome is reported
in a :py:class:`DeliveryReport` and the caller decides what to do.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxReceipt

from eth_l2_bridge import BridgeOpsError

logger = logging.getLogger(__name__)


class MessageStatus(enum.Enum):
    """Delivery status of a cross-chain message."""

    #: Not yet observed on the destination chain
    pending = "pending"

    #: Arrived, but the destination call did not execute and needs a manual follow-up transaction
    needs_manual_finalization = "needs_manual_finalization"

    #: Withdrawal challenge window has passed, the message can be finalised on L1
    ready_to_finalize = "ready_to_finalize"

    #: The destination call was executed automatically
    auto_delivered = "auto_delivered"

    #: The destination call was executed by our follow-up transaction
    finalized = "finalized"

    #: The message can no longer be delivered
    failed = "failed"

    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def is_delivered(self) -> bool:
        """Did the destination call execute."""
        return self in (MessageStatus.auto_delivered, MessageStatus.finalized)

    def can_move_to(self, other: "MessageStatus") -> bool:
        """Is ``self -> other`` a forward transition."""
        return other == self or other in ALLOWED_TRANSITIONS[self]


#: Statuses that never change again
TERMINAL_STATUSES = frozenset({MessageStatus.auto_delivered, MessageStatus.finalized, MessageStatus.failed})

#: Forward-only status transitions
ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.pending: frozenset(
        {
            MessageStatus.needs_manual_finalization,
            MessageStatus.ready_to_finalize,
            MessageStatus.auto_delivered,
            MessageStatus.finalized,
            MessageStatus.failed,
        }
    ),
    MessageStatus.needs_manual_finalization: frozenset({MessageStatus.finalized, MessageStatus.auto_delivered, MessageStatus.failed}),
    MessageStatus.ready_to_finalize: frozenset({MessageStatus.finalized, MessageStatus.failed}),
    MessageStatus.auto_delivered: frozenset(),
    MessageStatus.finalized: frozenset(),
    MessageStatus.failed: frozenset(),
}


def advance_status(current: MessageStatus, observed: MessageStatus) -> MessageStatus:
    """Apply a newly observed status, ignoring regressions.

    RPC nodes behind load balancers may return stale state,
    so an observation that would move the status backwards is dropped.
    """
    if current.can_move_to(observed):
        return observed
    logger.debug("Ignoring status regression %s -> %s", current.value, observed.value)
    return current


class MessageDeliveryTimeout(BridgeOpsError):
    """The message did not reach a terminal state in time. Returned, not raised."""


class MessageExecutionFailed(BridgeOpsError):
    """The destination chain cannot execute the message."""


class ManualFinalizationRequired(BridgeOpsError):
    """The message needs a manual follow-up transaction that we did not manage to complete."""


@dataclass(slots=True)
class MessageData:
    """A call to make on the other chain."""

    #: Account sending the message on the source chain
    sender: HexAddress

    #: Contract called on the destination chain
    recipient: HexAddress

    #: Calldata for the destination call
    calldata: bytes

    #: Refund address for unused fees. Defaults to ``sender``.
    refund_address: HexAddress | None = None

    #: Destination gas limit override
    gas_limit: int | None = None

    #: ETH passed with the destination call, in wei
    l2_call_value: int = 0

    def get_refund_address(self) -> HexAddress:
        return self.refund_address or self.sender


@dataclass(slots=True)
class PreparedMessage:
    """A source chain transaction that sends a cross-chain message."""

    #: Contract the source transaction calls (inbox or messenger)
    to: HexAddress

    #: Source transaction calldata
    calldata: HexBytes

    #: ETH to attach to the source transaction, in wei
    value: int

    #: Protocol specific parameters used to build the message, for logs and tests
    params: dict[str, Any] = field(default_factory=dict)

    def as_transaction(self) -> dict:
        """Transaction dict fields for web3."""
        return {"to": self.to, "data": self.calldata, "value": self.value}


@dataclass(slots=True)
class DeliveryReport:
    """Result of :py:meth:`CrossChainMessenger.wait_for_delivery`."""

    #: Last known status
    status: MessageStatus

    #: Source chain transaction that sent the message
    source_tx_hash: HexBytes

    #: Destination chain transaction that executed the message, if known
    destination_tx_hash: HexBytes | None = None

    #: Did we stop waiting before reaching a terminal status
    timed_out: bool = False

    #: Why the message is not delivered, if it is not
    error: BridgeOpsError | None = None

    #: Protocol specific message id (retryable ticket id, message hash or withdrawal hash)
    message_id: HexBytes | None = None

    #: Follow-up transactions we sent (redeem, prove, finalize)
    follow_up_tx_hashes: list[HexBytes] = field(default_factory=list)

    def is_delivered(self) -> bool:
        return self.status.is_delivered()


@runtime_checkable
class CrossChainMessenger(Protocol):
    """What the orchestrator needs from a messenger.

    One implementation per L2 family, with no shared base class.
    """

    def prepare_message(self, message: MessageData) -> PreparedMessage:
        """Build the source chain transaction for a message."""

    def wait_for_delivery(self, source_tx_hash: HexBytes | str, timeout: float) -> DeliveryReport:
        """Follow a sent message until it reaches a terminal status or the timeout passes."""


def fetch_receipt(web3: Web3, tx_hash: HexBytes) -> TxReceipt | None:
    """Read a transaction receipt once.

    :return:
        ``None`` while the transaction is not mined
    """
    try:
        return web3.eth.get_transaction_receipt(tx_hash)
    except TransactionNotFound:
        return None


def create_source_timeout_report(source_tx_hash: HexBytes, timeout: float) -> DeliveryReport:
    """Report for a message whose source transaction was not mined in time."""
    return DeliveryReport(
        status=MessageStatus.pending,
        source_tx_hash=source_tx_hash,
        timed_out=True,
        error=MessageDeliveryTimeout(f"Source transaction {source_tx_hash.hex()} not mined in {timeout}s"),
    )
