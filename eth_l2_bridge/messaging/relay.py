"""OP stack cross-domain messaging: Optimism, Base, Lisk, Mantle.

Messages go through the ``CrossDomainMessenger`` contracts with a fixed
gas limit chosen by the sender. No ETH is needed on top of L1 gas.

**L1 -> L2**: ``L1CrossDomainMessenger.sendMessage()`` emits ``SentMessage``.
The sequencer relays the message to ``L2CrossDomainMessenger``
which records the message hash in ``successfulMessages`` or ``failedMessages``.
There is no manual step.

**L2 -> L1** (withdrawal direction): ``L2CrossDomainMessenger.sendMessage()``
passes the message to ``L2ToL1MessagePasser``. To execute it on L1:

1. Wait until an L2 output root covering the L2 block is posted to ``L2OutputOracle``
2. Prove the withdrawal against the output root on ``OptimismPortal``
3. Wait out the challenge window (``FINALIZATION_PERIOD_SECONDS``, 7 days on mainnet)
4. Finalise the withdrawal on ``OptimismPortal``

:py:class:`RelayMessenger` proves and finalises once each, when an L1 account
is configured. Otherwise it stops and reports what is needed.

Example:

.. code-block:: python

    messenger = RelayMessenger(
        l1_web3,
        l2_web3,
        l1_messenger_address="0x25ace71c97B33Cc4729CF772ae268934F7ab5fA1",
    )
    prepared = messenger.prepare_message(
        MessageData(sender=agent, recipient=executor, calldata=queue_calldata)
    )
    report = messenger.wait_for_delivery(l1_tx_hash, timeout=1800)
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from eth_abi import encode
from eth_typing import HexAddress
from eth_utils import function_signature_to_4byte_selector, keccak
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD
from web3.types import TxReceipt

from eth_l2_bridge.abi import get_deployed_contract
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
from eth_l2_bridge.polling import BackoffPolicy, PollResult, suspend_until
from eth_l2_bridge.trace import TransactionAssertionError, assert_transaction_success, send_contract_call

logger = logging.getLogger(__name__)


#: ``L2CrossDomainMessenger`` predeploy
L2_CROSS_DOMAIN_MESSENGER_ADDRESS = "0x4200000000000000000000000000000000000007"

#: ``L2ToL1MessagePasser`` predeploy
L2_TO_L1_MESSAGE_PASSER_ADDRESS = "0x4200000000000000000000000000000000000016"

#: Destination gas limit when the caller does not give one
DEFAULT_RELAY_GAS_LIMIT = 1_000_000

#: ``sendMessage()`` takes the gas limit as ``uint32``
MAX_RELAY_GAS_LIMIT = 2**32 - 1


class MessageDirection(enum.Enum):
    l1_to_l2 = "l1_to_l2"
    l2_to_l1 = "l2_to_l1"


class WithdrawalPhase(enum.Enum):
    """Where an L2 -> L1 message is on its way to L1."""

    #: No L2 output root covering the message block has been posted yet
    waiting_for_output = "waiting_for_output"

    #: Output root posted, the withdrawal can be proven
    ready_to_prove = "ready_to_prove"

    #: Proven, challenge window running
    in_challenge_period = "in_challenge_period"

    #: Challenge window over, can be finalised
    ready_to_finalize = "ready_to_finalize"

    #: Executed on L1
    finalized = "finalized"

    def get_message_status(self) -> MessageStatus:
        match self:
            case WithdrawalPhase.ready_to_finalize:
                return MessageStatus.ready_to_finalize
            case WithdrawalPhase.finalized:
                return MessageStatus.finalized
            case _:
                return MessageStatus.pending


@dataclass(slots=True)
class SentMessage:
    """An L1 -> L2 message read from a ``SentMessage`` event."""

    nonce: int
    sender: HexAddress
    target: HexAddress
    value: int
    gas_limit: int
    data: bytes

    def get_message_hash(self) -> HexBytes:
        return hash_cross_domain_message(self.nonce, self.sender, self.target, self.value, self.gas_limit, self.data)


@dataclass(slots=True)
class Withdrawal:
    """An L2 -> L1 message read from a ``MessagePassed`` event."""

    nonce: int
    sender: HexAddress
    target: HexAddress
    value: int
    gas_limit: int
    data: bytes

    #: Hash ``OptimismPortal`` tracks the withdrawal by
    withdrawal_hash: HexBytes

    #: L2 block that included the message
    l2_block_number: int

    def as_tuple(self) -> tuple:
        """``WithdrawalTransaction`` struct argument."""
        return (self.nonce, self.sender, self.target, self.value, self.gas_limit, self.data)


def get_message_version(nonce: int) -> int:
    """Messenger nonces carry the message encoding version in the top two bytes."""
    return nonce >> 240


def encode_cross_domain_message(nonce: int, sender: HexAddress, target: HexAddress, value: int, gas_limit: int, data: bytes) -> bytes:
    """Encode the ``relayMessage()`` call a messenger hashes to identify a message."""
    version = get_message_version(nonce)
    if version == 0:
        selector = function_signature_to_4byte_selector("relayMessage(address,address,bytes,uint256)")
        return selector + encode(["address", "address", "bytes", "uint256"], [target, sender, bytes(data), nonce])
    elif version == 1:
        selector = function_signature_to_4byte_selector("relayMessage(uint256,address,address,uint256,uint256,bytes)")
        return selector + encode(["uint256", "address", "address", "uint256", "uint256", "bytes"], [nonce, sender, target, value, gas_limit, bytes(data)])
    else:
        raise NotImplementedError(f"Unknown cross domain message version {version}, nonce {nonce}")


def hash_cross_domain_message(nonce: int, sender: HexAddress, target: HexAddress, value: int, gas_limit: int, data: bytes) -> HexBytes:
    return HexBytes(keccak(encode_cross_domain_message(nonce, sender, target, value, gas_limit, data)))


def resolve_withdrawal_phase(
    finalized: bool,
    proven_timestamp: int,
    latest_output_block: int,
    withdrawal_block: int,
    now: int,
    finalization_period: int,
) -> WithdrawalPhase:
    """Work out the withdrawal phase from on-chain reads.

    :param finalized:
        ``OptimismPortal.finalizedWithdrawals(hash)``

    :param proven_timestamp:
        Timestamp of ``OptimismPortal.provenWithdrawals(hash)``, 0 if not proven

    :param latest_output_block:
        ``L2OutputOracle.latestBlockNumber()``

    :param withdrawal_block:
        L2 block of the withdrawal

    :param now:
        Latest L1 block timestamp

    :param finalization_period:
        ``L2OutputOracle.FINALIZATION_PERIOD_SECONDS()``
    """
    if finalized:
        return WithdrawalPhase.finalized

    if proven_timestamp == 0:
        if latest_output_block >= withdrawal_block:
            return WithdrawalPhase.ready_to_prove
        return WithdrawalPhase.waiting_for_output

    if now >= proven_timestamp + finalization_period:
        return WithdrawalPhase.ready_to_finalize

    return WithdrawalPhase.in_challenge_period


class RelayMessenger:
    """Send and follow OP stack cross-domain messages.

    One instance handles one direction, given at construction.
    """

    def __init__(
        self,
        l1_web3: Web3,
        l2_web3: Web3,
        l1_messenger_address: HexAddress | str,
        direction: MessageDirection = MessageDirection.l1_to_l2,
        portal_address: HexAddress | str | None = None,
        l2_output_oracle_address: HexAddress | str | None = None,
        l1_sender: HexAddress | str | None = None,
        l1_hot_wallet: HotWallet | None = None,
        default_gas_limit: int = DEFAULT_RELAY_GAS_LIMIT,
        backoff: BackoffPolicy | None = None,
        cancel: threading.Event | None = None,
        gas: int | None = None,
        prover: Callable[[Withdrawal], HexBytes] | None = None,
    ):
        """
        :param l1_messenger_address:
            ``L1CrossDomainMessenger`` proxy on L1

        :param direction:
            Which way messages go

        :param portal_address:
            ``OptimismPortal`` on L1. Needed for L2 -> L1 messages.

        :param l2_output_oracle_address:
            ``L2OutputOracle`` on L1. Read from the portal when not given.

        :param l1_sender:
            L1 account that proves and finalises withdrawals.
            Without it, withdrawals are followed but not acted on.

        :param prover:
            Replace the built-in storage proof based prover, for chains with a different proof system
        """
        assert default_gas_limit <= MAX_RELAY_GAS_LIMIT
        self.l1_web3 = l1_web3
        self.l2_web3 = l2_web3
        self.direction = direction
        self.l1_messenger = get_deployed_contract(l1_web3, "CrossDomainMessenger.json", l1_messenger_address)
        self.l2_messenger = get_deployed_contract(l2_web3, "CrossDomainMessenger.json", L2_CROSS_DOMAIN_MESSENGER_ADDRESS)
        self.message_passer = get_deployed_contract(l2_web3, "L2ToL1MessagePasser.json", L2_TO_L1_MESSAGE_PASSER_ADDRESS)
        self.portal = get_deployed_contract(l1_web3, "OptimismPortal.json", portal_address) if portal_address else None
        self._l2_output_oracle_address = l2_output_oracle_address
        self.l1_sender = Web3.to_checksum_address(l1_sender) if l1_sender else None
        self.l1_hot_wallet = l1_hot_wallet
        self.default_gas_limit = default_gas_limit
        self.backoff = backoff or BackoffPolicy()
        self.cancel = cancel
        self.gas = gas
        self.prover = prover
        self._finalization_period: int | None = None

        if direction == MessageDirection.l2_to_l1:
            assert self.portal is not None, "portal_address needed for L2 -> L1 messages"

    def __repr__(self):
        return f"<RelayMessenger {self.direction.value} messenger {self.l1_messenger.address}>"

    @property
    def l2_output_oracle(self):
        assert self.portal is not None, "No OptimismPortal configured"
        address = self._l2_output_oracle_address or self.portal.functions.l2Oracle().call()
        self._l2_output_oracle_address = address
        return get_deployed_contract(self.l1_web3, "L2OutputOracle.json", address)

    def prepare_message(self, message: MessageData) -> PreparedMessage:
        """Build the ``sendMessage()`` call on the source chain messenger."""
        gas_limit = message.gas_limit or self.default_gas_limit
        assert 0 < gas_limit <= MAX_RELAY_GAS_LIMIT, f"Bad relay gas limit {gas_limit}"
        assert message.l2_call_value == 0, "Relayed admin messages do not carry ETH"

        if self.direction == MessageDirection.l1_to_l2:
            messenger = self.l1_messenger
        else:
            messenger = self.l2_messenger

        calldata = messenger.encode_abi(
            "sendMessage",
            args=[Web3.to_checksum_address(message.recipient), bytes(message.calldata), gas_limit],
        )
        logger.info("Prepared %s message to %s, gas limit %d", self.direction.value, message.recipient, gas_limit)
        return PreparedMessage(
            to=messenger.address,
            calldata=HexBytes(calldata),
            value=0,
            params={"gas_limit": gas_limit},
        )

    def fetch_source_receipt(self, source_tx_hash: HexBytes) -> TxReceipt | None:
        """Read the receipt of the transaction that sent the message, ``None`` if not mined."""
        web3 = self.l1_web3 if self.direction == MessageDirection.l1_to_l2 else self.l2_web3
        return fetch_receipt(web3, source_tx_hash)

    def fetch_sent_messages(self, receipt: TxReceipt) -> list[SentMessage]:
        """Read L1 -> L2 messages sent in an L1 transaction."""
        sent = [e for e in self.l1_messenger.events.SentMessage().process_receipt(receipt, errors=DISCARD) if e["address"] == self.l1_messenger.address]
        extensions = [e for e in self.l1_messenger.events.SentMessageExtension1().process_receipt(receipt, errors=DISCARD) if e["address"] == self.l1_messenger.address]

        messages = []
        for idx, evt in enumerate(sent):
            value = extensions[idx]["args"]["value"] if idx < len(extensions) else 0
            messages.append(
                SentMessage(
                    nonce=evt["args"]["messageNonce"],
                    sender=Web3.to_checksum_address(evt["args"]["sender"]),
                    target=Web3.to_checksum_address(evt["args"]["target"]),
                    value=value,
                    gas_limit=evt["args"]["gasLimit"],
                    data=bytes(evt["args"]["message"]),
                )
            )
        return messages

    def fetch_message_status(self, message: SentMessage) -> MessageStatus:
        """Read the L2 relay state of an L1 -> L2 message once."""
        message_hash = message.get_message_hash()
        if self.l2_messenger.functions.successfulMessages(message_hash).call():
            return MessageStatus.auto_delivered
        if self.l2_messenger.functions.failedMessages(message_hash).call():
            return MessageStatus.failed
        return MessageStatus.pending

    def fetch_withdrawals(self, receipt: TxReceipt) -> list[Withdrawal]:
        """Read L2 -> L1 messages sent in an L2 transaction."""
        withdrawals = []
        for evt in self.message_passer.events.MessagePassed().process_receipt(receipt, errors=DISCARD):
            if evt["address"] != self.message_passer.address:
                continue
            args = evt["args"]
            withdrawals.append(
                Withdrawal(
                    nonce=args["nonce"],
                    sender=Web3.to_checksum_address(args["sender"]),
                    target=Web3.to_checksum_address(args["target"]),
                    value=args["value"],
                    gas_limit=args["gasLimit"],
                    data=bytes(args["data"]),
                    withdrawal_hash=HexBytes(args["withdrawalHash"]),
                    l2_block_number=receipt["blockNumber"],
                )
            )
        return withdrawals

    def fetch_finalization_period(self) -> int:
        if self._finalization_period is None:
            self._finalization_period = self.l2_output_oracle.functions.FINALIZATION_PERIOD_SECONDS().call()
        return self._finalization_period

    def fetch_withdrawal_phase(self, withdrawal: Withdrawal) -> WithdrawalPhase:
        """Read the L1 state of a withdrawal once."""
        finalized = self.portal.functions.finalizedWithdrawals(withdrawal.withdrawal_hash).call()
        if finalized:
            return WithdrawalPhase.finalized

        _, proven_timestamp, _ = self.portal.functions.provenWithdrawals(withdrawal.withdrawal_hash).call()
        latest_output_block = 0
        if proven_timestamp == 0:
            latest_output_block = self.l2_output_oracle.functions.latestBlockNumber().call()

        now = self.l1_web3.eth.get_block("latest")["timestamp"]
        return resolve_withdrawal_phase(
            finalized=False,
            proven_timestamp=proven_timestamp,
            latest_output_block=latest_output_block,
            withdrawal_block=withdrawal.l2_block_number,
            now=now,
            finalization_period=self.fetch_finalization_period(),
        )

    def prove_withdrawal(self, withdrawal: Withdrawal) -> HexBytes:
        """Prove a withdrawal on ``OptimismPortal`` against the first output root covering it.

        The proof is the storage proof of the withdrawal hash
        in ``L2ToL1MessagePasser.sentMessages`` at the output root block.

        :return:
            Prove transaction hash
        """
        if self.prover is not None:
            return self.prover(withdrawal)

        assert self.l1_sender, "No L1 account configured for proving"
        oracle = self.l2_output_oracle
        output_index = oracle.functions.getL2OutputIndexAfter(withdrawal.l2_block_number).call()
        _, _, output_block_number = oracle.functions.getL2Output(output_index).call()

        block = self.l2_web3.eth.get_block(output_block_number)
        # sentMessages mapping lives in slot 0
        slot = keccak(encode(["bytes32", "uint256"], [bytes(withdrawal.withdrawal_hash), 0]))
        proof = self.l2_web3.eth.get_proof(self.message_passer.address, [int.from_bytes(slot, "big")], output_block_number)

        output_root_proof = (
            b"\x00" * 32,
            bytes(block["stateRoot"]),
            bytes(proof["storageHash"]),
            bytes(block["hash"]),
        )
        storage_proof = [bytes(p) for p in proof["storageProof"][0]["proof"]]

        logger.info("Proving withdrawal %s with output #%d (L2 block %d)", withdrawal.withdrawal_hash.hex(), output_index, output_block_number)
        func = self.portal.functions.proveWithdrawalTransaction(withdrawal.as_tuple(), output_index, output_root_proof, storage_proof)
        tx_hash = send_contract_call(self.l1_web3, func, self.l1_sender, self.l1_hot_wallet, gas=self.gas)
        assert_transaction_success(self.l1_web3, tx_hash, description=f"prove withdrawal {withdrawal.withdrawal_hash.hex()}")
        return tx_hash

    def finalize_withdrawal(self, withdrawal: Withdrawal) -> HexBytes:
        """Execute a proven withdrawal on L1 after the challenge window.

        :return:
            Finalise transaction hash
        """
        assert self.l1_sender, "No L1 account configured for finalising"
        logger.info("Finalising withdrawal %s", withdrawal.withdrawal_hash.hex())
        func = self.portal.functions.finalizeWithdrawalTransaction(withdrawal.as_tuple())
        tx_hash = send_contract_call(self.l1_web3, func, self.l1_sender, self.l1_hot_wallet, gas=self.gas)
        assert_transaction_success(self.l1_web3, tx_hash, description=f"finalize withdrawal {withdrawal.withdrawal_hash.hex()}")
        return tx_hash

    def wait_for_delivery(self, source_tx_hash: HexBytes | str, timeout: float) -> DeliveryReport:
        """Follow a message until it is delivered, fails or the timeout passes."""
        source_tx_hash = HexBytes(source_tx_hash)
        started = time.monotonic()

        def remaining() -> float:
            return max(0.0, timeout - (time.monotonic() - started))

        mined = self._wait(
            lambda: self.fetch_source_receipt(source_tx_hash),
            lambda r: r is not None,
            remaining,
            f"source transaction {source_tx_hash.hex()}",
        )
        if not mined.satisfied:
            return create_source_timeout_report(source_tx_hash, timeout)

        receipt = mined.value
        if receipt["status"] != 1:
            return DeliveryReport(
                status=MessageStatus.failed,
                source_tx_hash=source_tx_hash,
                error=MessageExecutionFailed(f"Source transaction {source_tx_hash.hex()} reverted"),
            )

        if self.direction == MessageDirection.l1_to_l2:
            return self._wait_for_relay(source_tx_hash, receipt, remaining)
        else:
            return self._wait_for_withdrawal(source_tx_hash, receipt, remaining)

    def _wait(self, poll, condition, remaining: Callable[[], float], description: str) -> PollResult:
        return suspend_until(
            poll=poll,
            condition=condition,
            timeout=remaining(),
            backoff=self.backoff,
            cancel=self.cancel,
            description=description,
        )

    def _wait_for_relay(self, source_tx_hash: HexBytes, receipt: TxReceipt, remaining: Callable[[], float]) -> DeliveryReport:
        messages = self.fetch_sent_messages(receipt)
        assert len(messages) == 1, f"Expected one SentMessage in {source_tx_hash.hex()}, got {len(messages)}"
        message = messages[0]
        message_hash = message.get_message_hash()
        logger.info("L1 tx %s sent message %s to %s", source_tx_hash.hex(), message_hash.hex(), message.target)

        result = self._wait(
            lambda: self.fetch_message_status(message),
            lambda s: s.is_terminal(),
            remaining,
            f"relay of message {message_hash.hex()}",
        )
        report = DeliveryReport(
            status=advance_status(MessageStatus.pending, result.value),
            source_tx_hash=source_tx_hash,
            message_id=message_hash,
        )
        if not result.satisfied:
            report.timed_out = True
            report.error = MessageDeliveryTimeout(f"Message {message_hash.hex()} not relayed to L2 in time")
        elif report.status == MessageStatus.failed:
            report.error = MessageExecutionFailed(f"Message {message_hash.hex()} reverted on L2")
        return report

    def _wait_for_withdrawal(self, source_tx_hash: HexBytes, receipt: TxReceipt, remaining: Callable[[], float]) -> DeliveryReport:
        withdrawals = self.fetch_withdrawals(receipt)
        assert len(withdrawals) == 1, f"Expected one MessagePassed in {source_tx_hash.hex()}, got {len(withdrawals)}"
        withdrawal = withdrawals[0]
        withdrawal_hash = withdrawal.withdrawal_hash
        logger.info("L2 tx %s sent withdrawal %s", source_tx_hash.hex(), withdrawal_hash.hex())

        report = DeliveryReport(status=MessageStatus.pending, source_tx_hash=source_tx_hash, message_id=withdrawal_hash)

        def poll() -> WithdrawalPhase:
            return self.fetch_withdrawal_phase(withdrawal)

        def update(result: PollResult) -> WithdrawalPhase:
            report.status = advance_status(report.status, result.value.get_message_status())
            if not result.satisfied:
                report.timed_out = True
                report.error = MessageDeliveryTimeout(f"Withdrawal {withdrawal_hash.hex()} still {result.value.value}")
            return result.value

        # Output root
        phase = update(self._wait(poll, lambda p: p != WithdrawalPhase.waiting_for_output, remaining, f"output root for withdrawal {withdrawal_hash.hex()}"))
        if report.timed_out:
            return report

        # Prove
        if phase == WithdrawalPhase.ready_to_prove:
            if not self.l1_sender and not self.prover:
                report.error = ManualFinalizationRequired(f"Withdrawal {withdrawal_hash.hex()} must be proven on L1")
                return report
            try:
                report.follow_up_tx_hashes.append(self.prove_withdrawal(withdrawal))
            except (TransactionAssertionError, ContractLogicError, ValueError) as e:
                report.error = ManualFinalizationRequired(f"Proving withdrawal {withdrawal_hash.hex()} failed: {e}")
                return report

        # Challenge window
        phase = update(
            self._wait(
                poll,
                lambda p: p in (WithdrawalPhase.ready_to_finalize, WithdrawalPhase.finalized),
                remaining,
                f"challenge window of withdrawal {withdrawal_hash.hex()}",
            )
        )
        if report.timed_out or phase == WithdrawalPhase.finalized:
            return report

        # Finalise
        if not self.l1_sender:
            report.error = ManualFinalizationRequired(f"Withdrawal {withdrawal_hash.hex()} is ready to be finalised on L1")
            return report

        try:
            finalize_tx_hash = self.finalize_withdrawal(withdrawal)
        except (TransactionAssertionError, ContractLogicError, ValueError) as e:
            report.error = ManualFinalizationRequired(f"Finalising withdrawal {withdrawal_hash.hex()} failed: {e}")
            return report

        report.follow_up_tx_hashes.append(finalize_tx_hash)
        report.destination_tx_hash = finalize_tx_hash
        update(self._wait(poll, lambda p: p == WithdrawalPhase.finalized, remaining, f"finalisation of withdrawal {withdrawal_hash.hex()}"))
        return report
