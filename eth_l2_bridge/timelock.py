"""L2 governance bridge executor client.

Governance actions reach L2 as a ``queue(targets, values, signatures, calldatas, withDelegatecalls)``
call on a bridge executor, sent through the cross-chain messenger by the L1 governance.
The executor stores the queued calls as an *actions set* that becomes executable
after the executor delay and expires after the grace period:

.. code-block:: text

    queued ──(delay)──► executable ──execute()──► executed
                            │
                            └──(grace period)──► expired

Anyone can call ``execute(actionsSetId)`` on an executable actions set.

Example:

.. code-block:: python

    from eth_l2_bridge.timelock import TimelockCall, TimelockExecutor

    executor = TimelockExecutor(l2_web3, executor_address, sender=runner.address, hot_wallet=runner)
    calldata = executor.encode_queue_calldata([
        TimelockCall.from_signature(executor_address, "updateEthereumGovernanceExecutor(address)", ["address"], [new_agent]),
    ])
"""

import enum
import logging
import threading
from dataclasses import dataclass

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.abi import encode_function_args, get_deployed_contract
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.polling import BackoffPolicy, suspend_until
from eth_l2_bridge.trace import assert_transaction_success, send_contract_call
from eth_l2_bridge.utils import from_unix_timestamp

logger = logging.getLogger(__name__)


class TimelockExpired(BridgeOpsError):
    """The actions set was not executed within the grace period.

    The governance action must be proposed again.
    """


class TimelockActionCanceled(BridgeOpsError):
    """The guardian cancelled the actions set."""


class ActionsSetState(enum.IntEnum):
    """``getCurrentState()`` return values of the executor contract."""

    queued = 0
    executed = 1
    canceled = 2
    expired = 3


class TimelockActionState(enum.Enum):
    """Actions set state including the executable state the contract does not report."""

    queued = "queued"
    executable = "executable"
    executed = "executed"
    expired = "expired"
    canceled = "canceled"


@dataclass(slots=True)
class TimelockCall:
    """One call in an actions set."""

    #: Contract to call
    target: HexAddress

    #: Function signature, like ``updateEthereumGovernanceExecutor(address)``.
    #: Empty when ``calldata`` already has the selector.
    signature: str

    #: ABI-encoded arguments, without selector if ``signature`` is given
    calldata: bytes

    #: ETH sent with the call
    value: int = 0

    #: Run with ``delegatecall`` instead of ``call``
    with_delegatecall: bool = False

    @classmethod
    def from_signature(cls, target: HexAddress | str, signature: str, types: list[str], args: list, value: int = 0) -> "TimelockCall":
        """Create a call from a function signature and its arguments."""
        return cls(
            target=Web3.to_checksum_address(target),
            signature=signature,
            calldata=encode_function_args(types, args),
            value=value,
        )


@dataclass(slots=True)
class TimelockAction:
    """An actions set as stored by the executor."""

    id: int
    targets: list[HexAddress]
    values: list[int]
    signatures: list[str]
    calldatas: list[bytes]
    with_delegatecalls: list[bool]

    #: UNIX timestamp after which the set can be executed
    execution_time: int

    executed: bool
    canceled: bool

    def __repr__(self):
        return f"<TimelockAction #{self.id} {self.signatures} at {from_unix_timestamp(self.execution_time)}>"


def resolve_action_state(action: TimelockAction, now: int, grace_period: int) -> TimelockActionState:
    """Work out the state of an actions set at a given chain time.

    Follows the executor contract: the set expires once
    ``now > execution_time + grace_period``.
    """
    if action.canceled:
        return TimelockActionState.canceled
    if action.executed:
        return TimelockActionState.executed
    if now > action.execution_time + grace_period:
        return TimelockActionState.expired
    if now >= action.execution_time:
        return TimelockActionState.executable
    return TimelockActionState.queued


class TimelockExecutor:
    """Read and execute actions sets of an L2 bridge executor."""

    def __init__(
        self,
        web3: Web3,
        address: HexAddress | str,
        sender: HexAddress | str | None = None,
        hot_wallet: HotWallet | None = None,
        backoff: BackoffPolicy | None = None,
        cancel: threading.Event | None = None,
        gas: int | None = None,
    ):
        """
        :param sender:
            L2 account calling ``execute()``. Only needed for :py:meth:`execute`.
        """
        self.web3 = web3
        self.contract = get_deployed_contract(web3, "BridgeExecutor.json", address)
        self.sender = Web3.to_checksum_address(sender) if sender else None
        self.hot_wallet = hot_wallet
        self.backoff = backoff or BackoffPolicy()
        self.cancel = cancel
        self.gas = gas

    def __repr__(self):
        return f"<TimelockExecutor {self.address}>"

    @property
    def address(self) -> HexAddress:
        return self.contract.address

    def encode_queue_calldata(self, calls: list[TimelockCall]) -> HexBytes:
        """Encode a ``queue()`` call for the given calls."""
        assert calls, "No calls to queue"
        data = self.contract.encode_abi(
            "queue",
            args=[
                [Web3.to_checksum_address(c.target) for c in calls],
                [c.value for c in calls],
                [c.signature for c in calls],
                [bytes(c.calldata) for c in calls],
                [c.with_delegatecall for c in calls],
            ],
        )
        return HexBytes(data)

    def fetch_actions_set_count(self) -> int:
        return self.contract.functions.getActionsSetCount().call()

    def fetch_action(self, action_id: int) -> TimelockAction:
        targets, values, signatures, calldatas, with_delegatecalls, execution_time, executed, canceled = self.contract.functions.getActionsSetById(action_id).call()
        return TimelockAction(
            id=action_id,
            targets=list(targets),
            values=list(values),
            signatures=list(signatures),
            calldatas=[bytes(c) for c in calldatas],
            with_delegatecalls=list(with_delegatecalls),
            execution_time=execution_time,
            executed=executed,
            canceled=canceled,
        )

    def fetch_grace_period(self) -> int:
        return self.contract.functions.getGracePeriod().call()

    def fetch_delay(self) -> int:
        return self.contract.functions.getDelay().call()

    def fetch_chain_time(self) -> int:
        """Timestamp of the latest L2 block."""
        return self.web3.eth.get_block("latest")["timestamp"]

    def fetch_action_state(self, action_id: int) -> TimelockActionState:
        action = self.fetch_action(action_id)
        return resolve_action_state(action, self.fetch_chain_time(), self.fetch_grace_period())

    def wait_until_queued(self, action_id: int, timeout: float) -> TimelockAction:
        """Wait until the executor has an actions set with the given id.

        :raises TimeoutError:
            Not queued in time
        """
        result = suspend_until(
            poll=self.fetch_actions_set_count,
            condition=lambda count: count > action_id,
            timeout=timeout,
            backoff=self.backoff,
            cancel=self.cancel,
            description=f"actions set #{action_id} on {self.address}",
        )
        if not result.satisfied:
            raise TimeoutError(f"Actions set #{action_id} not queued on {self.address} after {timeout}s, count is {result.value}")
        return self.fetch_action(action_id)

    def wait_until_executable(self, action_id: int, timeout: float) -> TimelockAction:
        """Wait until the delay of an actions set has passed.

        :return:
            The executable actions set

        :raises TimelockExpired:
            The grace period passed before we saw the set executable

        :raises TimeoutError:
            Still queued after ``timeout`` seconds
        """
        grace_period = self.fetch_grace_period()

        def poll() -> tuple[TimelockAction, TimelockActionState]:
            action = self.fetch_action(action_id)
            return action, resolve_action_state(action, self.fetch_chain_time(), grace_period)

        result = suspend_until(
            poll=poll,
            condition=lambda v: v[1] != TimelockActionState.queued,
            timeout=timeout,
            backoff=self.backoff,
            cancel=self.cancel,
            description=f"delay of actions set #{action_id}",
        )
        action, state = result.value

        match state:
            case TimelockActionState.executable | TimelockActionState.executed:
                return action
            case TimelockActionState.expired:
                raise TimelockExpired(f"Actions set #{action_id} on {self.address} expired: execution time {from_unix_timestamp(action.execution_time)}, grace period {grace_period}s")
            case TimelockActionState.canceled:
                raise TimelockActionCanceled(f"Actions set #{action_id} on {self.address} was cancelled")
            case _:
                raise TimeoutError(f"Actions set #{action_id} still queued after {timeout}s, executable at {from_unix_timestamp(action.execution_time)}")

    def execute(self, action_id: int) -> HexBytes:
        """Execute an executable actions set.

        :return:
            Transaction hash
        """
        assert self.sender, "No sender configured for execute()"
        logger.info("Executing actions set #%d on %s", action_id, self.address)
        func = self.contract.functions.execute(action_id)
        tx_hash = send_contract_call(self.web3, func, self.sender, self.hot_wallet, gas=self.gas)
        assert_transaction_success(self.web3, tx_hash, description=f"execute actions set #{action_id}")
        return tx_hash
