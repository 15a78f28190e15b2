"""Bridge pair deployment, setup and governed actions across two chains."""

import pytest
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector
from hexbytes import HexBytes
from web3 import Web3

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.bridging_manager import BridgeConfig
from eth_l2_bridge.config import ChainDeploymentConfig, MultiChainDeploymentConfig
from eth_l2_bridge.deployment import AddressPredictionMismatch, ContractArtifact, DeploymentPlanState
from eth_l2_bridge.messaging.base import CrossChainMessenger, DeliveryReport, MessageDeliveryTimeout, MessageExecutionFailed, MessageStatus, PreparedMessage
from eth_l2_bridge.orchestrator import (
    BridgeArtifacts,
    DirectTransactionSubmitter,
    GovernanceSubmitter,
    L2TokenParameters,
    create_bridge_deploy_plans,
    deploy_bridge_pair,
    encode_bridge_initialize,
    fetch_l2_token_parameters,
    push_governed_action,
    run_plans_parallel,
    setup_bridges,
)
from eth_l2_bridge.polling import BackoffPolicy
from eth_l2_bridge.roles import BridgeRole
from eth_l2_bridge.timelock import TimelockAction, TimelockCall, TimelockExecutor

from fake_chain import FakeChain
from fake_rpc import FakeRPCProvider

L1_DEPLOYER = Web3.to_checksum_address("0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0")
L2_DEPLOYER = Web3.to_checksum_address("0x9a8ec3b44ee760b629e204900c86d67414a67e8f")
TOKEN = Web3.to_checksum_address("0x7f39c581f595b53c5cb19bd0b3f8da6c935e2ca0")
INBOX = Web3.to_checksum_address("0x4dbd4fc535ac27206064b68ffcf827b0a60bab3f")
L1_ROUTER = Web3.to_checksum_address("0x72ce9c846789fdb6fc1f34ac4ad25dd9ef7031ef")
ARB_SYS = Web3.to_checksum_address("0x0000000000000000000000000000000000000064")
L2_ROUTER = Web3.to_checksum_address("0x5288c571fd7ad117bea99bf60fe0846c4e84f933")
AGENT = Web3.to_checksum_address("0x3e40d73eb977dc6a537af587d48316fee66e9c8c")
L2_EXECUTOR = Web3.to_checksum_address("0x2e06c3d8b4a1e6c8f8a0c7f2f5b25b2c8e0f7a11")
NEW_AGENT = Web3.to_checksum_address("0x73b047fe6337183a454c5217241d780a932777bd")

SOURCE_TX = HexBytes("0x" + "88" * 32)
EXECUTE_TX = HexBytes("0x" + "99" * 32)


def make_artifact(name: str, types: list[str]) -> ContractArtifact:
    inputs = [{"name": f"arg{idx}", "type": t} for idx, t in enumerate(types)]
    return ContractArtifact(name=name, abi=[{"type": "constructor", "stateMutability": "nonpayable", "inputs": inputs}], bytecode="0x6080604052")


@pytest.fixture()
def artifacts() -> BridgeArtifacts:
    return BridgeArtifacts(
        l1_bridge=make_artifact("L1ERC20TokenGateway", ["address"] * 5),
        l2_bridge=make_artifact("L2ERC20TokenGateway", ["address"] * 5),
        l2_token=make_artifact("ERC20Bridged", ["string", "string", "uint8", "address"]),
        proxy=make_artifact("OssifiableProxy", ["address", "address", "bytes"]),
    )


@pytest.fixture()
def l1() -> FakeChain:
    return FakeChain(chain_id=1)


@pytest.fixture()
def l2() -> FakeChain:
    chain = FakeChain(chain_id=42161)
    # L2 deployer nonce differs from the L1 one
    chain.send_transaction(L2_DEPLOYER)
    return chain


def create_plans(l1, l2, artifacts):
    return create_bridge_deploy_plans(
        l1.web3,
        l2.web3,
        artifacts,
        l1_token=TOKEN,
        token_params=L2TokenParameters("Wrapped liquid staked Ether 2.0", "wstETH", 18),
        l1_deployer=L1_DEPLOYER,
        l2_deployer=L2_DEPLOYER,
        l1_dependencies=[INBOX, L1_ROUTER],
        l2_dependencies=[ARB_SYS, L2_ROUTER],
        l1_proxy_admin=AGENT,
        l2_proxy_admin=L2_EXECUTOR,
    )


def test_deploy_bridge_pair(l1, l2, artifacts):
    """Both sides reference each other by their predicted proxy addresses."""
    plans = create_plans(l1, l2, artifacts)
    assert plans.l2_predicted.starting_nonce == 1

    l1_addresses, l2_addresses = deploy_bridge_pair(plans)

    assert l1_addresses == list(plans.l1_predicted.addresses)
    assert l2_addresses == list(plans.l2_predicted.addresses)
    assert plans.l1_bridge_proxy == l1_addresses[1]
    assert plans.l2_token_proxy == l2_addresses[1]
    assert plans.l2_bridge_proxy == l2_addresses[3]

    l1_bridge_impl = l1.contracts[l1_addresses[0]]
    assert l1_bridge_impl.args == (INBOX, L1_ROUTER, plans.l2_bridge_proxy, TOKEN, plans.l2_token_proxy)

    l1_bridge_proxy = l1.contracts[l1_addresses[1]]
    assert l1_bridge_proxy.args == (l1_addresses[0], AGENT, encode_bridge_initialize(L1_DEPLOYER))

    l2_token_impl = l2.contracts[l2_addresses[0]]
    assert l2_token_impl.args == ("Wrapped liquid staked Ether 2.0", "wstETH", 18, plans.l2_bridge_proxy)

    l2_token_proxy = l2.contracts[l2_addresses[1]]
    token_init = function_signature_to_4byte_selector("initialize(string,string)") + encode(["string", "string"], ["Wrapped liquid staked Ether 2.0", "wstETH"])
    assert l2_token_proxy.args == (l2_addresses[0], L2_EXECUTOR, token_init)

    l2_bridge_impl = l2.contracts[l2_addresses[2]]
    assert l2_bridge_impl.args == (ARB_SYS, L2_ROUTER, plans.l1_bridge_proxy, TOKEN, plans.l2_token_proxy)

    l2_bridge_proxy = l2.contracts[l2_addresses[3]]
    assert l2_bridge_proxy.args == (l2_addresses[2], L2_EXECUTOR, encode_bridge_initialize(L2_DEPLOYER))


def test_fetch_l2_token_parameters():
    """Name and symbol default to the L1 token, decimals always do."""
    provider = FakeRPCProvider()
    provider.mock_call(TOKEN, "name()", ["string"], ["Wrapped liquid staked Ether 2.0"])
    provider.mock_call(TOKEN, "symbol()", ["string"], ["wstETH"])
    provider.mock_call(TOKEN, "decimals()", ["uint8"], [18])
    web3 = Web3(provider)

    assert fetch_l2_token_parameters(web3, TOKEN) == L2TokenParameters("Wrapped liquid staked Ether 2.0", "wstETH", 18)

    provider.requests.clear()
    params = fetch_l2_token_parameters(web3, TOKEN, name="Bridged wstETH", symbol="wstETH.b")
    assert params == L2TokenParameters("Bridged wstETH", "wstETH.b", 18)
    assert provider.requests.count("eth_call") == 1


def test_deploy_bridge_pair_stale_prediction(l1, l2, artifacts):
    """A deployer transaction after planning stops the deployment before anything is sent."""
    plans = create_plans(l1, l2, artifacts)
    l2.send_transaction(L2_DEPLOYER)

    with pytest.raises(AssertionError):
        deploy_bridge_pair(plans)

    assert l1.contracts == {}


def test_run_plans_parallel_finishes_other_chain(l1, l2, artifacts):
    """A failing L2 plan does not stop the L1 plan, the L2 error is raised afterwards."""
    plans = create_plans(l1, l2, artifacts)
    l2.send_transaction(L2_DEPLOYER)

    with pytest.raises(AddressPredictionMismatch):
        run_plans_parallel([plans.l1, plans.l2])

    assert plans.l1.state == DeploymentPlanState.complete
    assert len(l1.contracts) == 2
    assert plans.l2.state == DeploymentPlanState.failed


def test_run_plans_parallel_needs_distinct_chains(artifacts):
    a = FakeChain(chain_id=10)
    b = FakeChain(chain_id=10)
    plans = create_plans(a, b, artifacts)
    with pytest.raises(AssertionError):
        run_plans_parallel([plans.l1, plans.l2])


def test_setup_bridges(l1, l2):
    """Both bridges end up with their own admins and pause states."""
    l1_bridge = l1.deploy_bridging_manager(L1_DEPLOYER)
    l2_bridge = l2.deploy_bridging_manager(L2_DEPLOYER)

    config = MultiChainDeploymentConfig(
        token=TOKEN,
        l1=ChainDeploymentConfig(
            proxy_admin=AGENT,
            bridge=BridgeConfig(bridge_admin=AGENT, deposits_enabled=True, withdrawals_enabled=True, deposits_enablers=[AGENT], withdrawals_enablers=[AGENT]),
        ),
        l2=ChainDeploymentConfig(
            proxy_admin=L2_EXECUTOR,
            bridge=BridgeConfig(bridge_admin=L2_EXECUTOR, deposits_enabled=True, withdrawals_enabled=False, deposits_disablers=[L2_EXECUTOR]),
        ),
    )

    l1_applied, l2_applied = setup_bridges(l1.web3, l2.web3, l1_bridge.address, l2_bridge.address, config, L1_DEPLOYER, L2_DEPLOYER)

    assert l1_applied and l2_applied
    assert l1_bridge.get_holders(BridgeRole.admin) == {AGENT}
    assert l1_bridge.deposits_enabled and l1_bridge.withdrawals_enabled
    assert l2_bridge.get_holders(BridgeRole.admin) == {L2_EXECUTOR}
    assert l2_bridge.get_holders(BridgeRole.deposits_disabler) == {L2_EXECUTOR}
    assert l2_bridge.get_holders(BridgeRole.deposits_enabler) == set()
    assert l2_bridge.deposits_enabled and not l2_bridge.withdrawals_enabled


class FakeMessenger:
    """Delivers with a fixed status."""

    def __init__(self, status: MessageStatus, error: BridgeOpsError | None = None):
        self.status = status
        self.error = error
        self.prepared = []

    def prepare_message(self, message):
        self.prepared.append(message)
        return PreparedMessage(to=INBOX, calldata=HexBytes(message.calldata), value=1, params={"gas_limit": message.gas_limit})

    def wait_for_delivery(self, source_tx_hash, timeout):
        return DeliveryReport(status=self.status, source_tx_hash=HexBytes(source_tx_hash), error=self.error)


class FakeExecutorState:
    """Actions sets of an executor, filled in when the message is submitted."""

    def __init__(self):
        self.actions: list[TimelockAction] = []
        self.executed: list[int] = []

    def queue(self, calls: list[TimelockCall], execution_time: int):
        self.actions.append(
            TimelockAction(
                id=len(self.actions),
                targets=[c.target for c in calls],
                values=[c.value for c in calls],
                signatures=[c.signature for c in calls],
                calldatas=[bytes(c.calldata) for c in calls],
                with_delegatecalls=[c.with_delegatecall for c in calls],
                execution_time=execution_time,
                executed=False,
                canceled=False,
            )
        )


class FakeSubmitter:
    """Queues an unrelated actions set and then ours, like a concurrent governance vote would."""

    def __init__(self, state: FakeExecutorState, calls: list[TimelockCall]):
        self.state = state
        self.calls = calls
        self.submitted = []

    def submit(self, prepared: PreparedMessage) -> HexBytes:
        self.submitted.append(prepared)
        other = TimelockCall.from_signature(L2_EXECUTOR, "updateGuardian(address)", ["address"], [AGENT])
        self.state.queue([other], execution_time=0)
        self.state.queue(self.calls, execution_time=0)
        return SOURCE_TX


def create_timelock(state: FakeExecutorState) -> TimelockExecutor:
    timelock = TimelockExecutor(Web3(), L2_EXECUTOR, backoff=BackoffPolicy.create_test_config())
    timelock.fetch_actions_set_count = lambda: len(state.actions)
    timelock.fetch_action = lambda action_id: state.actions[action_id]
    timelock.fetch_grace_period = lambda: 3600
    timelock.fetch_chain_time = lambda: 100

    def execute(action_id):
        state.executed.append(action_id)
        return EXECUTE_TX

    timelock.execute = execute
    return timelock


def create_calls() -> list[TimelockCall]:
    return [TimelockCall.from_signature(L2_EXECUTOR, "updateEthereumGovernanceExecutor(address)", ["address"], [NEW_AGENT])]


def test_protocols():
    """Test doubles satisfy the runtime protocols."""
    assert isinstance(FakeMessenger(MessageStatus.auto_delivered), CrossChainMessenger)
    assert isinstance(DirectTransactionSubmitter(Web3(), AGENT), GovernanceSubmitter)


def test_push_governed_action():
    """Message delivered, our actions set found among concurrent ones and executed."""
    state = FakeExecutorState()
    calls = create_calls()
    messenger = FakeMessenger(MessageStatus.auto_delivered)
    submitter = FakeSubmitter(state, calls)
    timelock = create_timelock(state)

    result = push_governed_action(messenger, submitter, timelock, calls, sender=AGENT, gas_limit=300_000, queue_timeout=1, execution_timeout=1)

    message = messenger.prepared[0]
    assert message.recipient == L2_EXECUTOR
    assert message.calldata == bytes(timelock.encode_queue_calldata(calls))
    assert result.action_id == 1
    assert state.executed == [1]
    assert result.execute_tx_hash == EXECUTE_TX
    assert result.source_tx_hash == SOURCE_TX
    assert result.message_params == {"gas_limit": 300_000}


def test_push_governed_action_already_executed():
    """Someone else executed our set first, nothing to send."""
    state = FakeExecutorState()
    calls = create_calls()
    timelock = create_timelock(state)

    class ExecutingSubmitter(FakeSubmitter):
        def submit(self, prepared):
            tx_hash = super().submit(prepared)
            self.state.actions[-1].executed = True
            return tx_hash

    result = push_governed_action(FakeMessenger(MessageStatus.finalized), ExecutingSubmitter(state, calls), timelock, calls, sender=AGENT, queue_timeout=1, execution_timeout=1)
    assert result.execute_tx_hash is None
    assert state.executed == []


def test_push_governed_action_message_failed():
    """A failed message is raised, no execution is attempted."""
    state = FakeExecutorState()
    calls = create_calls()
    messenger = FakeMessenger(MessageStatus.failed, MessageExecutionFailed("Ticket expired"))

    with pytest.raises(MessageExecutionFailed):
        push_governed_action(messenger, FakeSubmitter(state, calls), create_timelock(state), calls, sender=AGENT)

    assert state.executed == []


def test_push_governed_action_not_delivered():
    state = FakeExecutorState()
    calls = create_calls()
    messenger = FakeMessenger(MessageStatus.pending, MessageDeliveryTimeout("Still pending"))

    with pytest.raises(MessageDeliveryTimeout):
        push_governed_action(messenger, FakeSubmitter(state, calls), create_timelock(state), calls, sender=AGENT)

    assert state.executed == []


def test_push_governed_action_no_matching_set():
    """Only somebody else's actions set got queued."""
    state = FakeExecutorState()
    calls = create_calls()

    class OtherSubmitter(FakeSubmitter):
        def submit(self, prepared):
            other = TimelockCall.from_signature(L2_EXECUTOR, "updateGuardian(address)", ["address"], [AGENT])
            self.state.queue([other], execution_time=0)
            return SOURCE_TX

    with pytest.raises(BridgeOpsError, match="matches"):
        push_governed_action(FakeMessenger(MessageStatus.auto_delivered), OtherSubmitter(state, calls), create_timelock(state), calls, sender=AGENT, queue_timeout=1)
