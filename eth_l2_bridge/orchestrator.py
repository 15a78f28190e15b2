"""Deploy, configure and govern an L1/L2 bridge pair.

The bridge pair consists of six contracts:

.. code-block:: text

    L1 (2 contracts)                     L2 (4 contracts)

    #0 L1 bridge implementation ───┐     #0 L2 token implementation
    #1 L1 bridge proxy  ◄──────────┼──── #1 L2 token proxy
                                   └───► #2 L2 bridge implementation
                                         #3 L2 bridge proxy

The L1 bridge needs the L2 bridge proxy and the L2 token proxy addresses
in its constructor, and the L2 bridge needs the L1 bridge proxy address.
We break the circle by predicting all six addresses from the deployer
nonces before sending anything, see :py:mod:`eth_l2_bridge.address`.

After deployment, :py:func:`setup_bridges` hands the bridges over
to their final admins, and governance actions reach the L2 through
:py:func:`push_governed_action`.

Example:

.. code-block:: python

    plans = create_bridge_deploy_plans(
        l1_web3,
        l2_web3,
        artifacts,
        l1_token=config.token,
        token_params=fetch_l2_token_parameters(l1_web3, config.token),
        l1_deployer=l1_wallet.address,
        l2_deployer=l2_wallet.address,
        l1_dependencies=[inbox, l1_router],
        l2_dependencies=[ARB_SYS, l2_router],
        l1_hot_wallet=l1_wallet,
        l2_hot_wallet=l2_wallet,
    )
    print(plans.l1.describe())
    print(plans.l2.describe())
    deploy_bridge_pair(plans)
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.abi import encode_function_call, get_deployed_contract
from eth_l2_bridge.address import PredictedAddressSet, fetch_predicted_addresses_multichain
from eth_l2_bridge.bridging_manager import AppliedOperation, BridgingManagement
from eth_l2_bridge.config import MultiChainDeploymentConfig
from eth_l2_bridge.deployment import ContractArtifact, DeploymentPlan, DeploymentStep, expect_address
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.messaging.base import CrossChainMessenger, DeliveryReport, MessageData, MessageDeliveryTimeout, MessageExecutionFailed, MessageStatus, PreparedMessage
from eth_l2_bridge.timelock import TimelockAction, TimelockCall, TimelockExecutor
from eth_l2_bridge.trace import assert_transaction_success

logger = logging.getLogger(__name__)


#: L1 contracts deployed per bridge pair
L1_CONTRACT_COUNT = 2

#: L2 contracts deployed per bridge pair
L2_CONTRACT_COUNT = 4

#: How long we wait for a governance message to arrive on L2
DEFAULT_DELIVERY_TIMEOUT = 30 * 60

#: How long we wait for the queued actions set to show up on L2
DEFAULT_QUEUE_TIMEOUT = 10 * 60

#: How long we wait for the executor delay to pass
DEFAULT_EXECUTION_TIMEOUT = 60 * 60


@dataclass(slots=True)
class BridgeArtifacts:
    """Compiled contracts of a bridge pair."""

    #: L1 bridge implementation, like ``L1ERC20TokenGateway`` or ``L1ERC20TokenBridge``
    l1_bridge: ContractArtifact

    #: L2 bridge implementation
    l2_bridge: ContractArtifact

    #: Bridged token implementation, like ``ERC20Bridged``
    l2_token: ContractArtifact

    #: ``OssifiableProxy`` used for all three proxies
    proxy: ContractArtifact


@dataclass(slots=True)
class L2TokenParameters:
    """Bridged token metadata."""

    name: str
    symbol: str
    decimals: int = 18


@dataclass(slots=True)
class BridgeDeployPlans:
    """Deployment plans of a bridge pair and the addresses they were built against."""

    #: Plan for L1: bridge implementation, bridge proxy
    l1: DeploymentPlan

    #: Plan for L2: token implementation, token proxy, bridge implementation, bridge proxy
    l2: DeploymentPlan

    l1_predicted: PredictedAddressSet

    l2_predicted: PredictedAddressSet

    @property
    def l1_bridge_proxy(self) -> HexAddress:
        return self.l1_predicted[1]

    @property
    def l2_token_proxy(self) -> HexAddress:
        return self.l2_predicted[1]

    @property
    def l2_bridge_proxy(self) -> HexAddress:
        return self.l2_predicted[3]


def encode_bridge_initialize(admin: HexAddress | str) -> bytes:
    """Proxy init data calling ``initialize(admin)`` on the bridge."""
    return bytes(encode_function_call("initialize(address)", ["address"], [Web3.to_checksum_address(admin)]))


def encode_token_initialize(token_params: L2TokenParameters) -> bytes:
    """Proxy init data calling ``initialize(name, symbol)`` on the bridged token.

    The token implementation keeps the values given to its constructor,
    but the proxy storage starts empty and gets them from this call.
    """
    return bytes(encode_function_call("initialize(string,string)", ["string", "string"], [token_params.name, token_params.symbol]))


def fetch_l2_token_parameters(
    web3: Web3,
    l1_token: HexAddress | str,
    name: str | None = None,
    symbol: str | None = None,
) -> L2TokenParameters:
    """Read the bridged token metadata from the L1 token.

    Decimals always follow the L1 token, so that bridged amounts map one to one.

    :param name:
        L2 token name. Defaults to the L1 token name.

    :param symbol:
        L2 token symbol. Defaults to the L1 token symbol.
    """
    token = get_deployed_contract(web3, "IERC20Metadata.json", l1_token)
    decimals = token.functions.decimals().call()
    if name is None:
        name = token.functions.name().call()
    if symbol is None:
        symbol = token.functions.symbol().call()
    logger.info("L2 token for %s: %s (%s), %d decimals", token.address, name, symbol, decimals)
    return L2TokenParameters(name=name, symbol=symbol, decimals=decimals)


def create_bridge_deploy_plans(
    l1_web3: Web3,
    l2_web3: Web3,
    artifacts: BridgeArtifacts,
    l1_token: HexAddress | str,
    token_params: L2TokenParameters,
    l1_deployer: HexAddress | str,
    l2_deployer: HexAddress | str,
    l1_dependencies: list[Any] | None = None,
    l2_dependencies: list[Any] | None = None,
    l1_proxy_admin: HexAddress | str | None = None,
    l2_proxy_admin: HexAddress | str | None = None,
    l1_hot_wallet: HotWallet | None = None,
    l2_hot_wallet: HotWallet | None = None,
    gas: int | None = None,
) -> BridgeDeployPlans:
    """Predict addresses on both chains and build the two deployment plans.

    Bridge implementation constructors take the chain specific dependencies first,
    followed by ``(counterpart bridge proxy, L1 token, L2 token proxy)``.
    For Arbitrum gateways the dependencies are ``[inbox, router]`` on L1 and
    ``[arbSys, router]`` on L2, for OP stack bridges the cross-domain messenger.

    The deployers must not send other transactions before the plans are run.

    :param token_params:
        Bridged token metadata, see :py:func:`fetch_l2_token_parameters`

    :param l1_dependencies:
        Constructor arguments preceding the shared ones for the L1 bridge

    :param l2_dependencies:
        Constructor arguments preceding the shared ones for the L2 bridge

    :param l1_proxy_admin:
        Admin of the L1 proxy. Defaults to the deployer.

    :param l2_proxy_admin:
        Admin of the L2 proxies. Defaults to the deployer.
    """
    if l1_hot_wallet is not None and l2_hot_wallet is not None:
        assert l1_hot_wallet is not l2_hot_wallet, "Use one HotWallet instance per chain, nonces are chain-local"

    l1_deployer = Web3.to_checksum_address(l1_deployer)
    l2_deployer = Web3.to_checksum_address(l2_deployer)
    l1_token = Web3.to_checksum_address(l1_token)
    l1_proxy_admin = Web3.to_checksum_address(l1_proxy_admin or l1_deployer)
    l2_proxy_admin = Web3.to_checksum_address(l2_proxy_admin or l2_deployer)

    l1_predicted, l2_predicted = fetch_predicted_addresses_multichain(
        [
            (l1_web3, l1_deployer, L1_CONTRACT_COUNT),
            (l2_web3, l2_deployer, L2_CONTRACT_COUNT),
        ]
    )

    l1_bridge_impl, l1_bridge_proxy = l1_predicted.addresses
    l2_token_impl, l2_token_proxy, l2_bridge_impl, l2_bridge_proxy = l2_predicted.addresses

    l1_plan = DeploymentPlan(l1_web3, l1_deployer, hot_wallet=l1_hot_wallet, name="L1", gas=gas)
    l1_plan.add_step(
        DeploymentStep(
            artifacts.l1_bridge,
            list(l1_dependencies or []) + [l2_bridge_proxy, l1_token, l2_token_proxy],
            expect_address(l1_bridge_impl),
            label=f"{artifacts.l1_bridge.name} implementation",
        )
    ).add_step(
        DeploymentStep(
            artifacts.proxy,
            [l1_bridge_impl, l1_proxy_admin, encode_bridge_initialize(l1_deployer)],
            expect_address(l1_bridge_proxy),
            label=f"{artifacts.l1_bridge.name} proxy",
        )
    )

    l2_plan = DeploymentPlan(l2_web3, l2_deployer, hot_wallet=l2_hot_wallet, name="L2", gas=gas)
    l2_plan.add_step(
        DeploymentStep(
            artifacts.l2_token,
            [token_params.name, token_params.symbol, token_params.decimals, l2_bridge_proxy],
            expect_address(l2_token_impl),
            label=f"{artifacts.l2_token.name} implementation",
        )
    ).add_step(
        DeploymentStep(
            artifacts.proxy,
            [l2_token_impl, l2_proxy_admin, encode_token_initialize(token_params)],
            expect_address(l2_token_proxy),
            label=f"{artifacts.l2_token.name} proxy",
        )
    ).add_step(
        DeploymentStep(
            artifacts.l2_bridge,
            list(l2_dependencies or []) + [l1_bridge_proxy, l1_token, l2_token_proxy],
            expect_address(l2_bridge_impl),
            label=f"{artifacts.l2_bridge.name} implementation",
        )
    ).add_step(
        DeploymentStep(
            artifacts.proxy,
            [l2_bridge_impl, l2_proxy_admin, encode_bridge_initialize(l2_deployer)],
            expect_address(l2_bridge_proxy),
            label=f"{artifacts.l2_bridge.name} proxy",
        )
    )

    return BridgeDeployPlans(
        l1=l1_plan,
        l2=l2_plan,
        l1_predicted=l1_predicted,
        l2_predicted=l2_predicted,
    )


def run_plans_parallel(plans: list[DeploymentPlan], progress: bool = False) -> list[list[HexAddress]]:
    """Run deployment plans for different chains at the same time.

    Each plan gets its own thread and stays strictly sequential inside.
    A failing plan does not stop the others: all plans run to their end,
    then the first error is raised.

    :return:
        Deployed addresses per plan, in the order of ``plans``
    """
    chain_ids = [p.web3.eth.chain_id for p in plans]
    assert len(set(chain_ids)) == len(chain_ids), f"Plans must target different chains, got {chain_ids}"

    results: dict[int, list[HexAddress]] = {}
    errors: dict[int, Exception] = {}
    with ThreadPoolExecutor(max_workers=len(plans), thread_name_prefix="deploy") as executor:
        futures = {executor.submit(plan.run, progress): idx for idx, plan in enumerate(plans)}
        for future in as_completed(futures):
            idx = futures[future]
            try:
                results[idx] = future.result()
            except Exception as e:
                logger.error("Deployment plan %s failed: %s", plans[idx].name, e)
                errors[idx] = e

    if errors:
        first = min(errors)
        raise errors[first]

    return [results[i] for i in range(len(plans))]


def deploy_bridge_pair(plans: BridgeDeployPlans, progress: bool = False) -> tuple[list[HexAddress], list[HexAddress]]:
    """Deploy the L1 and L2 side of a bridge pair concurrently.

    :return:
        ``(l1 addresses, l2 addresses)`` in step order

    :raises AddressPredictionMismatch:
        A deployer nonce moved between prediction and deployment
    """
    assert plans.l1_predicted.is_still_valid(plans.l1.web3), f"L1 deployer {plans.l1.deployer} has sent transactions after the prediction"
    assert plans.l2_predicted.is_still_valid(plans.l2.web3), f"L2 deployer {plans.l2.deployer} has sent transactions after the prediction"

    l1_addresses, l2_addresses = run_plans_parallel([plans.l1, plans.l2], progress=progress)
    logger.info(
        "Bridge pair deployed. L1 bridge proxy: %s, L2 token proxy: %s, L2 bridge proxy: %s",
        l1_addresses[1],
        l2_addresses[1],
        l2_addresses[3],
    )
    return l1_addresses, l2_addresses


def setup_bridges(
    l1_web3: Web3,
    l2_web3: Web3,
    l1_bridge: HexAddress | str,
    l2_bridge: HexAddress | str,
    config: MultiChainDeploymentConfig,
    l1_sender: HexAddress | str,
    l2_sender: HexAddress | str,
    l1_hot_wallet: HotWallet | None = None,
    l2_hot_wallet: HotWallet | None = None,
    l1_deployment_block: int = 0,
    l2_deployment_block: int = 0,
) -> tuple[list[AppliedOperation], list[AppliedOperation]]:
    """Apply role and pause configuration to both bridge proxies.

    The two chains are configured concurrently.

    :return:
        Operations applied on L1 and L2

    :raises RoleOperationFailure:
        A role transaction failed. The other chain still finishes its setup.
    """
    l1_management = BridgingManagement(
        get_deployed_contract(l1_web3, "BridgingManager.json", l1_bridge),
        l1_sender,
        hot_wallet=l1_hot_wallet,
        deployment_block=l1_deployment_block,
    )
    l2_management = BridgingManagement(
        get_deployed_contract(l2_web3, "BridgingManager.json", l2_bridge),
        l2_sender,
        hot_wallet=l2_hot_wallet,
        deployment_block=l2_deployment_block,
    )

    jobs = [(l1_management, config.l1.bridge), (l2_management, config.l2.bridge)]
    results: dict[int, list[AppliedOperation]] = {}
    errors: dict[int, Exception] = {}
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="setup") as executor:
        futures = {executor.submit(management.setup, bridge_config): idx for idx, (management, bridge_config) in enumerate(jobs)}
        for future in as_completed(futures):
            idx = futures[future]
            try:
                results[idx] = future.result()
            except Exception as e:
                logger.error("Bridge setup failed on %s: %s", jobs[idx][0], e)
                errors[idx] = e

    if errors:
        raise errors[min(errors)]

    return results[0], results[1]


@runtime_checkable
class GovernanceSubmitter(Protocol):
    """Sends a prepared L1 transaction on behalf of the governance.

    On mainnet this is a governance vote that executes the transaction
    through the DAO agent. On testnets and forks the transaction can be
    sent directly, see :py:class:`DirectTransactionSubmitter`.
    """

    def submit(self, prepared: PreparedMessage) -> HexBytes:
        """Get the prepared transaction executed on L1.

        :return:
            Hash of the L1 transaction that sent the message
        """


class DirectTransactionSubmitter:
    """Send the prepared message transaction straight from an L1 account."""

    def __init__(
        self,
        web3: Web3,
        sender: HexAddress | str,
        hot_wallet: HotWallet | None = None,
        gas: int | None = None,
    ):
        """
        :param sender:
            L1 account. Must be the account the L2 executor accepts messages from.

        :param hot_wallet:
            Signer for ``sender``. When not given, ``sender`` must be unlocked on the node.
        """
        self.web3 = web3
        self.sender = Web3.to_checksum_address(sender)
        self.hot_wallet = hot_wallet
        self.gas = gas
        if hot_wallet is not None:
            assert hot_wallet.address == self.sender, f"Hot wallet {hot_wallet.address} is not sender {self.sender}"

    def __repr__(self):
        return f"<DirectTransactionSubmitter {self.sender}>"

    def submit(self, prepared: PreparedMessage) -> HexBytes:
        tx = prepared.as_transaction()
        tx["from"] = self.sender
        tx["gas"] = self.gas or self.web3.eth.estimate_gas(tx)

        logger.info("Sending message transaction to %s from %s, value %d wei", prepared.to, self.sender, prepared.value)

        if self.hot_wallet is not None:
            if self.hot_wallet.current_nonce is None:
                self.hot_wallet.sync_nonce(self.web3)
            tx["chainId"] = self.web3.eth.chain_id
            tx["gasPrice"] = self.web3.eth.gas_price
            signed = self.hot_wallet.sign_transaction_with_new_nonce(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        else:
            tx_hash = self.web3.eth.send_transaction(tx)

        assert_transaction_success(self.web3, tx_hash, description=f"send message to {prepared.to}")
        return HexBytes(tx_hash)


@dataclass(slots=True)
class GovernedActionResult:
    """What happened when pushing a governance action to L2."""

    #: L1 transaction that sent the message
    source_tx_hash: HexBytes

    #: How the message was delivered
    delivery: DeliveryReport

    #: Actions set id on the L2 executor
    action_id: int

    #: The actions set as it was when it became executable
    action: TimelockAction

    #: Our ``execute()`` transaction. ``None`` if someone else executed the set first.
    execute_tx_hash: HexBytes | None = None

    #: Protocol specific message parameters
    message_params: dict = field(default_factory=dict)


def is_matching_action(action: TimelockAction, calls: list[TimelockCall]) -> bool:
    """Does an actions set contain exactly the given calls."""
    if len(action.targets) != len(calls):
        return False
    for idx, call in enumerate(calls):
        if Web3.to_checksum_address(action.targets[idx]) != Web3.to_checksum_address(call.target):
            return False
        if action.signatures[idx] != call.signature:
            return False
        if bytes(action.calldatas[idx]) != bytes(call.calldata):
            return False
        if action.values[idx] != call.value:
            return False
    return True


def find_queued_action(timelock: TimelockExecutor, calls: list[TimelockCall], first_id: int) -> TimelockAction:
    """Find our actions set among the sets queued since ``first_id``.

    Another governance message may have been queued at the same time,
    so the first new id is not necessarily ours.
    """
    count = timelock.fetch_actions_set_count()
    for action_id in range(first_id, count):
        action = timelock.fetch_action(action_id)
        if is_matching_action(action, calls):
            return action
    raise BridgeOpsError(f"None of the actions sets #{first_id} - #{count - 1} on {timelock.address} matches the sent calls")


def push_governed_action(
    messenger: CrossChainMessenger,
    submitter: GovernanceSubmitter,
    timelock: TimelockExecutor,
    calls: list[TimelockCall],
    sender: HexAddress | str,
    refund_address: HexAddress | str | None = None,
    gas_limit: int | None = None,
    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
    queue_timeout: float = DEFAULT_QUEUE_TIMEOUT,
    execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT,
) -> GovernedActionResult:
    """Queue calls on the L2 executor through L1 governance and execute them.

    1. Encode the calls as an executor ``queue()`` call
    2. Wrap it in a cross-chain message and have ``submitter`` send it on L1
    3. Wait until the message is executed on L2
    4. Wait until the actions set is queued and its delay has passed
    5. Execute the actions set

    :param sender:
        L1 account the message is sent from, as seen by the L2 executor

    :raises MessageExecutionFailed:
        The message cannot be executed on L2

    :raises MessageDeliveryTimeout:
        The message was not delivered within ``delivery_timeout``,
        or needs a manual follow-up we could not do

    :raises TimelockExpired:
        The actions set expired before we could execute it
    """
    assert calls, "No calls to push"
    sender = Web3.to_checksum_address(sender)

    message = MessageData(
        sender=sender,
        recipient=timelock.address,
        calldata=bytes(timelock.encode_queue_calldata(calls)),
        refund_address=Web3.to_checksum_address(refund_address) if refund_address else None,
        gas_limit=gas_limit,
    )
    prepared = messenger.prepare_message(message)
    first_id = timelock.fetch_actions_set_count()

    logger.info("Pushing %d call(s) to executor %s, next actions set id %d", len(calls), timelock.address, first_id)
    source_tx_hash = submitter.submit(prepared)

    report = messenger.wait_for_delivery(source_tx_hash, delivery_timeout)
    logger.info("Message %s delivery status: %s", HexBytes(source_tx_hash).hex(), report.status.value)

    if report.status == MessageStatus.failed:
        raise MessageExecutionFailed(f"Message {HexBytes(source_tx_hash).hex()} failed on the destination chain") from report.error

    if not report.is_delivered():
        if report.error is not None:
            raise report.error
        raise MessageDeliveryTimeout(f"Message {HexBytes(source_tx_hash).hex()} not delivered, status {report.status.value}")

    timelock.wait_until_queued(first_id, queue_timeout)
    action = find_queued_action(timelock, calls, first_id)
    action = timelock.wait_until_executable(action.id, execution_timeout)

    if action.executed:
        logger.info("Actions set #%d was already executed", action.id)
        execute_tx_hash = None
    else:
        execute_tx_hash = timelock.execute(action.id)

    return GovernedActionResult(
        source_tx_hash=HexBytes(source_tx_hash),
        delivery=report,
        action_id=action.id,
        action=action,
        execute_tx_hash=execute_tx_hash,
        message_params=prepared.params,
    )
