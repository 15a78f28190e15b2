"""Sequential contract deployment with address prediction checks.

A :py:class:`DeploymentPlan` is an ordered list of contract deployments
sent from one deployer account on one chain. Steps always run in the
order they were added, one transaction at a time, because later
constructor arguments refer to addresses of earlier steps, or to addresses
predicted on the other chain.

Each step may carry a post-deploy check. The usual check is
:py:func:`expect_address`: compare the deployed address against the
address predicted from the deployer nonce before anything was sent.
If someone else used the deployer account meanwhile, the nonces have
drifted and every later prediction is wrong, so the plan stops
with :py:class:`AddressPredictionMismatch`.

Example:

.. code-block:: python

    from eth_l2_bridge.address import fetch_predicted_addresses
    from eth_l2_bridge.deployment import ContractArtifact, DeploymentPlan, DeploymentStep, expect_address

    predicted = fetch_predicted_addresses(web3, deployer.address, 2)
    impl_artifact = ContractArtifact.from_file("artifacts/L1ERC20TokenGateway.json")
    proxy_artifact = ContractArtifact.from_file("artifacts/OssifiableProxy.json")

    plan = DeploymentPlan(web3, deployer.address, hot_wallet=deployer, name="L1")
    plan.add_step(DeploymentStep(impl_artifact, [...], expect_address(predicted[0])))
    plan.add_step(DeploymentStep(proxy_artifact, [predicted[0], admin, b""], expect_address(predicted[1])))

    print(plan.describe())
    addresses = plan.run()
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from eth_abi import encode
from eth_abi.exceptions import EncodingError, ParseError
from eth_typing import HexAddress
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes
from tabulate import tabulate
from tqdm_loggable.auto import tqdm
from web3 import Web3

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.abi import get_constructor_argument_names, load_contract_artifact
from eth_l2_bridge.address import PredictedAddressSet, fetch_predicted_addresses
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.trace import TransactionAssertionError, assert_transaction_success, send_contract_call

logger = logging.getLogger(__name__)


#: Post-deploy check signature: gets the deployed address, returns pass/fail
PostDeployCheck = Callable[[HexAddress], bool]


class AddressPredictionMismatch(BridgeOpsError):
    """A contract was not deployed at the address we predicted.

    Caused by nonce drift: the deployer sent other transactions
    between prediction and deployment. The rest of the plan is not deployed.
    """

    def __init__(self, step_index: int, contract_name: str, expected: HexAddress | None, actual: HexAddress):
        self.step_index = step_index
        self.contract_name = contract_name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Step #{step_index} {contract_name}: expected contract at {expected}, but it was deployed at {actual}. Did the deployer nonce drift?")


class DeploymentFailed(BridgeOpsError):
    """A deployment transaction reverted or did not create a contract."""


@dataclass(slots=True)
class ContractArtifact:
    """Compiled contract: what we need to deploy it."""

    #: Contract name, for logs
    name: str

    #: Contract ABI
    abi: list[dict]

    #: Creation bytecode as hex
    bytecode: str

    @classmethod
    def from_file(cls, path: str | Path) -> "ContractArtifact":
        """Load a Hardhat or Foundry artifact JSON."""
        data = load_contract_artifact(path)
        return cls(name=data["contractName"], abi=data["abi"], bytecode=data["bytecode"])

    def get_constructor_argument_names(self) -> list[str]:
        return get_constructor_argument_names(self.abi)

    def get_constructor_argument_types(self) -> list[str]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return [collapse_if_tuple(i) for i in entry.get("inputs", [])]
        return []


class ExpectAddress:
    """Post-deploy check comparing the deployed address to a predicted one."""

    def __init__(self, expected: HexAddress | str):
        self.expected = Web3.to_checksum_address(expected)

    def __call__(self, deployed: HexAddress) -> bool:
        return Web3.to_checksum_address(deployed) == self.expected

    def __repr__(self):
        return f"<expect address {self.expected}>"


def expect_address(predicted: HexAddress | str) -> ExpectAddress:
    """Create a post-deploy check that the contract landed at ``predicted``."""
    return ExpectAddress(predicted)


@dataclass(slots=True)
class DeploymentStep:
    """One contract deployment in a plan."""

    #: What to deploy
    artifact: ContractArtifact

    #: Constructor arguments in order. May contain predicted addresses.
    args: list[Any] = field(default_factory=list)

    #: Optional check run against the deployed address
    post_deploy_check: PostDeployCheck | None = None

    #: Human-readable label, defaults to the contract name
    label: str | None = None

    def get_label(self) -> str:
        return self.label or self.artifact.name


class DeploymentPlanState(enum.Enum):
    """Where a plan is in its life cycle."""

    #: Steps can still be added
    pending = "pending"

    #: run() is in progress
    running = "running"

    #: All steps deployed and checked
    complete = "complete"

    #: A step failed, the remaining steps were not deployed
    failed = "failed"


class DeploymentPlan:
    """Ordered contract deployments bound to one chain and one deployer.

    - Steps run strictly in order, never in parallel
    - A failed post-deploy check aborts the remaining steps
    - A plan can be run only once
    """

    def __init__(
        self,
        web3: Web3,
        deployer: HexAddress | str,
        hot_wallet: HotWallet | None = None,
        name: str = "",
        gas: int | None = None,
    ):
        """
        :param deployer:
            Address sending the deployment transactions

        :param hot_wallet:
            Local signer for ``deployer``. If not given, ``deployer`` must be
            an unlocked node account, like on Anvil.

        :param name:
            Plan name for logs and progress bars, e.g. ``"L1"``

        :param gas:
            Gas limit for each deployment. Estimated by the node when not given.
        """
        self.web3 = web3
        self.deployer = Web3.to_checksum_address(deployer)
        self.hot_wallet = hot_wallet
        self.name = name or f"chain {web3.eth.chain_id}"
        self.gas = gas
        self.steps: list[DeploymentStep] = []
        self.deployed_addresses: list[HexAddress] = []
        self.tx_hashes: list[HexBytes] = []
        self.state = DeploymentPlanState.pending

        if hot_wallet is not None:
            assert hot_wallet.address == self.deployer, f"Hot wallet {hot_wallet.address} is not deployer {self.deployer}"

    def __repr__(self):
        return f"<DeploymentPlan {self.name} by {self.deployer}, {len(self.steps)} steps, {self.state.value}>"

    def add_step(self, step: DeploymentStep) -> "DeploymentPlan":
        """Append a deployment step.

        :return:
            Self, so calls can be chained
        """
        assert isinstance(step, DeploymentStep), f"Expected DeploymentStep, got {type(step)}"
        assert self.state == DeploymentPlanState.pending, f"Cannot add steps to a plan that is {self.state.value}"
        self.steps.append(step)
        return self

    def predict_addresses(self) -> PredictedAddressSet:
        """Predict where every step of this plan will be deployed.

        Assumes the deployer sends no other transactions before :py:meth:`run`.
        """
        return fetch_predicted_addresses(self.web3, self.deployer, len(self.steps))

    def get_address(self, step_index: int) -> HexAddress:
        """Address deployed by a completed step."""
        assert 0 <= step_index < len(self.deployed_addresses), f"Step #{step_index} has not been deployed. Deployed {len(self.deployed_addresses)} of {len(self.steps)} steps."
        return self.deployed_addresses[step_index]

    def run(self, progress: bool = False) -> list[HexAddress]:
        """Deploy all steps in order.

        :param progress:
            Show a tqdm progress bar.

        :return:
            Deployed addresses in step order

        :raises AddressPredictionMismatch:
            A post-deploy check failed

        :raises DeploymentFailed:
            A deployment transaction reverted
        """
        assert self.state == DeploymentPlanState.pending, f"Plan {self.name} has already been run: {self.state.value}"
        assert self.steps, f"Plan {self.name} has no steps"

        self.state = DeploymentPlanState.running

        if self.hot_wallet is not None and self.hot_wallet.current_nonce is None:
            self.hot_wallet.sync_nonce(self.web3)

        logger.info("Running deployment plan %s: %d steps from %s", self.name, len(self.steps), self.deployer)

        progress_bar = tqdm(total=len(self.steps), desc=f"Deploying {self.name}", unit="contract", disable=not progress)
        try:
            for idx, step in enumerate(self.steps):
                progress_bar.set_postfix_str(step.get_label())
                address = self._deploy_step(idx, step)
                self.deployed_addresses.append(address)
                progress_bar.update(1)
        except Exception:
            self.state = DeploymentPlanState.failed
            raise
        finally:
            progress_bar.close()

        self.state = DeploymentPlanState.complete
        logger.info("Deployment plan %s complete", self.name)
        return list(self.deployed_addresses)

    def _deploy_step(self, idx: int, step: DeploymentStep) -> HexAddress:
        label = step.get_label()
        contract_class = self.web3.eth.contract(abi=step.artifact.abi, bytecode=step.artifact.bytecode)
        constructor = contract_class.constructor(*step.args)

        logger.info("%s: deploying #%d %s with args %s", self.name, idx, label, step.args)
        tx_hash = send_contract_call(self.web3, constructor, self.deployer, self.hot_wallet, gas=self.gas)
        self.tx_hashes.append(tx_hash)

        try:
            receipt = assert_transaction_success(self.web3, tx_hash, description=f"deploy {label}")
        except TransactionAssertionError as e:
            raise DeploymentFailed(f"{self.name}: deployment of step #{idx} {label} reverted, tx {HexBytes(tx_hash).hex()}") from e

        address = receipt.get("contractAddress")
        if not address:
            raise DeploymentFailed(f"{self.name}: step #{idx} {label} did not create a contract, tx {HexBytes(tx_hash).hex()}")

        address = Web3.to_checksum_address(address)
        logger.info("%s: deployed #%d %s at %s", self.name, idx, label, address)

        if step.post_deploy_check is not None:
            if not step.post_deploy_check(address):
                expected = getattr(step.post_deploy_check, "expected", None)
                raise AddressPredictionMismatch(idx, label, expected, address)

        if logger.isEnabledFor(logging.DEBUG):
            try:
                logger.debug("Verify with: %s", self.get_verification_hint(idx, address))
            except (EncodingError, ParseError, ValueError, TypeError) as e:
                logger.warning("%s: cannot build verification command for #%d %s: %s", self.name, idx, label, e)
        return address

    def get_verification_hint(self, step_index: int, address: HexAddress | None = None) -> str:
        """Build a ``forge verify-contract`` command line for a step."""
        step = self.steps[step_index]
        address = address or self.get_address(step_index)
        types = step.artifact.get_constructor_argument_types()
        cmd = f"forge verify-contract --chain-id {self.web3.eth.chain_id} {address} {step.artifact.name}"
        if types:
            encoded_args = encode(types, step.args)
            cmd += f" --constructor-args 0x{encoded_args.hex()}"
        return cmd

    def describe(self) -> str:
        """Render a dry-run summary of the plan as a text table.

        Lists every step with its constructor arguments by name,
        and the deployed address for steps that have run.
        """
        rows = []
        for idx, step in enumerate(self.steps):
            names = step.artifact.get_constructor_argument_names()
            if len(names) != len(step.args):
                names = [f"arg{i}" for i in range(len(step.args))]

            args = "\n".join(f"{n}: {_format_arg(a)}" for n, a in zip(names, step.args)) or "-"
            expected = getattr(step.post_deploy_check, "expected", None)
            deployed = self.deployed_addresses[idx] if idx < len(self.deployed_addresses) else None
            rows.append([idx, step.get_label(), args, expected or "-", deployed or "-"])

        header = f"Deployment plan {self.name}, deployer {self.deployer}, chain {self.web3.eth.chain_id}"
        table = tabulate(rows, headers=["#", "Contract", "Constructor arguments", "Expected address", "Deployed"], tablefmt="fancy_grid")
        return f"{header}\n{table}"


def _format_arg(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)
