"""Deploy an L1/L2 token bridge pair and hand it over to the governance.

- Predicts the addresses of all contracts on both chains
- Prints the deployment plans and asks for confirmation
- Deploys L1 and L2 contracts in parallel
- Applies the role and pause configuration to both bridge proxies

Environment variables
---------------------

``FAMILY``
    ``arbitrum`` (default), ``optimism``, ``lisk`` or ``mantle``.
    Only used for the log output: the chain specific constructor
    dependencies are given with ``L1_DEPENDENCIES`` and ``L2_DEPENDENCIES``.

``JSON_RPC_L1``, ``JSON_RPC_L2``
    RPC URLs.

``PRIVATE_KEY``
    Deployer key. Needs ETH on both chains.

``ARTIFACTS_DIR``
    Directory of Hardhat/Foundry artifacts. Defaults to ``artifacts``.

``L1_BRIDGE_ARTIFACT``, ``L2_BRIDGE_ARTIFACT``, ``L2_TOKEN_ARTIFACT``, ``PROXY_ARTIFACT``
    Artifact file names inside ``ARTIFACTS_DIR``. Default to
    ``L1ERC20TokenGateway.json``, ``L2ERC20TokenGateway.json``,
    ``ERC20Bridged.json`` and ``OssifiableProxy.json``.

``L1_DEPENDENCIES``, ``L2_DEPENDENCIES``
    Comma-separated constructor arguments preceding the shared bridge arguments.
    Arbitrum: inbox and router on L1, ``ArbSys`` and router on L2.
    OP stack: the cross-domain messenger on both chains.

``L2_TOKEN_NAME``, ``L2_TOKEN_SYMBOL``
    Bridged token name and symbol. Default to the L1 token ones.
    Decimals always follow the L1 token.

``TOKEN``, ``L1_PROXY_ADMIN``, ``L1_BRIDGE_ADMIN``, ...
    Deployment configuration, see :py:mod:`eth_l2_bridge.config`.

``SKIP_PROMPT``
    Set to ``true`` to deploy without confirmation.

Usage:

.. code-block:: shell

    FAMILY=arbitrum \\
    JSON_RPC_L1=... \\
    JSON_RPC_L2=... \\
    PRIVATE_KEY=0x... \\
    TOKEN=0x... \\
    L1_DEPENDENCIES=0x4Dbd4fc535Ac27206064B68FfCf827b0A60BAB3f,0x72Ce9c846789fdB6fC1f34aC4AD25Dd9ef7031ef \\
    L2_DEPENDENCIES=0x0000000000000000000000000000000000000064,0x5288c571Fd7aD117beA99bF60FE0846C4E84F933 \\
    L2_TOKEN_NAME="Wrapped liquid staked Ether 2.0" \\
    L2_TOKEN_SYMBOL=wstETH \\
    L1_PROXY_ADMIN=0x... L1_BRIDGE_ADMIN=0x... \\
    L2_PROXY_ADMIN=0x... L2_BRIDGE_ADMIN=0x... \\
    python scripts/bridge/deploy-bridge.py
"""

import logging
import os
from pathlib import Path

from tabulate import tabulate

from eth_l2_bridge.config import load_multichain_deployment_config, parse_address_list
from eth_l2_bridge.deployment import ContractArtifact
from eth_l2_bridge.orchestrator import BridgeArtifacts, create_bridge_deploy_plans, deploy_bridge_pair, fetch_l2_token_parameters, setup_bridges
from eth_l2_bridge.utils import setup_console_logging
from script_utils import confirm, create_hot_wallets, create_web3, get_family

logger = logging.getLogger(__name__)


def load_artifacts() -> BridgeArtifacts:
    artifacts_dir = Path(os.environ.get("ARTIFACTS_DIR", "artifacts"))

    def load(env_var: str, default: str) -> ContractArtifact:
        return ContractArtifact.from_file(artifacts_dir / os.environ.get(env_var, default))

    return BridgeArtifacts(
        l1_bridge=load("L1_BRIDGE_ARTIFACT", "L1ERC20TokenGateway.json"),
        l2_bridge=load("L2_BRIDGE_ARTIFACT", "L2ERC20TokenGateway.json"),
        l2_token=load("L2_TOKEN_ARTIFACT", "ERC20Bridged.json"),
        proxy=load("PROXY_ARTIFACT", "OssifiableProxy.json"),
    )


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    family = get_family()
    config = load_multichain_deployment_config()

    l1_web3 = create_web3("JSON_RPC_L1")
    l2_web3 = create_web3("JSON_RPC_L2")
    l1_wallet, l2_wallet = create_hot_wallets(l1_web3, l2_web3)

    token_params = fetch_l2_token_parameters(
        l1_web3,
        config.token,
        name=os.environ.get("L2_TOKEN_NAME") or None,
        symbol=os.environ.get("L2_TOKEN_SYMBOL") or None,
    )

    print(f"Deploying {family} bridge for token {config.token}")
    print(f"Deployer: {l1_wallet.address}")
    print(f"L2 token: {token_params.name} ({token_params.symbol}), {token_params.decimals} decimals")

    plans = create_bridge_deploy_plans(
        l1_web3,
        l2_web3,
        load_artifacts(),
        l1_token=config.token,
        token_params=token_params,
        l1_deployer=l1_wallet.address,
        l2_deployer=l2_wallet.address,
        l1_dependencies=parse_address_list("L1_DEPENDENCIES", os.environ.get("L1_DEPENDENCIES")),
        l2_dependencies=parse_address_list("L2_DEPENDENCIES", os.environ.get("L2_DEPENDENCIES")),
        l1_proxy_admin=config.l1.proxy_admin,
        l2_proxy_admin=config.l2.proxy_admin,
        l1_hot_wallet=l1_wallet,
        l2_hot_wallet=l2_wallet,
    )

    print(plans.l1.describe())
    print(plans.l2.describe())

    if not confirm("Deploy"):
        print("Aborted")
        return

    l1_block = l1_web3.eth.block_number
    l2_block = l2_web3.eth.block_number
    l1_addresses, l2_addresses = deploy_bridge_pair(plans, progress=True)

    print("Applying bridge configuration")
    l1_applied, l2_applied = setup_bridges(
        l1_web3,
        l2_web3,
        l1_bridge=l1_addresses[1],
        l2_bridge=l2_addresses[3],
        config=config,
        l1_sender=l1_wallet.address,
        l2_sender=l2_wallet.address,
        l1_hot_wallet=l1_wallet,
        l2_hot_wallet=l2_wallet,
        l1_deployment_block=l1_block,
        l2_deployment_block=l2_block,
    )

    rows = [
        ["L1", plans.l1.steps[0].get_label(), l1_addresses[0]],
        ["L1", plans.l1.steps[1].get_label(), l1_addresses[1]],
    ]
    rows += [["L2", step.get_label(), address] for step, address in zip(plans.l2.steps, l2_addresses)]
    print(tabulate(rows, headers=["Chain", "Contract", "Address"], tablefmt="simple"))

    ops = [["L1", op.description, op.tx_hash.hex()] for op in l1_applied]
    ops += [["L2", op.description, op.tx_hash.hex()] for op in l2_applied]
    print(tabulate(ops, headers=["Chain", "Operation", "Transaction"], tablefmt="simple"))
    print("All ok")


if __name__ == "__main__":
    main()
