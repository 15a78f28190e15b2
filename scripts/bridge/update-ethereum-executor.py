"""Point the L2 governance executor to a new L1 governance executor.

Queues ``updateEthereumGovernanceExecutor(address)`` on the L2 bridge executor
with a cross-chain message, waits for it to arrive, waits for the executor
delay and executes the actions set.

The L1 transaction is sent directly from ``PRIVATE_KEY``, so the key must belong
to the current L1 governance executor. On mainnet, the L1 transaction goes through
a governance vote instead. This script is for testnets and forks.

Environment variables
---------------------

``FAMILY``
    ``arbitrum`` (default), ``optimism``, ``lisk`` or ``mantle``.

``JSON_RPC_L1``, ``JSON_RPC_L2``
    RPC URLs.

``PRIVATE_KEY``
    Current L1 governance executor. Also executes the actions set on L2.

``L2_EXECUTOR``
    L2 bridge executor address.

``NEW_ETHEREUM_EXECUTOR``
    The new L1 governance executor.

``ARBITRUM_INBOX``
    Arbitrum only.

``L1_CROSS_DOMAIN_MESSENGER``
    OP stack only.

Usage:

.. code-block:: shell

    FAMILY=optimism \\
    JSON_RPC_L1=... \\
    JSON_RPC_L2=... \\
    PRIVATE_KEY=0x... \\
    L2_EXECUTOR=0x... \\
    NEW_ETHEREUM_EXECUTOR=0x... \\
    L1_CROSS_DOMAIN_MESSENGER=0x58Cc85b8D04EA49cC6DBd3CbFFd00B4B8D6cb3ef \\
    python scripts/bridge/update-ethereum-executor.py
"""

import logging
import os

from tabulate import tabulate

from eth_l2_bridge.config import parse_address
from eth_l2_bridge.orchestrator import DirectTransactionSubmitter, push_governed_action
from eth_l2_bridge.timelock import TimelockCall, TimelockExecutor
from eth_l2_bridge.utils import setup_console_logging
from script_utils import confirm, create_hot_wallets, create_messenger, create_web3, get_family

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    family = get_family()
    executor_address = parse_address("L2_EXECUTOR", os.environ.get("L2_EXECUTOR"))
    new_executor = parse_address("NEW_ETHEREUM_EXECUTOR", os.environ.get("NEW_ETHEREUM_EXECUTOR"))

    l1_web3 = create_web3("JSON_RPC_L1")
    l2_web3 = create_web3("JSON_RPC_L2")
    l1_wallet, l2_wallet = create_hot_wallets(l1_web3, l2_web3)

    timelock = TimelockExecutor(l2_web3, executor_address, sender=l2_wallet.address, hot_wallet=l2_wallet)
    current = timelock.contract.functions.getEthereumGovernanceExecutor().call()

    print(f"L2 executor: {executor_address}")
    print(f"Current L1 governance executor: {current}")
    print(f"New L1 governance executor: {new_executor}")
    print(f"Executor delay: {timelock.fetch_delay()}s, grace period: {timelock.fetch_grace_period()}s")

    if current == new_executor:
        print("Already up to date")
        return

    if not confirm("Update"):
        print("Aborted")
        return

    messenger = create_messenger(family, l1_web3, l2_web3, l1_wallet, l2_wallet)
    submitter = DirectTransactionSubmitter(l1_web3, l1_wallet.address, hot_wallet=l1_wallet)

    result = push_governed_action(
        messenger,
        submitter,
        timelock,
        [TimelockCall.from_signature(executor_address, "updateEthereumGovernanceExecutor(address)", ["address"], [new_executor])],
        sender=l1_wallet.address,
    )

    rows = [
        ["L1 message transaction", result.source_tx_hash.hex()],
        ["Delivery status", result.delivery.status.value],
        ["Actions set", result.action_id],
        ["Execute transaction", result.execute_tx_hash.hex() if result.execute_tx_hash else "-"],
        ["L1 governance executor now", timelock.contract.functions.getEthereumGovernanceExecutor().call()],
    ]
    print(tabulate(rows, tablefmt="simple"))


if __name__ == "__main__":
    main()
