"""Grant a bridge role to an account and list the role holders.

Environment variables
---------------------

``JSON_RPC_URL``
    RPC URL of the chain the bridge is on.

``PRIVATE_KEY``
    Bridge admin.

``MANAGER``
    Bridge proxy address.

``ROLE``
    ``DEPOSITS_ENABLER_ROLE``, ``DEPOSITS_DISABLER_ROLE``,
    ``WITHDRAWALS_ENABLER_ROLE`` or ``WITHDRAWALS_DISABLER_ROLE``.

``ACCOUNT``
    Account receiving the role.

``DEPLOYMENT_BLOCK``
    First block to scan for role events. Default ``0``.

Usage:

.. code-block:: shell

    JSON_RPC_URL=... PRIVATE_KEY=0x... MANAGER=0x... ROLE=DEPOSITS_DISABLER_ROLE ACCOUNT=0x... \\
        python scripts/bridge/grant-role.py
"""

import logging
import os

from tabulate import tabulate

from eth_l2_bridge.abi import get_deployed_contract
from eth_l2_bridge.bridging_manager import OPERATIONAL_ROLES, BridgingManagement
from eth_l2_bridge.config import parse_address
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.roles import BridgeRole
from eth_l2_bridge.utils import setup_console_logging
from script_utils import confirm, create_web3

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    role = BridgeRole(os.environ.get("ROLE", ""))
    assert role in OPERATIONAL_ROLES, f"ROLE must be one of {[r.value for r in OPERATIONAL_ROLES]}"
    manager = parse_address("MANAGER", os.environ.get("MANAGER"))
    account = parse_address("ACCOUNT", os.environ.get("ACCOUNT"))
    deployment_block = int(os.environ.get("DEPLOYMENT_BLOCK", "0"))

    web3 = create_web3("JSON_RPC_URL")
    private_key = os.environ.get("PRIVATE_KEY")
    assert private_key, "PRIVATE_KEY environment variable required"
    hot_wallet = HotWallet.from_private_key(private_key)
    hot_wallet.sync_nonce(web3)

    management = BridgingManagement(
        get_deployed_contract(web3, "BridgingManager.json", manager),
        hot_wallet.address,
        hot_wallet=hot_wallet,
        deployment_block=deployment_block,
    )

    print(f"Grant {role.value} on {manager} to {account}")
    if not confirm():
        print("Aborted")
        return

    if management.grant_role(role, account):
        print("Role granted")
    else:
        print("Account already holds the role")

    rows = [[r.value, "\n".join(sorted(management.get_role_holders(r))) or "-"] for r in BridgeRole]
    print(tabulate(rows, headers=["Role", "Holders"], tablefmt="fancy_grid"))


if __name__ == "__main__":
    main()
