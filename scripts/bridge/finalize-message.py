"""Follow a cross-chain message and finalise it if it needs a manual follow-up.

- Arbitrum: redeems a retryable ticket that was not auto-redeemed
- OP stack withdrawals: proves the withdrawal, and after the challenge
  window finalises it on L1

Run the script again after the challenge window to finalise a proven withdrawal.

Environment variables
---------------------

``FAMILY``
    ``arbitrum`` (default), ``optimism``, ``lisk`` or ``mantle``.

``TX_HASH``
    Transaction that sent the message.

``DIRECTION``
    ``l1_to_l2`` (default) or ``l2_to_l1``. Arbitrum supports only ``l1_to_l2``.

``JSON_RPC_L1``, ``JSON_RPC_L2``
    RPC URLs.

``PRIVATE_KEY``
    Account sending the follow-up transactions.

``TIMEOUT``
    How many seconds to wait. Default ``600``.

``ARBITRUM_INBOX``, ``L1_CROSS_DOMAIN_MESSENGER``, ``OPTIMISM_PORTAL``, ``L2_OUTPUT_ORACLE``
    Messaging contracts on L1.

Usage:

.. code-block:: shell

    FAMILY=arbitrum TX_HASH=0x... JSON_RPC_L1=... JSON_RPC_L2=... PRIVATE_KEY=0x... ARBITRUM_INBOX=0x... \\
        python scripts/bridge/finalize-message.py
"""

import logging
import os

from tabulate import tabulate

from eth_l2_bridge.messaging.relay import MessageDirection
from eth_l2_bridge.utils import setup_console_logging
from script_utils import create_hot_wallets, create_messenger, create_web3, get_family

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    family = get_family()
    tx_hash = os.environ.get("TX_HASH")
    assert tx_hash, "TX_HASH environment variable required"
    direction = MessageDirection(os.environ.get("DIRECTION", "l1_to_l2"))
    assert not (family == "arbitrum" and direction == MessageDirection.l2_to_l1), "Arbitrum L2 -> L1 messages are not supported"
    timeout = float(os.environ.get("TIMEOUT", "600"))

    l1_web3 = create_web3("JSON_RPC_L1")
    l2_web3 = create_web3("JSON_RPC_L2")
    l1_wallet, l2_wallet = create_hot_wallets(l1_web3, l2_web3)

    messenger = create_messenger(family, l1_web3, l2_web3, l1_wallet, l2_wallet, direction=direction)
    report = messenger.wait_for_delivery(tx_hash, timeout)

    rows = [
        ["Source transaction", report.source_tx_hash.hex()],
        ["Message id", report.message_id.hex() if report.message_id else "-"],
        ["Status", report.status.value],
        ["Timed out", report.timed_out],
        ["Destination transaction", report.destination_tx_hash.hex() if report.destination_tx_hash else "-"],
        ["Our transactions", ", ".join(h.hex() for h in report.follow_up_tx_hashes) or "-"],
        ["Error", str(report.error) if report.error else "-"],
    ]
    print(tabulate(rows, tablefmt="simple"))


if __name__ == "__main__":
    main()
