"""Shared helpers for the bridge operator scripts.

.. note::
    Scripts import this module as ``from script_utils import ...``.
    The script directory is first on the module path when run as
    ``python scripts/bridge/deploy-bridge.py``.
"""

import os

from web3 import Web3

from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.messaging.base import CrossChainMessenger
from eth_l2_bridge.messaging.relay import MessageDirection, RelayMessenger
from eth_l2_bridge.messaging.retryable import RetryableTicketMessenger
from eth_l2_bridge.utils import get_url_domain

#: L2 families and their messenger type
SUPPORTED_FAMILIES = ("arbitrum", "optimism", "lisk", "mantle")


def create_web3(env_var: str) -> Web3:
    """Connect to the JSON-RPC URL in an environment variable."""
    url = os.environ.get(env_var)
    assert url, f"{env_var} environment variable required"
    web3 = Web3(Web3.HTTPProvider(url))
    print(f"{env_var}: {get_url_domain(url)}, chain {web3.eth.chain_id}, block {web3.eth.block_number:,}")
    return web3


def create_hot_wallets(l1_web3: Web3, l2_web3: Web3) -> tuple[HotWallet, HotWallet]:
    """Create one hot wallet per chain from ``PRIVATE_KEY``."""
    private_key = os.environ.get("PRIVATE_KEY")
    assert private_key, "PRIVATE_KEY environment variable required"
    l1_wallet = HotWallet.from_private_key(private_key)
    l2_wallet = HotWallet.from_private_key(private_key)
    l1_wallet.sync_nonce(l1_web3)
    l2_wallet.sync_nonce(l2_web3)
    return l1_wallet, l2_wallet


def get_family() -> str:
    family = os.environ.get("FAMILY", "arbitrum").lower()
    assert family in SUPPORTED_FAMILIES, f"FAMILY must be one of {SUPPORTED_FAMILIES}, got {family}"
    return family


def create_messenger(
    family: str,
    l1_web3: Web3,
    l2_web3: Web3,
    l1_wallet: HotWallet | None = None,
    l2_wallet: HotWallet | None = None,
    direction: MessageDirection = MessageDirection.l1_to_l2,
) -> CrossChainMessenger:
    """Create the messenger for an L2 family from environment variables.

    - Arbitrum: ``ARBITRUM_INBOX``
    - OP stack: ``L1_CROSS_DOMAIN_MESSENGER``, and for withdrawals
      ``OPTIMISM_PORTAL`` and ``L2_OUTPUT_ORACLE``
    """
    if family == "arbitrum":
        inbox = os.environ.get("ARBITRUM_INBOX")
        assert inbox, "ARBITRUM_INBOX environment variable required"
        return RetryableTicketMessenger(
            l1_web3,
            l2_web3,
            inbox,
            l2_sender=l2_wallet.address if l2_wallet else None,
            l2_hot_wallet=l2_wallet,
        )

    messenger = os.environ.get("L1_CROSS_DOMAIN_MESSENGER")
    assert messenger, "L1_CROSS_DOMAIN_MESSENGER environment variable required"
    return RelayMessenger(
        l1_web3,
        l2_web3,
        messenger,
        direction=direction,
        portal_address=os.environ.get("OPTIMISM_PORTAL"),
        l2_output_oracle_address=os.environ.get("L2_OUTPUT_ORACLE"),
        l1_sender=l1_wallet.address if l1_wallet else None,
        l1_hot_wallet=l1_wallet,
    )


def confirm(prompt: str = "Proceed") -> bool:
    """Ask the operator, unless ``SKIP_PROMPT`` is set."""
    if os.environ.get("SKIP_PROMPT", "").lower() in ("true", "1", "yes"):
        return True
    answer = input(f"{prompt} [y/n]? ")
    return answer.strip().lower() in ("y", "yes")
