"""Local private key transaction signer with nonce tracking.

Deployment scripts send dozens of transactions in a row from one account.
:py:class:`HotWallet` keeps the nonce locally, so that we do not need to wait
for the node to update the pending transaction count between transactions.

Example:

.. code-block:: python

    hot_wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
    hot_wallet.sync_nonce(web3)

    bound_func = bridge.functions.enableDeposits()
    tx_hash = hot_wallet.transact_and_broadcast_with_contract(bound_func)
"""

import logging
import threading

from eth_account import Account
from eth_account.datastructures import SignedTransaction
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractConstructor, ContractFunction

logger = logging.getLogger(__name__)


class HotWallet:
    """Send transactions from a private key held in memory.

    - Nonce is tracked locally after :py:meth:`sync_nonce`
    - One instance per chain: nonces are chain-local
    """

    def __init__(self, account: LocalAccount):
        assert isinstance(account, LocalAccount), f"Expected LocalAccount, got {type(account)}"
        self.account = account
        self.current_nonce: int | None = None
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<HotWallet {self.address} nonce:{self.current_nonce}>"

    @property
    def address(self) -> HexAddress:
        return self.account.address

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a ``0x`` prefixed hex private key."""
        assert key.startswith("0x"), "Private key must be 0x prefixed"
        return HotWallet(Account.from_key(key))

    def sync_nonce(self, web3: Web3):
        """Read the next nonce from the chain."""
        self.current_nonce = web3.eth.get_transaction_count(self.address, "pending")
        logger.info("Synced nonce for %s to %d", self.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free nonce and move the counter forward."""
        with self._lock:
            assert self.current_nonce is not None, "Call sync_nonce() first"
            nonce = self.current_nonce
            self.current_nonce += 1
            return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransaction:
        """Sign a fully built transaction dict, filling in the nonce."""
        assert "nonce" not in tx, f"Transaction already has a nonce: {tx}"
        tx = tx.copy()
        tx["nonce"] = self.allocate_nonce()
        tx.pop("from", None)
        return self.account.sign_transaction(tx)

    def sign_bound_call_with_new_nonce(
        self,
        func: ContractFunction | ContractConstructor,
        tx_params: dict | None = None,
        web3: Web3 | None = None,
    ) -> SignedTransaction:
        """Build and sign a contract call or a contract deployment.

        Gas price fields are filled in by web3 from the node,
        ``gas`` is estimated unless given in ``tx_params``.

        The nonce is allocated only after the transaction is built,
        so a reverting gas estimation does not leave a nonce gap.

        :param func:
            Bound contract function or constructor

        :param tx_params:
            Extra transaction fields, like ``gas`` and ``value``

        :param web3:
            Chain connection. Taken from the bound function when not given.
        """
        tx_params = dict(tx_params or {})
        web3 = web3 or func.w3
        tx_params["from"] = self.address
        if "chainId" not in tx_params:
            tx_params["chainId"] = web3.eth.chain_id
        assert "nonce" not in tx_params, f"Transaction already has a nonce: {tx_params}"
        tx = func.build_transaction(tx_params)
        tx.pop("from", None)
        tx["nonce"] = self.allocate_nonce()
        return self.account.sign_transaction(tx)

    def transact_and_broadcast_with_contract(
        self,
        func: ContractFunction | ContractConstructor,
        gas_limit: int | None = None,
        value: int = 0,
    ) -> HexBytes:
        """Sign and broadcast a contract call.

        :return:
            Transaction hash
        """
        tx_params = {"value": value}
        if gas_limit is not None:
            tx_params["gas"] = gas_limit
        signed = self.sign_bound_call_with_new_nonce(func, tx_params)
        return func.w3.eth.send_raw_transaction(signed.raw_transaction)
