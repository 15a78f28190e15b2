"""Transaction sending and receipt checking helpers."""

import logging

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractConstructor, ContractFunction
from web3.types import TxReceipt

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.hotwallet import HotWallet

logger = logging.getLogger(__name__)


#: How long we wait for a transaction to be included before giving up
DEFAULT_RECEIPT_TIMEOUT = 300


class TransactionAssertionError(BridgeOpsError):
    """A transaction we sent was included but reverted."""

    def __init__(self, message: str, tx_hash: HexBytes, receipt: TxReceipt):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.receipt = receipt


def send_contract_call(
    web3: Web3,
    func: ContractFunction | ContractConstructor,
    sender: HexAddress,
    hot_wallet: HotWallet | None = None,
    gas: int | None = None,
    value: int = 0,
) -> HexBytes:
    """Send a contract function call, either via HotWallet signing or unlocked account.

    :param sender:
        Account sending the transaction. Must match ``hot_wallet.address`` if given.

    :param hot_wallet:
        When provided, signs and broadcasts via ``eth_sendRawTransaction``.
        When ``None``, uses ``eth_sendTransaction`` (requires unlocked account, e.g. Anvil).

    :param gas:
        Gas limit. Estimated by the node when not given.

    :param value:
        ETH value attached to the call, in wei.

    :return:
        Transaction hash
    """
    tx_params = {"value": value}
    if gas is not None:
        tx_params["gas"] = gas

    if hot_wallet is not None:
        assert hot_wallet.address == sender, f"Hot wallet {hot_wallet.address} does not match sender {sender}"
        signed_tx = hot_wallet.sign_bound_call_with_new_nonce(func, tx_params=tx_params, web3=web3)
        return web3.eth.send_raw_transaction(signed_tx.raw_transaction)
    else:
        tx_params["from"] = sender
        return func.transact(tx_params)


def assert_transaction_success(
    web3: Web3,
    tx_hash: HexBytes,
    description: str = "",
    timeout: float = DEFAULT_RECEIPT_TIMEOUT,
) -> TxReceipt:
    """Wait for a transaction to be included and check it did not revert.

    :param description:
        What the transaction did, for the error message

    :return:
        Transaction receipt

    :raises TransactionAssertionError:
        The transaction reverted
    """
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    if receipt["status"] != 1:
        raise TransactionAssertionError(
            f"Transaction {HexBytes(tx_hash).hex()} reverted: {description or 'no description'}, block {receipt.get('blockNumber')}",
            tx_hash=tx_hash,
            receipt=receipt,
        )
    logger.debug("Transaction %s ok: %s, gas used %s", HexBytes(tx_hash).hex(), description, receipt.get("gasUsed"))
    return receipt
