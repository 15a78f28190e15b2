"""Predict addresses of contracts an account has not deployed yet.

A contract deployed with a plain ``CREATE`` transaction gets the address
``keccak256(rlp([sender, nonce]))[12:]``. Knowing the deployer's next nonces
we can therefore compute the addresses of the next N deployments before
sending anything. This is how the L1 and L2 halves of a bridge can reference
each other in their constructors.

.. warning::

    A prediction is only valid until the deployer sends any other transaction
    on the same chain. The deployer account must not be used by anyone else
    between prediction and deployment. Nonces are chain-local,
    so predictions must be made separately for each chain.

Example:

.. code-block:: python

    from eth_l2_bridge.address import fetch_predicted_addresses

    predicted = fetch_predicted_addresses(web3_l2, deployer.address, count=4)
    token_impl, token_proxy, gateway_impl, gateway_proxy = predicted.addresses
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

import rlp
from eth_typing import HexAddress
from eth_utils import keccak, to_bytes, to_checksum_address
from web3 import Web3

logger = logging.getLogger(__name__)


def get_contract_address(sender: HexAddress | str, nonce: int) -> HexAddress:
    """Compute the address of a contract created with ``CREATE``.

    :param sender:
        Deployer address

    :param nonce:
        Deployer nonce used for the deployment transaction

    :return:
        Checksummed contract address
    """
    assert nonce >= 0, f"Bad nonce {nonce}"
    sender_bytes = to_bytes(hexstr=sender)
    assert len(sender_bytes) == 20, f"Bad address {sender}"
    encoded = rlp.encode([sender_bytes, nonce])
    return to_checksum_address(keccak(encoded)[12:])


def predict_addresses(deployer: HexAddress | str, current_nonce: int, count: int) -> list[HexAddress]:
    """Predict the next ``count`` contract addresses of a deployer.

    Pure function, does not touch the chain.

    :param deployer:
        Deployer address

    :param current_nonce:
        The nonce the next transaction of the deployer will use

    :param count:
        How many addresses to derive

    :return:
        Addresses for nonces ``current_nonce``, ``current_nonce + 1``, ...
    """
    assert count >= 0
    return [get_contract_address(deployer, current_nonce + i) for i in range(count)]


@dataclass(slots=True, frozen=True)
class PredictedAddressSet:
    """Contract addresses predicted for a deployer on one chain."""

    #: Deployer account
    deployer: HexAddress

    #: Chain where the nonce was read
    chain_id: int

    #: Nonce the first predicted deployment must use
    starting_nonce: int

    #: Predicted addresses in deployment order
    addresses: tuple[HexAddress, ...]

    def __len__(self):
        return len(self.addresses)

    def __getitem__(self, idx: int) -> HexAddress:
        return self.addresses[idx]

    def is_still_valid(self, web3: Web3) -> bool:
        """Has the deployer sent any transactions since the prediction.

        Only meaningful before the first planned deployment is sent.
        """
        assert web3.eth.chain_id == self.chain_id, f"Prediction made for chain {self.chain_id}, got {web3.eth.chain_id}"
        return web3.eth.get_transaction_count(self.deployer, "pending") == self.starting_nonce


def fetch_predicted_addresses(web3: Web3, deployer: HexAddress | str, count: int) -> PredictedAddressSet:
    """Read the pending nonce of a deployer and predict its next contract addresses.

    :param web3:
        Chain connection

    :param deployer:
        Deployer address

    :param count:
        How many addresses to predict

    :return:
        Predicted addresses with the nonce and chain they were derived from
    """
    deployer = to_checksum_address(deployer)
    chain_id = web3.eth.chain_id
    nonce = web3.eth.get_transaction_count(deployer, "pending")
    addresses = predict_addresses(deployer, nonce, count)
    logger.info(
        "Predicted %d addresses for deployer %s on chain %d starting at nonce %d: %s",
        count,
        deployer,
        chain_id,
        nonce,
        ", ".join(addresses),
    )
    return PredictedAddressSet(
        deployer=deployer,
        chain_id=chain_id,
        starting_nonce=nonce,
        addresses=tuple(addresses),
    )


def fetch_predicted_addresses_multichain(
    requests: list[tuple[Web3, HexAddress | str, int]],
    max_workers: int | None = None,
) -> list[PredictedAddressSet]:
    """Predict deployment addresses on several chains concurrently.

    Each chain has its own nonce sequence, so every request is independent.

    :param requests:
        List of ``(web3, deployer, count)`` tuples

    :param max_workers:
        Thread pool size. Defaults to one thread per chain.

    :return:
        Predictions in the same order as ``requests``
    """
    if not requests:
        return []

    if max_workers is None:
        max_workers = len(requests)

    results: dict[int, PredictedAddressSet] = {}
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="predict") as executor:
        futures = {}
        for idx, (web3, deployer, count) in enumerate(requests):
            futures[executor.submit(fetch_predicted_addresses, web3, deployer, count)] = idx

        for future in as_completed(futures):
            results[futures[future]] = future.result()

    return [results[i] for i in range(len(requests))]
