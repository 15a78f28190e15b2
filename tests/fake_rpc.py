"""Scripted JSON-RPC node for code that reads the chain through a real :py:class:`web3.Web3`.

Contract reads, receipts, blocks and logs are served from tables the test fills in.
Answers pass through web3's own response formatting, so event decoding,
``null`` receipts and ``eth_call`` reverts behave like against a real node.

Example:

.. code-block:: python

    provider = FakeRPCProvider(chain_id=42161)
    provider.mock_call(INBOX, "bridge()", ["address"], [BRIDGE])
    provider.add_receipt(TX_HASH, logs=[encode_event_log(inbox, "InboxMessageDelivered", {...})])
    web3 = Web3(provider)
"""

import itertools
from typing import Any, Sequence

from eth_abi import encode
from eth_utils import event_abi_to_log_topic, function_signature_to_4byte_selector
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.providers import BaseProvider

#: Block hash in all fake blocks, receipts and logs
FAKE_BLOCK_HASH = "0x" + "ab" * 32

#: JSON-RPC error code for unknown methods
METHOD_NOT_FOUND = -32601


def to_hex(value: bytes | str) -> str:
    return "0x" + bytes(HexBytes(value)).hex()


def encode_event_log(contract: Contract, event_name: str, args: dict, address: str | None = None) -> dict:
    """Raw JSON-RPC log entry for an event in a contract ABI.

    :param address:
        Emitting contract. Defaults to the contract address.
    """
    event_abi = next(e for e in contract.abi if e["type"] == "event" and e["name"] == event_name)
    topics = [to_hex(event_abi_to_log_topic(event_abi))]
    data_types = []
    data_values = []
    for arg in event_abi["inputs"]:
        if arg["indexed"]:
            topics.append(to_hex(encode([arg["type"]], [args[arg["name"]]])))
        else:
            data_types.append(arg["type"])
            data_values.append(args[arg["name"]])

    return {
        "address": address or contract.address,
        "topics": topics,
        "data": to_hex(encode(data_types, data_values)),
        "transactionIndex": "0x0",
        "blockHash": FAKE_BLOCK_HASH,
        "removed": False,
    }


class FakeRPCProvider(BaseProvider):
    """A node whose state is a few lookup tables.

    - ``eth_call`` answers are keyed by contract address and function selector
    - Unknown transactions have a ``null`` receipt, like unmined ones
    - ``eth_getLogs`` filters the logs of all added receipts by address and topics
    """

    def __init__(self, chain_id: int = 1, block_number: int = 100, timestamp: int = 1_700_000_000):
        super().__init__()
        self.chain_id = chain_id
        self.block_number = block_number
        self.timestamp = timestamp
        self.calls: dict[tuple[str, bytes], dict] = {}
        self.receipts: dict[str, dict] = {}
        self.logs: list[dict] = []

        #: Method names in the order they were requested
        self.requests: list[str] = []

        self._request_ids = itertools.count()

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    def _get_call_key(self, address: str, signature: str) -> tuple[str, bytes]:
        return Web3.to_checksum_address(address), bytes(function_signature_to_4byte_selector(signature))

    def mock_call(self, address: str, signature: str, output_types: Sequence[str], output_values: Sequence[Any]):
        """Answer a view function call, whatever its arguments."""
        self.calls[self._get_call_key(address, signature)] = {"result": to_hex(encode(list(output_types), list(output_values)))}

    def mock_revert(self, address: str, signature: str):
        """Make a view function call revert."""
        self.calls[self._get_call_key(address, signature)] = {"error": {"code": 3, "message": "execution reverted", "data": None}}

    def add_receipt(self, tx_hash: bytes | str, status: int = 1, logs: Sequence[dict] = (), block_number: int | None = None):
        """Mine a transaction with the given logs."""
        tx_hash = to_hex(tx_hash)
        block_number = block_number or self.block_number
        raw_logs = [dict(log, transactionHash=tx_hash, blockNumber=hex(block_number), logIndex=hex(idx)) for idx, log in enumerate(logs)]
        self.logs.extend(raw_logs)
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "transactionIndex": "0x0",
            "blockHash": FAKE_BLOCK_HASH,
            "blockNumber": hex(block_number),
            "from": "0x" + "00" * 20,
            "to": None,
            "cumulativeGasUsed": "0x5208",
            "gasUsed": "0x5208",
            "effectiveGasPrice": "0x3b9aca00",
            "contractAddress": None,
            "logs": raw_logs,
            "logsBloom": "0x" + "00" * 256,
            "status": hex(status),
            "type": "0x2",
        }

    def get_block(self, number: int) -> dict:
        return {
            "number": hex(number),
            "hash": FAKE_BLOCK_HASH,
            "parentHash": FAKE_BLOCK_HASH,
            "timestamp": hex(self.timestamp),
            "baseFeePerGas": hex(10**9),
            "stateRoot": "0x" + "cd" * 32,
            "extraData": "0x",
            "transactions": [],
        }

    def filter_logs(self, filter_params: dict) -> list[dict]:
        addresses = filter_params.get("address") or []
        if isinstance(addresses, str):
            addresses = [addresses]
        addresses = {a.lower() for a in addresses}

        def topic_matches(wanted, topic: str) -> bool:
            if wanted is None:
                return True
            if isinstance(wanted, (list, tuple)):
                return topic.lower() in {w.lower() for w in wanted}
            return topic.lower() == wanted.lower()

        matched = []
        for log in self.logs:
            if addresses and log["address"].lower() not in addresses:
                continue
            wanted_topics = filter_params.get("topics") or []
            if len(wanted_topics) > len(log["topics"]):
                continue
            if all(topic_matches(w, t) for w, t in zip(wanted_topics, log["topics"])):
                matched.append(log)
        return matched

    def make_request(self, method, params) -> dict:
        self.requests.append(method)
        response = {"jsonrpc": "2.0", "id": next(self._request_ids)}

        match method:
            case "eth_chainId":
                response["result"] = hex(self.chain_id)
            case "eth_blockNumber":
                response["result"] = hex(self.block_number)
            case "eth_getBlockByNumber":
                number = params[0]
                response["result"] = self.get_block(self.block_number if number == "latest" else int(number, 16))
            case "eth_getTransactionReceipt":
                response["result"] = self.receipts.get(to_hex(params[0]))
            case "eth_getLogs":
                response["result"] = self.filter_logs(params[0])
            case "eth_call":
                tx = params[0]
                data = HexBytes(tx.get("data") or tx.get("input"))
                answer = self.calls.get((Web3.to_checksum_address(tx["to"]), bytes(data[:4])))
                assert answer is not None, f"No mocked call for {tx['to']} selector {data[:4].hex()}"
                response.update(answer)
            case _:
                response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method {method} not mocked"}

        return response
