"""ABI loading and calldata encoding helpers.

- Contract ABIs for the bridge, governance executor and L2 messaging
  system contracts are shipped as JSON files in ``eth_l2_bridge/abi``
- Compiled bridge and token artifacts are produced by Hardhat or Foundry
  and loaded with :py:func:`load_contract_artifact`
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Sequence, Type

from eth_abi import encode
from eth_typing import HexAddress
from eth_utils import function_signature_to_4byte_selector
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract

logger = logging.getLogger(__name__)


#: Where our bundled ABI files live
ABI_PATH = Path(__file__).parent / "abi"


@lru_cache(maxsize=32)
def get_abi_by_filename(fname: str) -> list[dict]:
    """Read a bundled ABI file.

    :param fname:
        File name like ``BridgingManager.json``. Absolute paths are also accepted.

    :return:
        ABI as a list of entries
    """
    path = Path(fname)
    if not path.is_absolute():
        path = ABI_PATH / fname

    with open(path, "rt") as f:
        data = json.load(f)

    # Hardhat and Foundry artifacts wrap the ABI
    if isinstance(data, dict):
        return data["abi"]
    return data


def get_contract(web3: Web3, fname: str, bytecode: str | bytes | None = None) -> Type[Contract]:
    """Get a contract proxy class by its ABI file name.

    :param bytecode:
        Creation bytecode when the class is used to deploy new instances
    """
    abi = get_abi_by_filename(fname)
    if bytecode:
        return web3.eth.contract(abi=abi, bytecode=bytecode)
    return web3.eth.contract(abi=abi)


def get_deployed_contract(web3: Web3, fname: str, address: HexAddress | str) -> Contract:
    """Get a contract instance bound to an on-chain address.

    Example:

    .. code-block:: python

        bridge = get_deployed_contract(web3, "BridgingManager.json", "0x...")
        print(bridge.functions.isDepositsEnabled().call())

    :param fname:
        Bundled ABI file name

    :param address:
        Deployed contract address
    """
    assert address, f"Empty address for {fname}"
    contract_class = get_contract(web3, fname)
    return contract_class(address=Web3.to_checksum_address(address))


def encode_function_args(types: Sequence[str], args: Sequence[Any]) -> bytes:
    """ABI-encode function arguments without the selector.

    Timelock executors take the function signature and the argument
    blob separately, so this is what goes into their ``calldatas`` array.
    """
    assert len(types) == len(args), f"Types {types} do not match args {args}"
    return encode(list(types), list(args))


def encode_function_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> HexBytes:
    """Encode full calldata for a function call.

    :param signature:
        Solidity function signature like ``enableDeposits()``
        or ``updateEthereumGovernanceExecutor(address)``

    :param types:
        Argument ABI types, matching the signature

    :param args:
        Argument values

    :return:
        4-byte selector followed by the encoded arguments
    """
    selector = function_signature_to_4byte_selector(signature)
    return HexBytes(selector + encode_function_args(types, args))


def get_constructor_argument_names(abi: list[dict]) -> list[str]:
    """List constructor argument names of a contract, in order."""
    for entry in abi:
        if entry.get("type") == "constructor":
            return [i.get("name") or f"arg{idx}" for idx, i in enumerate(entry.get("inputs", []))]
    return []


def load_contract_artifact(path: str | Path) -> dict:
    """Read a Hardhat or Foundry compilation artifact.

    :return:
        Dict with ``contractName``, ``abi`` and ``bytecode`` keys
    """
    path = Path(path)
    with open(path, "rt") as f:
        data = json.load(f)

    bytecode = data.get("bytecode")
    # Foundry format: {"bytecode": {"object": "0x..."}}
    if isinstance(bytecode, dict):
        bytecode = bytecode["object"]

    assert bytecode and bytecode != "0x", f"No bytecode in {path}"

    return {
        "contractName": data.get("contractName", path.stem),
        "abi": data["abi"],
        "bytecode": bytecode,
    }
