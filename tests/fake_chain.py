"""In-memory chain doubles for tests.

Just enough of the ``web3.eth`` surface for :py:class:`eth_l2_bridge.deployment.DeploymentPlan`
and :py:class:`eth_l2_bridge.bridging_manager.BridgingManagement`:

- Account nonces, incremented by every sent transaction
- Contract addresses derived from the sender and nonce like ``CREATE`` does
- Receipts with ``status`` 0 for reverted transactions
- A ``BridgingManager`` double enforcing OpenZeppelin ``AccessControl`` rules
  and keeping its ``RoleGranted`` / ``RoleRevoked`` event history for ``get_logs``

Transactions are sent from unlocked accounts: tests pass no hot wallet.
"""

import threading
from collections import defaultdict
from typing import Any, Callable

from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_l2_bridge.address import get_contract_address
from eth_l2_bridge.roles import DEFAULT_ADMIN_ROLE_ID, BridgeRole, get_role_id

#: Deploying this bytecode reverts
REVERTING_BYTECODE = "0xfe"


class FakeRevert(Exception):
    """Raised by fake contract code to revert the transaction."""


class FakeChain:
    """A single chain with instant block production.

    Each transaction is mined in its own block.
    """

    def __init__(self, chain_id: int = 1, timestamp: int = 1_700_000_000):
        self.chain_id = chain_id
        self.block_number = 0
        self.timestamp = timestamp
        self.nonces: dict[str, int] = defaultdict(int)
        self.receipts: dict[HexBytes, dict] = {}
        self.contracts: dict[str, Any] = {}
        self.logs: list[dict] = []
        self.sent: list[dict] = []
        self.lock = threading.RLock()
        self.web3 = FakeWeb3(self)

    def send_transaction(self, sender: str, execute: Callable[[int], dict | None] | None = None) -> HexBytes:
        """Mine a transaction.

        :param execute:
            Called with the sender nonce. Returns extra receipt fields.
            Raises :py:class:`FakeRevert` to revert.
        """
        sender = Web3.to_checksum_address(sender)
        with self.lock:
            nonce = self.nonces[sender]
            self.nonces[sender] += 1
            self.block_number += 1
            self.timestamp += 12
            tx_hash = HexBytes(keccak(text=f"{self.chain_id}:{sender}:{nonce}"))
            log_count = len(self.logs)
            try:
                extra = execute(nonce) if execute else None
                status = 1
            except FakeRevert:
                del self.logs[log_count:]
                extra = None
                status = 0

            receipt = {
                "transactionHash": tx_hash,
                "status": status,
                "blockNumber": self.block_number,
                "transactionIndex": 0,
                "from": sender,
                "contractAddress": None,
                "gasUsed": 21_000,
            }
            receipt.update(extra or {})
            self.receipts[tx_hash] = receipt
            self.sent.append(receipt)
            return tx_hash

    def emit(self, address: str, event: str, args: dict):
        self.logs.append(
            {
                "address": address,
                "event": event,
                "args": args,
                "blockNumber": self.block_number,
                "transactionIndex": 0,
                "logIndex": len([log for log in self.logs if log["blockNumber"] == self.block_number]),
            }
        )

    def deploy(self, sender: str, create: Callable[[str], Any]) -> tuple[HexBytes, Any]:
        """Deploy a fake contract object at the ``CREATE`` address of the sender."""
        instance = None

        def execute(nonce: int) -> dict:
            nonlocal instance
            address = get_contract_address(sender, nonce)
            instance = create(address)
            self.contracts[address] = instance
            return {"contractAddress": address}

        tx_hash = self.send_transaction(sender, execute)
        return tx_hash, instance

    def deploy_bridging_manager(self, deployer: str) -> "FakeBridgingManager":
        """Deploy a bridge proxy initialised with ``deployer`` as its admin."""
        deployer = Web3.to_checksum_address(deployer)
        _, bridge = self.deploy(deployer, lambda address: FakeBridgingManager(self, address, deployer))
        return bridge


class FakeWeb3:
    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.eth = FakeEth(chain)


class FakeEth:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    @property
    def block_number(self) -> int:
        return self.chain.block_number

    def get_transaction_count(self, address: str, block_identifier: str = "latest") -> int:
        return self.chain.nonces[Web3.to_checksum_address(address)]

    def get_block(self, block_identifier="latest") -> dict:
        return {"number": self.chain.block_number, "timestamp": self.chain.timestamp}

    def wait_for_transaction_receipt(self, tx_hash, timeout: float = 120) -> dict:
        return self.chain.receipts[HexBytes(tx_hash)]

    def get_transaction_receipt(self, tx_hash) -> dict:
        return self.chain.receipts[HexBytes(tx_hash)]

    def contract(self, abi=None, bytecode=None, address=None):
        factory = FakeContractFactory(self.chain, abi, bytecode)
        if address is not None:
            return factory(address=address)
        return factory


class FakeDeployedContract:
    """A deployed contract that only remembers its constructor arguments."""

    def __init__(self, address: str, abi: list, args: tuple, value: int):
        self.address = address
        self.abi = abi
        self.args = args
        self.value = value


class FakeConstructor:
    def __init__(self, chain: FakeChain, abi: list, bytecode: str, args: tuple):
        self.chain = chain
        self.abi = abi
        self.bytecode = bytecode
        self.args = args

    def transact(self, tx_params: dict) -> HexBytes:
        sender = tx_params["from"]
        value = tx_params.get("value", 0)

        def create(address: str) -> FakeDeployedContract:
            if self.bytecode == REVERTING_BYTECODE:
                raise FakeRevert("constructor reverted")
            return FakeDeployedContract(address, self.abi, self.args, value)

        tx_hash, _ = self.chain.deploy(sender, create)
        return tx_hash


class FakeContractFactory:
    """What ``web3.eth.contract()`` returns."""

    def __init__(self, chain: FakeChain, abi: list | None, bytecode: str | None):
        self.chain = chain
        self.abi = abi
        self.bytecode = bytecode

    def constructor(self, *args) -> FakeConstructor:
        assert self.bytecode, "No bytecode to deploy"
        return FakeConstructor(self.chain, self.abi, self.bytecode, args)

    def __call__(self, address: str):
        return self.chain.contracts[Web3.to_checksum_address(address)]


class FakeCall:
    """A bound contract function: ``call()`` for views, ``transact()`` for state changes."""

    def __init__(self, chain: FakeChain, view: Callable[[], Any] | None = None, execute: Callable[[str], None] | None = None):
        self.chain = chain
        self.view = view
        self.execute = execute

    def call(self, *args, **kwargs):
        assert self.view is not None, "Not a view function"
        return self.view()

    def transact(self, tx_params: dict) -> HexBytes:
        assert self.execute is not None, "Not a state changing function"
        sender = Web3.to_checksum_address(tx_params["from"])
        return self.chain.send_transaction(sender, lambda nonce: self.execute(sender))


class FakeEvent:
    def __init__(self, bridge: "FakeBridgingManager", name: str):
        self.bridge = bridge
        self.name = name

    def get_logs(self, argument_filters: dict | None = None, from_block: int = 0, to_block: int | None = None) -> list[dict]:
        self.bridge.get_logs_calls.append((self.name, from_block, to_block))
        if to_block is None:
            to_block = self.bridge.chain.block_number
        result = []
        for log in self.bridge.chain.logs:
            if log["address"] != self.bridge.address or log["event"] != self.name:
                continue
            if not (from_block <= log["blockNumber"] <= to_block):
                continue
            if argument_filters and any(log["args"][k] != v for k, v in argument_filters.items()):
                continue
            result.append(log)
        return result


class _Namespace:
    def __init__(self, **entries):
        self.__dict__.update(entries)


class FakeBridgingManager:
    """``BridgingManager`` behind a proxy, initialised with an admin.

    Follows the contract:

    - Only admins grant roles
    - ``renounceRole`` only for the caller itself
    - ``enableDeposits`` needs the enabler role and reverts if already enabled, and so on
    """

    def __init__(self, chain: FakeChain, address: str, admin: str):
        self.chain = chain
        self.address = address
        self.w3 = chain.web3
        self.roles: dict[bytes, set[str]] = defaultdict(set)
        self.deposits_enabled = False
        self.withdrawals_enabled = False

        #: Admin holder count after every transaction touching this contract
        self.admin_count_history: list[int] = []

        #: Send a reverting transaction when this operation name comes up, for failure tests
        self.fail_on: set[str] = set()

        self.get_logs_calls: list[tuple] = []

        self._grant(DEFAULT_ADMIN_ROLE_ID, admin, admin)

        self.functions = _Namespace(
            hasRole=lambda role, account: FakeCall(chain, view=lambda: Web3.to_checksum_address(account) in self.roles[bytes(role)]),
            isDepositsEnabled=lambda: FakeCall(chain, view=lambda: self.deposits_enabled),
            isWithdrawalsEnabled=lambda: FakeCall(chain, view=lambda: self.withdrawals_enabled),
            grantRole=lambda role, account: FakeCall(chain, execute=lambda sender: self.grant_role(sender, bytes(role), account)),
            revokeRole=lambda role, account: FakeCall(chain, execute=lambda sender: self.revoke_role(sender, bytes(role), account)),
            renounceRole=lambda role, account: FakeCall(chain, execute=lambda sender: self.renounce_role(sender, bytes(role), account)),
            enableDeposits=lambda: FakeCall(chain, execute=lambda sender: self.switch(sender, "deposits", True)),
            disableDeposits=lambda: FakeCall(chain, execute=lambda sender: self.switch(sender, "deposits", False)),
            enableWithdrawals=lambda: FakeCall(chain, execute=lambda sender: self.switch(sender, "withdrawals", True)),
            disableWithdrawals=lambda: FakeCall(chain, execute=lambda sender: self.switch(sender, "withdrawals", False)),
        )
        self.events = _Namespace(
            RoleGranted=lambda: FakeEvent(self, "RoleGranted"),
            RoleRevoked=lambda: FakeEvent(self, "RoleRevoked"),
        )

    def __repr__(self):
        return f"<FakeBridgingManager {self.address}>"

    def get_holders(self, role: BridgeRole) -> set[str]:
        return set(self.roles[get_role_id(role)])

    def _record(self):
        self.admin_count_history.append(len(self.roles[DEFAULT_ADMIN_ROLE_ID]))

    def _check(self, operation: str):
        if operation in self.fail_on:
            raise FakeRevert(operation)

    def _grant(self, role: bytes, account: str, sender: str):
        account = Web3.to_checksum_address(account)
        if account not in self.roles[role]:
            self.roles[role].add(account)
            self.chain.emit(self.address, "RoleGranted", {"role": role, "account": account, "sender": sender})

    def _revoke(self, role: bytes, account: str, sender: str):
        account = Web3.to_checksum_address(account)
        if account in self.roles[role]:
            self.roles[role].discard(account)
            self.chain.emit(self.address, "RoleRevoked", {"role": role, "account": account, "sender": sender})

    def grant_role(self, sender: str, role: bytes, account: str):
        self._check("grantRole")
        if sender not in self.roles[DEFAULT_ADMIN_ROLE_ID]:
            raise FakeRevert("AccessControl: missing admin role")
        self._grant(role, account, sender)
        self._record()

    def revoke_role(self, sender: str, role: bytes, account: str):
        self._check("revokeRole")
        if sender not in self.roles[DEFAULT_ADMIN_ROLE_ID]:
            raise FakeRevert("AccessControl: missing admin role")
        self._revoke(role, account, sender)
        self._record()

    def renounce_role(self, sender: str, role: bytes, account: str):
        self._check("renounceRole")
        if Web3.to_checksum_address(account) != sender:
            raise FakeRevert("AccessControl: can only renounce roles for self")
        self._revoke(role, account, sender)
        self._record()

    def switch(self, sender: str, what: str, enable: bool):
        role_name = f"{what}_{'enabler' if enable else 'disabler'}"
        self._check(role_name)
        role = BridgeRole[role_name]
        if sender not in self.roles[get_role_id(role)]:
            raise FakeRevert(f"AccessControl: missing {role.value}")
        current = getattr(self, f"{what}_enabled")
        if current == enable:
            raise FakeRevert(f"{what} already {'enabled' if enable else 'disabled'}")
        setattr(self, f"{what}_enabled", enable)
        self._record()
