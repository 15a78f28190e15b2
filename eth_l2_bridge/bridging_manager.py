"""Apply a declarative role and pause state to a deployed bridge contract.

After deployment the deployer holds the admin role of a bridge contract.
:py:meth:`BridgingManagement.setup` moves the bridge to the state described
by a :py:class:`BridgeConfig`:

1. Grant admin to the final admin, if it is not the deployer
2. Grant enabler and disabler roles to the configured accounts.
   If the deployer itself needs to flip deposits or withdrawals,
   it grants itself the needed role temporarily.
3. Enable or disable deposits and withdrawals, then renounce
   the temporary roles of the deployer
4. Renounce the admin role of the deployer, always as the last action,
   after checking the final admin holds the role on-chain

Every transaction is preceded by a read of the current on-chain state
and skipped if the bridge is already there, so running ``setup``
again after a partial failure continues from where it stopped.

There is no rollback. If a transaction fails,
:py:class:`RoleOperationFailure` tells which operations were already
applied, so the operator can see the partial state before re-running.

Example:

.. code-block:: python

    from eth_l2_bridge.abi import get_deployed_contract
    from eth_l2_bridge.bridging_manager import BridgeConfig, BridgingManagement

    bridge = get_deployed_contract(web3, "BridgingManager.json", gateway_proxy_address)
    management = BridgingManagement(bridge, deployer.address, hot_wallet=deployer)
    management.setup(
        BridgeConfig(
            bridge_admin=dao_agent,
            deposits_enabled=True,
            deposits_enablers=[dao_agent],
            deposits_disablers=[dao_agent, emergency_brakes],
        )
    )
    print(management.get_admins())
"""

import logging
from dataclasses import dataclass, field

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.contract.contract import ContractFunction
from web3.exceptions import Web3Exception

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.hotwallet import HotWallet
from eth_l2_bridge.roles import BridgeRole, get_role_id
from eth_l2_bridge.trace import TransactionAssertionError, assert_transaction_success, send_contract_call
from eth_l2_bridge.utils import chunked

logger = logging.getLogger(__name__)


#: Roles that gate a single enable/disable action
OPERATIONAL_ROLES = (
    BridgeRole.deposits_enabler,
    BridgeRole.deposits_disabler,
    BridgeRole.withdrawals_enabler,
    BridgeRole.withdrawals_disabler,
)


@dataclass(slots=True)
class BridgeConfig:
    """Target access control and pause state of a bridge contract."""

    #: Account holding the admin role after setup
    bridge_admin: HexAddress

    #: Should deposits be enabled after setup
    deposits_enabled: bool = False

    #: Should withdrawals be enabled after setup
    withdrawals_enabled: bool = False

    #: Accounts granted ``DEPOSITS_ENABLER_ROLE``
    deposits_enablers: list[HexAddress] = field(default_factory=list)

    #: Accounts granted ``DEPOSITS_DISABLER_ROLE``
    deposits_disablers: list[HexAddress] = field(default_factory=list)

    #: Accounts granted ``WITHDRAWALS_ENABLER_ROLE``
    withdrawals_enablers: list[HexAddress] = field(default_factory=list)

    #: Accounts granted ``WITHDRAWALS_DISABLER_ROLE``
    withdrawals_disablers: list[HexAddress] = field(default_factory=list)

    def get_role_holders(self, role: BridgeRole) -> list[HexAddress]:
        """Configured holders of an operational role."""
        match role:
            case BridgeRole.deposits_enabler:
                accounts = self.deposits_enablers
            case BridgeRole.deposits_disabler:
                accounts = self.deposits_disablers
            case BridgeRole.withdrawals_enabler:
                accounts = self.withdrawals_enablers
            case BridgeRole.withdrawals_disabler:
                accounts = self.withdrawals_disablers
            case BridgeRole.admin:
                accounts = [self.bridge_admin]
            case _:
                raise NotImplementedError(f"Unknown role {role}")
        return [Web3.to_checksum_address(a) for a in accounts]


@dataclass(slots=True)
class AppliedOperation:
    """A state changing transaction that went through."""

    #: What was done, like ``grant DEPOSITS_ENABLER_ROLE to 0x...``
    description: str

    #: Transaction hash
    tx_hash: HexBytes


class RoleOperationFailure(BridgeOpsError):
    """A role or pause transaction failed in the middle of a setup.

    The bridge is left in a partially applied state.
    Running the setup again continues from where it stopped.
    """

    def __init__(self, message: str, operation: str, applied: list[AppliedOperation]):
        super().__init__(message)
        #: The operation that failed
        self.operation = operation
        #: Operations applied before the failure, in order
        self.applied = applied


def fetch_role_holders(
    bridge: Contract,
    role: BridgeRole,
    from_block: int = 0,
    to_block: int | None = None,
    chunk_size: int | None = None,
) -> set[HexAddress]:
    """Reconstruct the current holders of a role from the event history.

    ``AccessControl`` keeps no list of holders, so we replay
    ``RoleGranted`` and ``RoleRevoked`` events in chain order.
    Renounces emit ``RoleRevoked`` too.

    :param bridge:
        Bridge contract

    :param role:
        Role to look up

    :param from_block:
        First block to scan, usually the deployment block of the bridge

    :param to_block:
        Last block to scan. Defaults to the latest block.

    :param chunk_size:
        Scan at most this many blocks per ``eth_getLogs`` call,
        for RPC providers that limit the range

    :return:
        Current role holders
    """
    role_id = get_role_id(role)
    web3 = bridge.w3

    if to_block is None:
        to_block = web3.eth.block_number

    if chunk_size:
        ranges = [(c[0], c[-1]) for c in chunked(range(from_block, to_block + 1), chunk_size)]
    else:
        ranges = [(from_block, to_block)]

    events = []
    for start, end in ranges:
        for event_name in ("RoleGranted", "RoleRevoked"):
            logs = getattr(bridge.events, event_name)().get_logs(
                argument_filters={"role": role_id},
                from_block=start,
                to_block=end,
            )
            events.extend(logs)

    events.sort(key=lambda e: (e["blockNumber"], e["transactionIndex"], e["logIndex"]))

    holders = set()
    for evt in events:
        account = Web3.to_checksum_address(evt["args"]["account"])
        if evt["event"] == "RoleGranted":
            holders.add(account)
        else:
            holders.discard(account)

    logger.debug("Role %s has %d holders: %s", role.value, len(holders), holders)
    return holders


class BridgingManagement:
    """Manage roles and pause state of one bridge contract.

    All transactions are sent from ``sender``, which must hold the admin role
    for anything that grants roles.
    """

    def __init__(
        self,
        bridge: Contract,
        sender: HexAddress | str,
        hot_wallet: HotWallet | None = None,
        gas: int | None = None,
        deployment_block: int = 0,
    ):
        """
        :param bridge:
            Bridge contract instance, e.g. from ``get_deployed_contract(web3, "BridgingManager.json", address)``

        :param sender:
            Account sending the transactions

        :param hot_wallet:
            Local signer for ``sender``. If not given, ``sender`` must be
            an unlocked node account.

        :param deployment_block:
            Where event history scans start
        """
        self.bridge = bridge
        self.web3 = bridge.w3
        self.sender = Web3.to_checksum_address(sender)
        self.hot_wallet = hot_wallet
        self.gas = gas
        self.deployment_block = deployment_block
        self.applied: list[AppliedOperation] = []

    def __repr__(self):
        return f"<BridgingManagement {self.bridge.address} as {self.sender}>"

    def has_role(self, role: BridgeRole, account: HexAddress | str) -> bool:
        return self.bridge.functions.hasRole(get_role_id(role), Web3.to_checksum_address(account)).call()

    def is_deposits_enabled(self) -> bool:
        return self.bridge.functions.isDepositsEnabled().call()

    def is_withdrawals_enabled(self) -> bool:
        return self.bridge.functions.isWithdrawalsEnabled().call()

    def get_role_holders(self, role: BridgeRole, chunk_size: int | None = None) -> set[HexAddress]:
        return fetch_role_holders(self.bridge, role, from_block=self.deployment_block, chunk_size=chunk_size)

    def get_admins(self, chunk_size: int | None = None) -> set[HexAddress]:
        """Current admin role holders, from the event history."""
        return self.get_role_holders(BridgeRole.admin, chunk_size=chunk_size)

    def _transact(self, description: str, func: ContractFunction):
        logger.info("Bridge %s: %s", self.bridge.address, description)
        try:
            tx_hash = send_contract_call(self.web3, func, self.sender, self.hot_wallet, gas=self.gas)
            assert_transaction_success(self.web3, tx_hash, description=description)
        except (TransactionAssertionError, Web3Exception, ValueError) as e:
            applied = list(self.applied)
            done = ", ".join(op.description for op in applied) or "nothing"
            raise RoleOperationFailure(
                f"Bridge {self.bridge.address}: '{description}' failed: {e}. Already applied: {done}. Re-run setup to continue.",
                operation=description,
                applied=applied,
            ) from e
        self.applied.append(AppliedOperation(description=description, tx_hash=tx_hash))

    def grant_role(self, role: BridgeRole, account: HexAddress | str) -> bool:
        """Grant a role unless the account already holds it.

        :return:
            ``True`` if a transaction was sent
        """
        account = Web3.to_checksum_address(account)
        if self.has_role(role, account):
            logger.info("Bridge %s: %s already has %s", self.bridge.address, account, role.value)
            return False
        self._transact(f"grant {role.value} to {account}", self.bridge.functions.grantRole(get_role_id(role), account))
        return True

    def renounce_role(self, role: BridgeRole) -> bool:
        """Renounce a role of the sender unless it does not hold it.

        :return:
            ``True`` if a transaction was sent
        """
        if not self.has_role(role, self.sender):
            return False
        self._transact(f"renounce {role.value} of {self.sender}", self.bridge.functions.renounceRole(get_role_id(role), self.sender))
        return True

    def set_deposits_enabled(self, enabled: bool) -> bool:
        """Enable or disable deposits unless already in that state.

        :return:
            ``True`` if a transaction was sent
        """
        if self.is_deposits_enabled() == enabled:
            return False
        if enabled:
            self._transact("enable deposits", self.bridge.functions.enableDeposits())
        else:
            self._transact("disable deposits", self.bridge.functions.disableDeposits())
        return True

    def set_withdrawals_enabled(self, enabled: bool) -> bool:
        """Enable or disable withdrawals unless already in that state.

        :return:
            ``True`` if a transaction was sent
        """
        if self.is_withdrawals_enabled() == enabled:
            return False
        if enabled:
            self._transact("enable withdrawals", self.bridge.functions.enableWithdrawals())
        else:
            self._transact("disable withdrawals", self.bridge.functions.disableWithdrawals())
        return True

    def setup(self, config: BridgeConfig) -> list[AppliedOperation]:
        """Move the bridge to the target state.

        Safe to call again with the same config. Operations already
        in place are skipped.

        :return:
            Operations applied by this call

        :raises RoleOperationFailure:
            A transaction failed. The bridge is partially set up.
        """
        self.applied = []
        bridge_admin = Web3.to_checksum_address(config.bridge_admin)
        admin_handover = bridge_admin != self.sender

        logger.info(
            "Setting up bridge %s: admin %s, deposits %s, withdrawals %s",
            self.bridge.address,
            bridge_admin,
            "on" if config.deposits_enabled else "off",
            "on" if config.withdrawals_enabled else "off",
        )

        # 1. New admin in before anything else
        if admin_handover:
            self.grant_role(BridgeRole.admin, bridge_admin)

        # 2. Configured holders, plus roles we need ourselves to flip the switches
        for role in OPERATIONAL_ROLES:
            for account in config.get_role_holders(role):
                self.grant_role(role, account)

        deposits_now = self.is_deposits_enabled()
        withdrawals_now = self.is_withdrawals_enabled()

        temporary_roles = []
        if config.deposits_enabled and not deposits_now:
            temporary_roles.append(BridgeRole.deposits_enabler)
        if not config.deposits_enabled and deposits_now:
            temporary_roles.append(BridgeRole.deposits_disabler)
        if config.withdrawals_enabled and not withdrawals_now:
            temporary_roles.append(BridgeRole.withdrawals_enabler)
        if not config.withdrawals_enabled and withdrawals_now:
            temporary_roles.append(BridgeRole.withdrawals_disabler)

        for role in temporary_roles:
            self.grant_role(role, self.sender)

        # 3. Flip each switch, then drop its roles we are not configured to keep
        switches = [
            (self.set_deposits_enabled, config.deposits_enabled, (BridgeRole.deposits_enabler, BridgeRole.deposits_disabler)),
            (self.set_withdrawals_enabled, config.withdrawals_enabled, (BridgeRole.withdrawals_enabler, BridgeRole.withdrawals_disabler)),
        ]
        for set_enabled, enabled, switch_roles in switches:
            set_enabled(enabled)
            for role in switch_roles:
                if self.sender not in config.get_role_holders(role):
                    self.renounce_role(role)

        # 4. Hand over admin last
        if admin_handover and self.has_role(BridgeRole.admin, self.sender):
            if not self.has_role(BridgeRole.admin, bridge_admin):
                raise RoleOperationFailure(
                    f"Bridge {self.bridge.address}: refusing to renounce admin of {self.sender}, {bridge_admin} does not hold the admin role",
                    operation=f"renounce {BridgeRole.admin.value} of {self.sender}",
                    applied=list(self.applied),
                )
            self.renounce_role(BridgeRole.admin)

        logger.info("Bridge %s setup done, %d transactions", self.bridge.address, len(self.applied))
        return list(self.applied)
