"""Bridge access control roles.

Bridge contracts use OpenZeppelin style ``AccessControl``. Role ids are
``keccak256("BridgingManager.<ROLE_NAME>")`` except the admin role,
which is the all-zero ``DEFAULT_ADMIN_ROLE``.
"""

import enum

from eth_utils import keccak


class BridgeRole(enum.Enum):
    """Roles a bridge contract recognises."""

    #: Can grant and revoke all other roles
    admin = "DEFAULT_ADMIN_ROLE"

    deposits_enabler = "DEPOSITS_ENABLER_ROLE"

    deposits_disabler = "DEPOSITS_DISABLER_ROLE"

    withdrawals_enabler = "WITHDRAWALS_ENABLER_ROLE"

    withdrawals_disabler = "WITHDRAWALS_DISABLER_ROLE"


#: ``DEFAULT_ADMIN_ROLE`` in OpenZeppelin AccessControl
DEFAULT_ADMIN_ROLE_ID = b"\x00" * 32


def get_role_id(role: BridgeRole) -> bytes:
    """Map a role to its 32-byte on-chain identifier."""
    if role == BridgeRole.admin:
        return DEFAULT_ADMIN_ROLE_ID
    return keccak(text=f"BridgingManager.{role.value}")


def get_role_by_id(role_id: bytes) -> BridgeRole:
    """Reverse of :py:func:`get_role_id`.

    :raises KeyError:
        Not a bridge role
    """
    for role in BridgeRole:
        if get_role_id(role) == bytes(role_id):
            return role
    raise KeyError(f"Unknown role id 0x{bytes(role_id).hex()}")
