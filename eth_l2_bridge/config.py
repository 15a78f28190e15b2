"""Deployment configuration read from environment variables.

A bridge deployment needs the same set of settings for both chains,
prefixed with ``L1_`` or ``L2_``:

``TOKEN``
    L1 token address the bridge pair carries.

``L1_PROXY_ADMIN``, ``L2_PROXY_ADMIN``
    Admin of the deployed proxies.

``L1_BRIDGE_ADMIN``, ``L2_BRIDGE_ADMIN``
    Account holding the bridge admin role after setup.

``L1_DEPOSITS_ENABLED``, ``L2_DEPOSITS_ENABLED``, ``L1_WITHDRAWALS_ENABLED``, ``L2_WITHDRAWALS_ENABLED``
    ``true`` or ``false``. Default ``false``.

``L1_DEPOSITS_ENABLERS``, ``L1_DEPOSITS_DISABLERS``, ``L1_WITHDRAWALS_ENABLERS``, ``L1_WITHDRAWALS_DISABLERS`` (and ``L2_*``)
    Comma-separated account lists. Default empty.

Example:

.. code-block:: shell

    TOKEN=0x5A98FcBEA516Cf06857215779Fd812CA3beF1B32 \\
    L1_PROXY_ADMIN=0x3e40D73EB977Dc6a537aF587D48316feE66E9C8c \\
    L1_BRIDGE_ADMIN=0x3e40D73EB977Dc6a537aF587D48316feE66E9C8c \\
    L1_DEPOSITS_ENABLED=true \\
    L1_DEPOSITS_ENABLERS=0x3e40D73EB977Dc6a537aF587D48316feE66E9C8c \\
    ...
"""

import os
from dataclasses import dataclass
from typing import Mapping

from eth_typing import HexAddress
from eth_utils import is_address
from web3 import Web3

from eth_l2_bridge import BridgeOpsError
from eth_l2_bridge.bridging_manager import BridgeConfig


#: Accepted spellings for boolean variables
TRUE_VALUES = {"true", "1", "yes", "on"}
FALSE_VALUES = {"false", "0", "no", "off", ""}


class ConfigurationError(BridgeOpsError):
    """A deployment environment variable is missing or malformed."""


@dataclass(slots=True)
class ChainDeploymentConfig:
    """Settings for one side of the bridge."""

    #: Admin of the deployed proxies
    proxy_admin: HexAddress

    #: Role and pause state applied after deployment
    bridge: BridgeConfig


@dataclass(slots=True)
class MultiChainDeploymentConfig:
    """Settings for an L1 and L2 bridge pair."""

    #: L1 token carried by the bridge
    token: HexAddress

    l1: ChainDeploymentConfig

    l2: ChainDeploymentConfig


def parse_address(name: str, value: str | None) -> HexAddress:
    """Parse one address variable.

    :raises ConfigurationError:
        Missing or not an address
    """
    if not value:
        raise ConfigurationError(f"Environment variable {name} is not set")
    value = value.strip()
    if not is_address(value):
        raise ConfigurationError(f"Environment variable {name} is not an address: {value}")
    return Web3.to_checksum_address(value)


def parse_address_list(name: str, value: str | None) -> list[HexAddress]:
    """Parse a comma-separated address list. Empty items are ignored."""
    if not value:
        return []
    return [parse_address(name, item) for item in value.split(",") if item.strip()]


def parse_bool(name: str, value: str | None, default: bool = False) -> bool:
    """Parse ``true``/``false`` style variables."""
    if value is None:
        return default
    normalised = value.strip().lower()
    if normalised in TRUE_VALUES:
        return True
    if normalised in FALSE_VALUES:
        return False
    raise ConfigurationError(f"Environment variable {name} must be true or false, got {value}")


def load_chain_deployment_config(prefix: str, environ: Mapping[str, str]) -> ChainDeploymentConfig:
    """Read ``<prefix>_*`` variables.

    :param prefix:
        ``L1`` or ``L2``
    """

    def get(key: str) -> tuple[str, str | None]:
        name = f"{prefix}_{key}"
        return name, environ.get(name)

    return ChainDeploymentConfig(
        proxy_admin=parse_address(*get("PROXY_ADMIN")),
        bridge=BridgeConfig(
            bridge_admin=parse_address(*get("BRIDGE_ADMIN")),
            deposits_enabled=parse_bool(*get("DEPOSITS_ENABLED")),
            withdrawals_enabled=parse_bool(*get("WITHDRAWALS_ENABLED")),
            deposits_enablers=parse_address_list(*get("DEPOSITS_ENABLERS")),
            deposits_disablers=parse_address_list(*get("DEPOSITS_DISABLERS")),
            withdrawals_enablers=parse_address_list(*get("WITHDRAWALS_ENABLERS")),
            withdrawals_disablers=parse_address_list(*get("WITHDRAWALS_DISABLERS")),
        ),
    )


def load_multichain_deployment_config(environ: Mapping[str, str] | None = None) -> MultiChainDeploymentConfig:
    """Read the bridge pair deployment settings.

    :param environ:
        Variables to read. Defaults to ``os.environ``.

    :raises ConfigurationError:
        A required variable is missing or malformed
    """
    if environ is None:
        environ = os.environ

    return MultiChainDeploymentConfig(
        token=parse_address("TOKEN", environ.get("TOKEN")),
        l1=load_chain_deployment_config("L1", environ),
        l2=load_chain_deployment_config("L2", environ),
    )
