"""Deploy, administer and govern linked L1/L2 token bridge contracts.

The package is split into small building blocks that the
:py:mod:`eth_l2_bridge.orchestrator` composes:

- :py:mod:`eth_l2_bridge.address`: predict future ``CREATE`` addresses of a deployer
- :py:mod:`eth_l2_bridge.deployment`: run an ordered list of contract deployments
  and verify each deployed address against its prediction
- :py:mod:`eth_l2_bridge.bridging_manager`: move a bridge contract to a declarative
  role and enabled/disabled target state without ever orphaning the admin role
- :py:mod:`eth_l2_bridge.messaging`: send and track L1 <-> L2 administrative messages
  for Arbitrum-style retryable tickets and OP-stack style relayed messages
- :py:mod:`eth_l2_bridge.timelock`: follow a governance action through an L2 bridge executor
"""


class BridgeOpsError(Exception):
    """Base class for all errors raised by this package."""
