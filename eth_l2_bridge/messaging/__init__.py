"""Cross-chain administrative messaging.

- :py:mod:`eth_l2_bridge.messaging.base`: shared message and status types
- :py:mod:`eth_l2_bridge.messaging.retryable`: Arbitrum style retryable tickets
- :py:mod:`eth_l2_bridge.messaging.relay`: OP stack style relayed messages (Optimism, Base, Lisk, Mantle)
"""
