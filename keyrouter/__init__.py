"""
keyrouter: pool de credenciales y router para APIs generativas con rate limit.
"""
from keyrouter.errors import (
    KeyRouterError,
    InvalidConfigError,
    NodeNotFoundError,
    PoolExhaustedError,
)
from keyrouter.pool import DispatchOutcome, Node, NodePool, NodeState, PoolPolicy

__all__ = [
    "KeyRouterError",
    "InvalidConfigError",
    "NodeNotFoundError",
    "PoolExhaustedError",
    "DispatchOutcome",
    "Node",
    "NodePool",
    "NodeState",
    "PoolPolicy",
]
