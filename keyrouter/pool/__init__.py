from keyrouter.pool.pool import NodePool
from keyrouter.pool.models import DispatchOutcome, Node, NodeState, PoolPolicy, usage_ratio
from keyrouter.pool.registry import NodeRegistry
from keyrouter.pool.ledger import UsageLedger
from keyrouter.pool.breaker import CircuitBreaker
from keyrouter.pool.selector import Selector
from keyrouter.pool.reconciler import Reconciler

__all__ = [
    "NodePool",
    "DispatchOutcome", "Node", "NodeState", "PoolPolicy", "usage_ratio",
    "NodeRegistry",
    "UsageLedger",
    "CircuitBreaker",
    "Selector",
    "Reconciler",
]
