# pool/ledger.py
import logging
from dataclasses import replace

from keyrouter.pool.breaker import CircuitBreaker
from keyrouter.pool.models import Node
from keyrouter.pool.registry import NodeRegistry

logger = logging.getLogger(__name__)


class UsageLedger:
    """
    Contabilidad de consumo contra budget.
    Cada registro lee, transforma y hace commit del nodo bajo el lock
    del Registry: usage, timestamp, fallos y flags cambian juntos.
    """

    def __init__(self, registry: NodeRegistry, breaker: CircuitBreaker):
        self._registry = registry
        self._breaker  = breaker

    def record_success(self, node_id: str) -> Node:
        with self._registry.lock:
            node = self._registry.get(node_id)
            updated = replace(
                node,
                usage_count          = node.usage_count + 1,
                last_used            = self._registry.clock(),
                consecutive_failures = 0,
            )
            updated = self._breaker.after_success(updated)
            self._registry.commit(updated)

        logger.debug(
            "Éxito en nodo %s | uso: %d/%d",
            updated.label, updated.usage_count, updated.budget,
        )
        return updated

    def record_failure(self, node_id: str, rate_limited: bool = False) -> Node:
        """No toca usage_count. El breaker decide si hay cooldown."""
        with self._registry.lock:
            node = self._registry.get(node_id)
            updated = replace(node, consecutive_failures=node.consecutive_failures + 1)
            updated = self._breaker.after_failure(
                updated, rate_limited, self._registry.clock()
            )
            self._registry.commit(updated)

        logger.debug(
            "Fallo en nodo %s (rate_limited=%s) | fallos consecutivos: %d",
            updated.label, rate_limited, updated.consecutive_failures,
        )
        return updated
