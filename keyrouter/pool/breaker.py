# pool/breaker.py
import logging
from dataclasses import replace
from typing import Optional

from keyrouter.pool.models import Node, PoolPolicy, usage_ratio

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Máquina de estados de salud por nodo: Active / Cooling-down / Disabled.

    Solo calcula transiciones: recibe un Node y devuelve el Node siguiente.
    Quien la llama (Ledger, Reconciler) hace el commit en el Registry
    dentro del lock, así cada transición es atómica.

    Dos mecanismos independientes sacan un nodo de rotación:
    - Fallos → cooldown temporal, se libera solo (Reconciler).
    - Auto-throttle por budget → enabled=False, solo lo revierte un admin.
    """

    def __init__(self, policy: Optional[PoolPolicy] = None, auto_throttle: bool = False):
        self._policy       = policy or PoolPolicy()
        self.auto_throttle = auto_throttle

    @property
    def policy(self) -> PoolPolicy:
        return self._policy

    def after_success(self, node: Node) -> Node:
        """Auto-throttle: retira el nodo al alcanzar el umbral de budget."""
        if not self.auto_throttle or not node.enabled:
            return node
        if usage_ratio(node) < self._policy.auto_throttle_ratio:
            return node

        logger.warning(
            "Auto-throttle: nodo %s al %.0f%% de su budget (%d/%d), deshabilitado",
            node.label, usage_ratio(node) * 100, node.usage_count, node.budget,
        )
        return replace(node, enabled=False)

    def after_failure(self, node: Node, rate_limited: bool, now: float) -> Node:
        """
        Decide si el fallo dispara el breaker.
        Un nodo que ya está en cooldown conserva su cooldown_until:
        los fallos extra no lo acortan ni lo extienden.
        """
        if node.in_cooldown(now):
            return node

        if rate_limited:
            duration = self._policy.rate_limit_cooldown_seconds
            reason   = "rate limit"
        elif node.consecutive_failures >= self._policy.failure_threshold:
            duration = self._policy.base_cooldown_seconds
            reason   = f"{node.consecutive_failures} fallos consecutivos"
        else:
            return node

        logger.warning(
            "Breaker abierto en nodo %s por %s, cooldown %.0fs",
            node.label, reason, duration,
        )
        return replace(node, cooldown_until=now + duration)

    def release_if_expired(self, node: Node, now: float) -> Optional[Node]:
        """
        Cooling-down → Active cuando now >= cooldown_until.
        Devuelve None si no hay nada que liberar.
        """
        if node.cooldown_until is None or now < node.cooldown_until:
            return None
        return replace(node, cooldown_until=None, consecutive_failures=0)
