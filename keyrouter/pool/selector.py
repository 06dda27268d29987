# pool/selector.py
import logging
import random
from typing import Collection, Optional

from keyrouter.errors import PoolExhaustedError
from keyrouter.pool.models import Node, usage_ratio
from keyrouter.pool.registry import NodeRegistry

logger = logging.getLogger(__name__)


class Selector:
    """
    Elige el nodo elegible menos cargado (menor usage_count / budget).

    A cada ratio se le suma una perturbación uniforme en [0, jitter]
    para que nodos empatados no se resuelvan siempre en el mismo orden.
    Nodos cuyos ratios difieren más que jitter mantienen su orden.

    Lectura pura: no muta contadores. El caller reporta el resultado
    del dispatch después.
    """

    def __init__(self, registry: NodeRegistry, rng: Optional[random.Random] = None):
        self._registry = registry
        self._rng      = rng or random.Random()

    def eligible(self) -> list[Node]:
        with self._registry.lock:
            now   = self._registry.clock()
            nodes = self._registry.list()
        return [n for n in nodes if n.is_eligible(now)]

    def select(self, exclude: Collection[str] = ()) -> Node:
        """
        exclude: ids que no deben elegirse (nodos ya intentados en este
        dispatch). Si no queda candidato fuera de exclude lanza
        PoolExhaustedError igual que con el pool agotado.
        """
        candidates = [n for n in self.eligible() if n.id not in exclude]
        if not candidates:
            raise PoolExhaustedError(
                "Ningún nodo elegible: todos deshabilitados, en cooldown o sin budget"
            )

        jitter = self._registry.policy.tie_break_jitter
        chosen = min(
            candidates,
            key=lambda n: usage_ratio(n) + self._rng.uniform(0.0, jitter),
        )
        logger.debug(
            "Seleccionado nodo %s | ratio: %.3f | candidatos: %d",
            chosen.label, usage_ratio(chosen), len(candidates),
        )
        return chosen
