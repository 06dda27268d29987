# pool/pool.py
import logging
import random
import threading
import time
from typing import Any, Callable, Collection, Optional

from keyrouter.errors import NodeNotFoundError
from keyrouter.pool.breaker import CircuitBreaker
from keyrouter.pool.ledger import UsageLedger
from keyrouter.pool.models import DispatchOutcome, Node, PoolPolicy
from keyrouter.pool.reconciler import Reconciler
from keyrouter.pool.registry import NodeRegistry
from keyrouter.pool.selector import Selector
from keyrouter.pool.serialization import state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

Listener = Callable[[str, list[Node]], None]


class NodePool:
    """
    Fachada única sobre Registry + Ledger + Breaker + Selector + Reconciler.

    Es toda la superficie de mutación del pool: el Dispatcher usa
    select_node() / report_outcome(); la capa administrativa (CLI) usa
    add_node, remove_node, update_config, set_enabled,
    set_auto_throttle_enabled y list. No hay otro camino para mutar nodos.

    Ciclo de vida: se construye al arrancar, start() lanza el Reconciler,
    close() lo detiene. Persistir el estado es cosa del caller.
    """

    def __init__(
        self,
        policy:        Optional[PoolPolicy]    = None,
        auto_throttle: bool                    = False,
        clock:         Callable[[], float]     = time.time,
        rng:           Optional[random.Random] = None,
        default_model: str                     = "gemini-1.5-flash",
    ):
        self.policy      = policy or PoolPolicy()
        self._registry   = NodeRegistry(self.policy, clock=clock, default_model=default_model)
        self._breaker    = CircuitBreaker(self.policy, auto_throttle=auto_throttle)
        self._ledger     = UsageLedger(self._registry, self._breaker)
        self._selector   = Selector(self._registry, rng=rng)
        self._reconciler = Reconciler(
            self._registry,
            self._breaker,
            on_release = lambda _released: self._notify("reconciled"),
        )
        self._listeners: list[Listener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def select_node(self, exclude: Collection[str] = ()) -> Node:
        """Lanza PoolExhaustedError si no hay nodo elegible fuera de exclude."""
        return self._selector.select(exclude)

    def report_outcome(self, node_id: str, outcome: DispatchOutcome) -> Optional[Node]:
        """
        Una llamada por intento de dispatch, completado o abandonado.
        Si el nodo fue eliminado mientras la llamada estaba en vuelo
        el resultado se descarta con un warning.
        """
        try:
            if outcome is DispatchOutcome.SUCCESS:
                node = self._ledger.record_success(node_id)
            else:
                node = self._ledger.record_failure(
                    node_id, rate_limited=outcome is DispatchOutcome.RATE_LIMITED
                )
        except NodeNotFoundError:
            logger.warning(
                "Resultado %s descartado: el nodo %s ya no existe", outcome.value, node_id
            )
            return None
        self._notify(f"outcome:{outcome.value}")
        return node

    # ------------------------------------------------------------------
    # Administración
    # ------------------------------------------------------------------

    def add_node(
        self,
        credential:         str,
        label:              Optional[str] = None,
        budget:             Optional[int] = None,
        model:              Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        node_id = self._registry.add_node(
            credential, label=label, budget=budget,
            model=model, system_instruction=system_instruction,
        )
        self._notify("added")
        return node_id

    def remove_node(self, node_id: str, strict: bool = False) -> bool:
        removed = self._registry.remove_node(node_id, strict=strict)
        if removed:
            self._notify("removed")
        return removed

    def update_config(self, node_id: str, **fields) -> Node:
        node = self._registry.update_config(node_id, **fields)
        self._notify("updated")
        return node

    def set_enabled(self, node_id: str, enabled: bool) -> Node:
        node = self._registry.set_enabled(node_id, enabled)
        self._notify("enabled" if enabled else "disabled")
        return node

    def set_auto_throttle_enabled(self, enabled: bool) -> None:
        with self._registry.lock:
            self._breaker.auto_throttle = bool(enabled)
        logger.info("Auto-throttle %s", "activado" if enabled else "desactivado")
        self._notify("auto_throttle")

    @property
    def auto_throttle_enabled(self) -> bool:
        return self._breaker.auto_throttle

    def list(self) -> list[Node]:
        return self._registry.list()

    def get(self, node_id: str) -> Node:
        return self._registry.get(node_id)

    def eligible(self) -> "list[Node]":
        return self._selector.eligible()

    def now(self) -> float:
        return self._registry.clock()

    def __len__(self) -> int:
        return len(self._registry)

    # ------------------------------------------------------------------
    # Reconciler
    # ------------------------------------------------------------------

    def reconcile(self) -> "list[Node]":
        """Barrido síncrono, útil en CLI y tests."""
        return self._reconciler.run_once()

    def start(self) -> "NodePool":
        self._reconciler.start()
        return self

    def close(self) -> None:
        self._reconciler.stop()

    def __enter__(self) -> "NodePool":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Estado persistible
    # ------------------------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        with self._registry.lock:
            return state_to_dict(self._registry.list(), self._breaker.auto_throttle)

    def load_state(self, state: dict[str, Any]) -> None:
        nodes, auto_throttle = state_from_dict(state)
        with self._registry.lock:
            self._registry.load(nodes)
            self._breaker.auto_throttle = auto_throttle
        logger.debug("Estado cargado: %d nodos, auto_throttle=%s", len(nodes), auto_throttle)
        self._notify("loaded")

    @classmethod
    def from_state(cls, state: dict[str, Any], **kwargs) -> "NodePool":
        pool = cls(**kwargs)
        pool.load_state(state)
        return pool

    # ------------------------------------------------------------------
    # Notificaciones de cambio
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        listener(event, nodes) se llama tras cada mutación confirmada,
        fuera del lock. Devuelve una función para desuscribirse.
        """
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        nodes = self._registry.list()
        for listener in listeners:
            try:
                listener(event, nodes)
            except Exception:
                logger.exception("Listener falló procesando el evento %s", event)
