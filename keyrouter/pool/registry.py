# pool/registry.py
import logging
import threading
import time
import uuid
from dataclasses import replace
from numbers import Integral
from typing import Callable, Iterable, Optional

from keyrouter.errors import InvalidConfigError, NodeNotFoundError
from keyrouter.pool.models import Node, PoolPolicy

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {"label", "budget", "model", "system_instruction"}


def _new_node_id() -> str:
    return uuid.uuid4().hex[:12]


class NodeRegistry:
    """
    Dueño exclusivo del conjunto de nodos.

    Todos los componentes del pool (Ledger, Breaker, Selector, Reconciler)
    leen y escriben a través de este objeto y de su lock; nunca guardan
    copias propias que puedan divergir.

    Los nodos son inmutables: commit() sustituye el objeto entero, de modo
    que cada transición se aplica como una sola unidad indivisible.
    """

    def __init__(
        self,
        policy:        Optional[PoolPolicy]        = None,
        clock:         Callable[[], float]         = time.time,
        id_factory:    Callable[[], str]           = _new_node_id,
        default_model: str                         = "gemini-1.5-flash",
    ):
        self.policy         = policy or PoolPolicy()
        self.clock          = clock
        self.default_model  = default_model
        self._id_factory    = id_factory
        self._nodes: dict[str, Node] = {}   # orden de inserción = orden de display
        self._lock          = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ------------------------------------------------------------------
    # CRUD administrativo
    # ------------------------------------------------------------------

    def add_node(
        self,
        credential:         str,
        label:              Optional[str] = None,
        budget:             Optional[int] = None,
        model:              Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """
        Crea un nodo Active y devuelve su id.
        budget=None aplica el default de la política; un budget explícito
        no positivo se rechaza con InvalidConfigError.
        """
        credential = (credential or "").strip()
        if not credential:
            raise InvalidConfigError("La credencial no puede estar vacía")

        if budget is None:
            budget = self.policy.default_budget
        _validate_budget(budget)

        with self._lock:
            node_id = self._id_factory()
            while node_id in self._nodes:
                node_id = self._id_factory()

            node = Node(
                id                 = node_id,
                credential         = credential,
                label              = label or f"Key {len(self._nodes) + 1}",
                model              = model or self.default_model,
                budget             = int(budget),
                system_instruction = system_instruction or None,
            )
            self._nodes[node_id] = node

        logger.info(
            "Nodo %s añadido (%s, %s) | budget: %d",
            node.label, node_id, node.masked_credential, node.budget,
        )
        return node_id

    def remove_node(self, node_id: str, strict: bool = False) -> bool:
        """
        Elimina el nodo. Tolerante por defecto: si no existe es un no-op
        y devuelve False. Con strict=True lanza NodeNotFoundError.
        """
        with self._lock:
            node = self._nodes.pop(node_id, None)

        if node is None:
            if strict:
                raise NodeNotFoundError(node_id)
            return False

        logger.info("Nodo %s eliminado (%s)", node.label, node_id)
        return True

    def update_config(self, node_id: str, **fields) -> Node:
        """
        Mezcla los campos recibidos (label, budget, model, system_instruction).
        Los campos que no se pasan quedan intactos.

        No toca el flag enabled: un nodo retirado por auto-throttle sigue
        fuera de rotación aunque se le suba el budget. El estado persistido
        no distingue esa retirada de un disable manual, así que la única
        vuelta es set_enabled(id, True) después de ajustar el budget.
        """
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidConfigError(
                f"Campos no editables: {', '.join(sorted(unknown))}"
            )
        if "budget" in fields:
            _validate_budget(fields["budget"])
            fields["budget"] = int(fields["budget"])
        if "label" in fields and not fields["label"]:
            raise InvalidConfigError("El label no puede estar vacío")
        if "model" in fields and not fields["model"]:
            raise InvalidConfigError("El modelo no puede estar vacío")

        with self._lock:
            updated = replace(self.get(node_id), **fields)
            self.commit(updated)
        return updated

    def set_enabled(self, node_id: str, enabled: bool) -> Node:
        """
        Flag administrativo. Rehabilitar es un reset manual: limpia
        fallos consecutivos y cooldown, con prioridad sobre el breaker.
        No toca usage_count. Llamarlo dos veces deja el mismo estado.
        """
        with self._lock:
            node = self.get(node_id)
            if enabled:
                updated = replace(
                    node,
                    enabled              = True,
                    consecutive_failures = 0,
                    cooldown_until       = None,
                )
            else:
                updated = replace(node, enabled=False)
            self.commit(updated)

        if updated != node:
            logger.info(
                "Nodo %s %s manualmente",
                node.label, "habilitado" if enabled else "deshabilitado",
            )
        return updated

    def list(self) -> list[Node]:
        """Snapshots inmutables en orden de inserción."""
        with self._lock:
            return list(self._nodes.values())

    # ------------------------------------------------------------------
    # Acceso interno para Ledger / Breaker / Reconciler
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> Node:
        with self._lock:
            try:
                return self._nodes[node_id]
            except KeyError:
                raise NodeNotFoundError(node_id) from None

    def commit(self, node: Node) -> None:
        """Sustituye la versión canónica del nodo. El caller debe tener el lock."""
        with self._lock:
            if node.id not in self._nodes:
                raise NodeNotFoundError(node.id)
            self._nodes[node.id] = node

    def load(self, nodes: Iterable[Node]) -> None:
        """Reemplaza el pool completo (p. ej. al deserializar el estado)."""
        loaded = {}
        for node in nodes:
            if node.id in loaded:
                raise InvalidConfigError(f"Id de nodo duplicado: {node.id}")
            _validate_budget(node.budget)
            loaded[node.id] = node
        with self._lock:
            self._nodes = loaded

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._nodes


def _validate_budget(budget) -> None:
    if isinstance(budget, bool) or not isinstance(budget, Integral):
        raise InvalidConfigError(f"El budget debe ser un entero: {budget!r}")
    if budget <= 0:
        raise InvalidConfigError(f"El budget debe ser positivo: {budget}")
