# pool/reconciler.py
import logging
import threading
from typing import Callable, Optional

from keyrouter.pool.breaker import CircuitBreaker
from keyrouter.pool.models import Node
from keyrouter.pool.registry import NodeRegistry

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Barrido periódico en background que libera cooldowns expirados.
    run_once() es síncrono y testeable con un reloj simulado;
    start()/stop() lo ejecutan en un thread daemon cada `interval` segundos.
    """

    def __init__(
        self,
        registry:   NodeRegistry,
        breaker:    CircuitBreaker,
        interval:   Optional[float]                          = None,
        on_release: Optional[Callable[[list[Node]], None]]   = None,
    ):
        self._registry   = registry
        self._breaker    = breaker
        self._interval   = interval or registry.policy.reconcile_interval_seconds
        self._on_release = on_release
        self._stop       = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        return self._interval

    def run_once(self) -> list[Node]:
        """Devuelve los nodos devueltos a Active en este barrido."""
        released = []
        with self._registry.lock:
            now = self._registry.clock()
            for node in self._registry.list():
                restored = self._breaker.release_if_expired(node, now)
                if restored is not None:
                    self._registry.commit(restored)
                    released.append(restored)

        for node in released:
            logger.info("Cooldown expirado, nodo %s vuelve a rotación", node.label)

        if released and self._on_release is not None:
            self._on_release(released)
        return released

    # ------------------------------------------------------------------
    # Thread de background
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target = self._loop,
            name   = "keyrouter-reconciler",
            daemon = True,
        )
        self._thread.start()
        logger.debug("Reconciler iniciado (intervalo %.1fs)", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # Un barrido fallido no debe matar el thread; el siguiente reintenta
                logger.exception("Error en el barrido del Reconciler")
