# router/dispatcher.py
import logging
from typing import Optional, Sequence

from keyrouter.errors import PoolExhaustedError
from keyrouter.pool.models import DispatchOutcome
from keyrouter.pool.pool import NodePool
from keyrouter.router.base import BaseAdapter, RateLimitedError, UpstreamUnavailableError
from keyrouter.router.models import ChatTurn, ModelResponse

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    RateLimitedError,
    UpstreamUnavailableError,
    TimeoutError,
    ConnectionError,
)


class Dispatcher:
    """
    Ejecuta un request contra el upstream usando el nodo que elige el pool.
    El CLI llama a Dispatcher.send(), nunca al adaptador directamente.

    Responsabilidades:
    - Pedir un nodo al pool antes de cada intento
    - Reportar exactamente un resultado por intento, incluso si la
      llamada se interrumpe (KeyboardInterrupt, cancelación)
    - Hacer failover a otro nodo si el error es de disponibilidad
    - Propagar errores de contenido sin failover
    """

    def __init__(
        self,
        pool:          NodePool,
        adapter:       BaseAdapter,
        max_attempts:  int = 2,
        history_turns: int = 10,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts debe ser al menos 1")
        self._pool          = pool
        self._adapter       = adapter
        self._max_attempts  = max_attempts
        self._history_turns = history_turns

    def send(self, prompt: str, history: Sequence[ChatTurn] = ()) -> ModelResponse:
        """
        Cada intento usa un nodo distinto de los ya probados en este envío.

        Lanza PoolExhaustedError si no queda ningún nodo elegible en el pool
        (encadenado al último error si hubo intentos). Si quedan nodos
        elegibles pero se agotaron los intentos o los nodos no probados,
        lanza UpstreamUnavailableError encadenado al último error.
        """
        history = self._trim_history(history)
        last_error: Optional[Exception] = None
        tried: set[str] = set()

        for attempt in range(1, self._max_attempts + 1):
            try:
                node = self._pool.select_node(exclude=tried)
            except PoolExhaustedError as e:
                if last_error is None:
                    raise
                if self._pool.eligible():
                    break
                raise PoolExhaustedError(
                    f"{e}. Último error: {last_error}"
                ) from last_error

            tried.add(node.id)

            logger.debug("Intento %d con nodo %s", attempt, node.label)
            outcome = DispatchOutcome.FAILURE
            try:
                response = self._adapter.generate(node, prompt, history)
                outcome = DispatchOutcome.SUCCESS
            except RateLimitedError as e:
                outcome    = DispatchOutcome.RATE_LIMITED
                last_error = e
            except _RETRYABLE_ERRORS as e:
                last_error = e
            finally:
                # Se reporta siempre: éxito, fallo, o llamada abandonada
                self._pool.report_outcome(node.id, outcome)

            if outcome is DispatchOutcome.SUCCESS:
                response.attempts = attempt
                logger.info(
                    "Respuesta de nodo %s | tokens: %d+%d | intento %d",
                    node.label, response.tokens_input, response.tokens_output, attempt,
                )
                return response

            logger.warning(
                "Nodo %s falló con error retryable: %s. Pasando al siguiente.",
                node.label, last_error,
            )

        raise UpstreamUnavailableError(
            f"Sin respuesta tras {len(tried)} intentos en nodos distintos. "
            f"Último error: {last_error}"
        ) from last_error

    def _trim_history(self, history: Sequence[ChatTurn]) -> list[ChatTurn]:
        """Solo las últimas N vueltas viajan al upstream."""
        if self._history_turns <= 0:
            return []
        return list(history)[-self._history_turns:]
