# router/base.py
from abc import ABC, abstractmethod
from typing import Sequence

from keyrouter.pool.models import Node
from keyrouter.router.models import ChatTurn, ModelResponse


class RateLimitedError(Exception):
    """El upstream respondió 429. El Dispatcher lo reporta como RATE_LIMITED."""
    pass


class UpstreamUnavailableError(Exception):
    """Error de red, timeout o 5xx. Retryable: el Dispatcher hace failover."""
    pass


class BaseAdapter(ABC):
    """
    Contrato que deben cumplir los clientes del API upstream.
    El Dispatcher solo habla con esta interfaz.
    """

    @abstractmethod
    def generate(
        self,
        node:    Node,
        prompt:  str,
        history: Sequence[ChatTurn] = (),
    ) -> ModelResponse:
        """
        Envía el prompt con la credencial, modelo y system instruction
        del nodo. Puede lanzar:
        - RateLimitedError → cooldown largo del nodo
        - UpstreamUnavailableError → failover a otro nodo
        - cualquier otra excepción → fallo sin failover (error de contenido)
        """
        ...
