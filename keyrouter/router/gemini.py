# router/gemini.py
import logging
import threading
from typing import Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from keyrouter.pool.models import Node
from keyrouter.router.base import BaseAdapter, RateLimitedError, UpstreamUnavailableError
from keyrouter.router.models import ChatTurn, ModelResponse

logger = logging.getLogger(__name__)


class GeminiAdapter(BaseAdapter):
    """
    Cliente de Gemini sobre google-genai.
    Un genai.Client por credencial: el SDK no tiene estado global,
    así que varios nodos pueden usarse en paralelo.
    """

    def __init__(self, timeout_seconds: float = 60, temperature: float | None = None):
        self._timeout_ms  = int(timeout_seconds * 1000)
        self._temperature = temperature
        self._clients: dict[str, genai.Client] = {}
        self._lock        = threading.Lock()

    def generate(
        self,
        node:    Node,
        prompt:  str,
        history: Sequence[ChatTurn] = (),
    ) -> ModelResponse:
        contents = [
            types.Content(role=turn.role.value, parts=[types.Part(text=turn.text)])
            for turn in history
        ]
        contents.append(types.Content(role="user", parts=[types.Part(text=prompt)]))

        config = types.GenerateContentConfig(
            system_instruction = node.system_instruction or None,
            temperature        = self._temperature,
        )

        try:
            response = self._client_for(node).models.generate_content(
                model    = node.model,
                contents = contents,
                config   = config,
            )
        except genai_errors.ClientError as e:
            if e.code == 429:
                logger.warning("Gemini 429 en nodo %s: %s", node.label, e.message)
                raise RateLimitedError(str(e)) from e
            raise
        except (genai_errors.ServerError, httpx.TransportError) as e:
            logger.warning("Gemini no disponible en nodo %s: %s", node.label, e)
            raise UpstreamUnavailableError(str(e)) from e

        usage = response.usage_metadata
        return ModelResponse(
            text          = response.text or "",
            node_id       = node.id,
            node_label    = node.label,
            model_used    = node.model,
            tokens_input  = (usage.prompt_token_count or 0) if usage else 0,
            tokens_output = (usage.candidates_token_count or 0) if usage else 0,
        )

    def _client_for(self, node: Node) -> genai.Client:
        with self._lock:
            client = self._clients.get(node.credential)
            if client is None:
                client = genai.Client(
                    api_key      = node.credential,
                    http_options = types.HttpOptions(timeout=self._timeout_ms),
                )
                self._clients[node.credential] = client
            return client
