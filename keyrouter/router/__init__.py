from keyrouter.router.dispatcher import Dispatcher
from keyrouter.router.base import BaseAdapter, RateLimitedError, UpstreamUnavailableError
from keyrouter.router.models import ChatTurn, ModelResponse, Role

__all__ = [
    "Dispatcher",
    "BaseAdapter",
    "RateLimitedError",
    "UpstreamUnavailableError",
    "ChatTurn",
    "ModelResponse",
    "Role",
]
