# pool/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class NodeState(Enum):
    ACTIVE       = "active"
    COOLING_DOWN = "cooling_down"
    DISABLED     = "disabled"


class DispatchOutcome(Enum):
    SUCCESS      = "success"
    FAILURE      = "failure"
    RATE_LIMITED = "rate_limited"


@dataclass
class PoolPolicy:
    """
    Constantes de política del pool.
    Se cargan desde la sección `pool:` del config.yaml.
    """
    failure_threshold:          int   = 3
    base_cooldown_seconds:      float = 60.0
    rate_limit_multiplier:      float = 5.0
    auto_throttle_ratio:        float = 0.90
    reconcile_interval_seconds: float = 5.0
    default_budget:             int   = 1500
    tie_break_jitter:           float = 0.05

    @property
    def rate_limit_cooldown_seconds(self) -> float:
        return self.base_cooldown_seconds * self.rate_limit_multiplier


@dataclass(frozen=True)
class Node:
    """
    Una credencial del pool con su configuración y estado de runtime.

    Inmutable: cada transición construye un Node nuevo con
    dataclasses.replace() y el Registry lo sustituye bajo su lock.
    Así un lector nunca ve una actualización a medias y los snapshots
    que devuelve list() no pueden modificar el pool por la puerta de atrás.
    """
    id:                   str
    credential:           str = field(repr=False)
    label:                str = ""
    model:                str = ""
    budget:               int = 1500
    system_instruction:   Optional[str]   = None
    usage_count:          int             = 0
    consecutive_failures: int             = 0
    enabled:              bool            = True
    cooldown_until:       Optional[float] = None
    last_used:            Optional[float] = None

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def state(self, now: float) -> NodeState:
        if not self.enabled:
            return NodeState.DISABLED
        if self.in_cooldown(now):
            return NodeState.COOLING_DOWN
        return NodeState.ACTIVE

    def is_eligible(self, now: float) -> bool:
        return (
            self.enabled
            and not self.in_cooldown(now)
            and self.usage_count < self.budget
        )

    @property
    def masked_credential(self) -> str:
        return mask_credential(self.credential)


def usage_ratio(node: Node) -> float:
    """usage_count / budget. 0 si el budget no es positivo (no debería pasar)."""
    if node.budget <= 0:
        return 0.0
    return node.usage_count / node.budget


def mask_credential(credential: str) -> str:
    """Nunca se loguea una credencial completa: solo los últimos 4 caracteres."""
    if len(credential) <= 4:
        return "****"
    return f"****{credential[-4:]}"
