# keyrouter/config_loader.py
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from keyrouter.errors import InvalidConfigError
from keyrouter.pool.models import PoolPolicy

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = Path.home() / ".keyrouter" / "config.yaml"

_POLICY_FIELDS = (
    "failure_threshold",
    "base_cooldown_seconds",
    "rate_limit_multiplier",
    "auto_throttle_ratio",
    "reconcile_interval_seconds",
    "default_budget",
    "tie_break_jitter",
)


@dataclass
class NodeSeed:
    """Nodo declarado en el YAML. Solo se usa si el storage está vacío."""
    credential:         str
    label:              Optional[str] = None
    budget:             Optional[int] = None
    model:              Optional[str] = None
    system_instruction: Optional[str] = None


@dataclass
class AppConfig:
    policy:          PoolPolicy     = field(default_factory=PoolPolicy)
    auto_throttle:   bool           = False
    default_model:   str            = "gemini-1.5-flash"
    history_turns:   int            = 10
    max_attempts:    int            = 2
    timeout_seconds: float          = 60
    nodes:           list[NodeSeed] = field(default_factory=list)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Carga la configuración desde YAML.
    Si el archivo no existe devuelve los defaults: el pool puede
    administrarse entero desde el CLI sin config.
    Resuelve variables de entorno en las credenciales (${VAR}).
    """
    path = Path(config_path or os.environ.get("KEYROUTER_CONFIG_PATH") or _DEFAULT_CONFIG_PATH)

    if not path.exists():
        if config_path:
            raise FileNotFoundError(f"Config no encontrada en {path}")
        return AppConfig()

    with path.open(encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    pool_raw = raw.get("pool") or {}
    policy   = PoolPolicy(**{k: pool_raw[k] for k in _POLICY_FIELDS if k in pool_raw})
    validate_policy(policy)

    config = AppConfig(
        policy          = policy,
        auto_throttle   = bool(pool_raw.get("auto_throttle", False)),
        default_model   = pool_raw.get("default_model", "gemini-1.5-flash"),
        history_turns   = int(pool_raw.get("history_turns", 10)),
        max_attempts    = int(pool_raw.get("max_attempts", 2)),
        timeout_seconds = float(pool_raw.get("timeout_seconds", 60)),
    )
    if config.max_attempts < 1:
        raise InvalidConfigError("pool.max_attempts debe ser al menos 1")

    for entry in raw.get("nodes") or []:
        credential = _resolve_env(entry.get("credential"))
        if not credential:
            logger.warning(
                "Nodo %s sin credencial en el config, omitiendo",
                entry.get("label", "?"),
            )
            continue
        config.nodes.append(NodeSeed(
            credential         = credential,
            label              = entry.get("label"),
            budget             = entry.get("budget"),
            model              = entry.get("model"),
            system_instruction = entry.get("system_instruction"),
        ))

    return config


def validate_policy(policy: PoolPolicy) -> None:
    if policy.failure_threshold < 1:
        raise InvalidConfigError("pool.failure_threshold debe ser al menos 1")
    if policy.base_cooldown_seconds <= 0 or policy.rate_limit_multiplier <= 0:
        raise InvalidConfigError("El cooldown debe ser positivo")
    if not 0 < policy.auto_throttle_ratio <= 1:
        raise InvalidConfigError("pool.auto_throttle_ratio debe estar en (0, 1]")
    if policy.reconcile_interval_seconds <= 0:
        raise InvalidConfigError("pool.reconcile_interval_seconds debe ser positivo")
    if policy.default_budget <= 0:
        raise InvalidConfigError("pool.default_budget debe ser positivo")
    if policy.tie_break_jitter < 0:
        raise InvalidConfigError("pool.tie_break_jitter no puede ser negativo")


def _resolve_env(value: Optional[str]) -> Optional[str]:
    """Expande ${VAR_NAME} desde el entorno."""
    if not value or not value.startswith("${"):
        return value
    var_name = value.strip("${}").strip()
    return os.environ.get(var_name)
