# pool/serialization.py
import json
from typing import Any, Optional

from keyrouter.errors import InvalidConfigError
from keyrouter.pool.models import Node

# Claves del estado persistido, mismo shape que consume el storage externo
_NODE_KEYS = {
    "id":                   "id",
    "credential":           "credential",
    "label":                "label",
    "model":                "model",
    "system_instruction":   "systemInstruction",
    "budget":               "budget",
    "usage_count":          "usageCount",
    "enabled":              "enabled",
    "consecutive_failures": "consecutiveFailures",
    "cooldown_until":       "cooldownUntil",
    "last_used":            "lastUsed",
}

_OPTIONAL_KEYS = {"systemInstruction", "cooldownUntil", "lastUsed"}


def node_to_dict(node: Node) -> dict[str, Any]:
    return {key: getattr(node, attr) for attr, key in _NODE_KEYS.items()}


def node_from_dict(data: dict[str, Any]) -> Node:
    missing = [
        key for key in _NODE_KEYS.values()
        if key not in data and key not in _OPTIONAL_KEYS
    ]
    if missing:
        raise InvalidConfigError(f"Estado de nodo incompleto, faltan: {', '.join(missing)}")

    usage    = data["usageCount"]
    failures = data["consecutiveFailures"]
    if usage < 0 or failures < 0:
        raise InvalidConfigError(
            f"Contadores negativos en el nodo {data['id']}: usage={usage}, failures={failures}"
        )

    return Node(
        id                   = str(data["id"]),
        credential           = data["credential"],
        label                = data["label"],
        model                = data["model"],
        system_instruction   = data.get("systemInstruction"),
        budget               = data["budget"],
        usage_count          = int(usage),
        enabled              = _strict_bool(data["enabled"], "enabled"),
        consecutive_failures = int(failures),
        cooldown_until       = _optional_float(data.get("cooldownUntil")),
        last_used            = _optional_float(data.get("lastUsed")),
    )


def state_to_dict(nodes: list[Node], auto_throttle: bool) -> dict[str, Any]:
    return {
        "autoThrottle": auto_throttle,
        "nodes":        [node_to_dict(n) for n in nodes],
    }


def state_from_dict(data: dict[str, Any]) -> tuple[list[Node], bool]:
    if not isinstance(data, dict):
        raise InvalidConfigError("El estado del pool debe ser un objeto")
    nodes = [node_from_dict(n) for n in data.get("nodes", [])]
    return nodes, _strict_bool(data.get("autoThrottle", False), "autoThrottle")


def state_to_json(nodes: list[Node], auto_throttle: bool) -> str:
    return json.dumps(state_to_dict(nodes, auto_throttle), ensure_ascii=False, indent=2)


def state_from_json(raw: str) -> tuple[list[Node], bool]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Estado del pool no es JSON válido: {e}") from e
    return state_from_dict(data)


def _strict_bool(value, key: str) -> bool:
    # "false" en JSON sería truthy con bool()
    if not isinstance(value, bool):
        raise InvalidConfigError(f"{key} debe ser booleano: {value!r}")
    return value


def _optional_float(value) -> Optional[float]:
    return None if value is None else float(value)
