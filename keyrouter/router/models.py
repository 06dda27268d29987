# router/models.py
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    USER  = "user"
    MODEL = "model"


@dataclass
class ChatTurn:
    role: Role
    text: str


@dataclass
class ModelResponse:
    text:          str
    node_id:       str
    node_label:    str
    model_used:    str
    tokens_input:  int = 0
    tokens_output: int = 0
    attempts:      int = 1
