# storage/__init__.py
from keyrouter.storage.repository import Repository

__all__ = ["Repository"]
