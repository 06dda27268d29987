# keyrouter/factory.py
import logging
from typing import Optional

from keyrouter.config_loader import AppConfig, load_config
from keyrouter.pool.pool import NodePool
from keyrouter.router.base import BaseAdapter
from keyrouter.router.dispatcher import Dispatcher
from keyrouter.storage.repository import Repository

logger = logging.getLogger(__name__)


class PoolSession:
    """
    Pool + storage + config ensamblados. Punto de entrada único para el CLI
    y los tests de integración.

    Carga el estado guardado al abrirse; save() lo vuelca de vuelta.
    """

    def __init__(
        self,
        db_path:     Optional[str] = None,
        config_path: Optional[str] = None,
    ):
        self.config = load_config(config_path)
        self.repo   = Repository(db_path=db_path)
        self.pool   = build_pool(self.repo, self.config)

    def dispatcher(self, adapter: Optional[BaseAdapter] = None) -> Dispatcher:
        return build_dispatcher(self.pool, self.config, adapter)

    def save(self) -> None:
        self.repo.save_pool_state(self.pool.to_state())

    def close(self) -> None:
        self.pool.close()
        self.repo.close()

    def __enter__(self) -> "PoolSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def build_pool(repo: Repository, config: AppConfig) -> NodePool:
    """
    Si hay estado guardado lo restaura; si no, siembra los nodos
    declarados en el config (primer arranque).
    """
    pool = NodePool(
        policy        = config.policy,
        auto_throttle = config.auto_throttle,
        default_model = config.default_model,
    )

    state = repo.load_pool_state()
    if state is not None:
        pool.load_state(state)
        return pool

    for seed in config.nodes:
        pool.add_node(
            seed.credential,
            label              = seed.label,
            budget             = seed.budget,
            model              = seed.model,
            system_instruction = seed.system_instruction,
        )
    if config.nodes:
        logger.info("Pool sembrado desde config con %d nodos", len(config.nodes))
    return pool


def build_dispatcher(
    pool:    NodePool,
    config:  AppConfig,
    adapter: Optional[BaseAdapter] = None,
) -> Dispatcher:
    if adapter is None:
        # Import diferido: el SDK solo hace falta para hablar con el upstream
        from keyrouter.router.gemini import GeminiAdapter
        adapter = GeminiAdapter(timeout_seconds=config.timeout_seconds)

    return Dispatcher(
        pool          = pool,
        adapter       = adapter,
        max_attempts  = config.max_attempts,
        history_turns = config.history_turns,
    )
