# keyrouter/errors.py


class KeyRouterError(Exception):
    """Base de todos los errores propios de keyrouter."""
    pass


class InvalidConfigError(KeyRouterError):
    """Credencial vacía, budget no positivo o política inválida. No muta estado."""
    pass


class NodeNotFoundError(KeyRouterError):
    """La operación referencia un id que no existe en el Registry."""

    def __init__(self, node_id: str):
        super().__init__(f"Nodo no encontrado: {node_id}")
        self.node_id = node_id


class PoolExhaustedError(KeyRouterError):
    """
    Ningún nodo elegible: todos deshabilitados, en cooldown o sin budget.
    El core no reintenta: el Dispatcher decide qué hacer.
    """
    pass
