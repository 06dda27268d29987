# keyrouter/cli.py
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from dotenv import load_dotenv

from keyrouter.errors import InvalidConfigError, NodeNotFoundError, PoolExhaustedError
from keyrouter.factory import PoolSession
from keyrouter.pool.models import NodeState, usage_ratio
from keyrouter.pool.serialization import state_from_json, state_to_json, state_to_dict
from keyrouter.router.base import UpstreamUnavailableError
from keyrouter.router.models import ChatTurn, Role


# Carga .env una sola vez, antes que cualquier otra cosa
load_dotenv()


# ------------------------------------------------------------------
# Grupo raíz
# ------------------------------------------------------------------

@click.group()
@click.version_option(package_name="keyrouter")
@click.option("--db", "db_path", default=None, envvar="KEYROUTER_DB_PATH",
              help="Ruta a la base SQLite del pool.")
@click.option("--config", "config_path", default=None,
              type=click.Path(exists=False),
              help="Ruta al config.yaml (por defecto ~/.keyrouter/config.yaml).")
@click.option("--verbose", "-v", is_flag=True, help="Logging detallado.")
@click.pass_context
def main(ctx, db_path, config_path, verbose):
    """
    keyrouter: pool de credenciales para APIs generativas con rate limit.

    Reparte los requests entre varias API keys, retira de rotación las
    que fallan o se acercan a su budget y las devuelve solas al expirar
    el cooldown.
    """
    logging.basicConfig(
        level  = logging.DEBUG if verbose else logging.WARNING,
        format = "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db_path": db_path, "config_path": config_path}


# ------------------------------------------------------------------
# keyrouter nodes ...
# ------------------------------------------------------------------

@main.group()
def nodes():
    """Administra los nodos (credenciales) del pool."""


@nodes.command("add")
@click.option("--credential", "-k", required=True, help="API key del nodo.")
@click.option("--label", "-l", default=None, help="Nombre visible (por defecto 'Key N').")
@click.option("--budget", "-b", type=int, default=None,
              help="Requests permitidos antes de excluir el nodo (default del config).")
@click.option("--model", "-m", default=None, help="Modelo asignado al nodo.")
@click.option("--system", "system_instruction", default=None,
              help="System instruction opcional.")
@click.pass_obj
def add_node(obj, credential, label, budget, model, system_instruction):
    """Añade un nodo nuevo al pool."""
    with _session(obj) as session:
        node_id = _run(lambda: session.pool.add_node(
            credential,
            label              = label,
            budget             = budget,
            model              = model,
            system_instruction = system_instruction,
        ))
        session.save()
        node = session.pool.get(node_id)

    click.echo(f"[keyrouter] ✓ Nodo añadido: {node.label} ({node.id}) {node.masked_credential}")


@nodes.command("list")
@click.pass_obj
def list_nodes(obj):
    """Lista los nodos con su estado y consumo."""
    with _session(obj) as session:
        session.pool.reconcile()
        pool_nodes = session.pool.list()
        now        = session.pool.now()
        auto       = session.pool.auto_throttle_enabled
        critical   = session.pool.policy.auto_throttle_ratio
        session.save()

    if not pool_nodes:
        click.echo("[keyrouter] Pool vacío. Usa 'keyrouter nodes add' para empezar.")
        return

    click.echo(f"[keyrouter] Auto-throttle: {'on' if auto else 'off'}")
    click.echo("─" * 78)
    for node in pool_nodes:
        click.echo(_format_node(node, now, critical))
    click.echo("─" * 78)


@nodes.command("remove")
@click.argument("node_id")
@click.option("--strict", is_flag=True, help="Error si el nodo no existe.")
@click.pass_obj
def remove_node(obj, node_id, strict):
    """Elimina un nodo del pool."""
    with _session(obj) as session:
        removed = _run(lambda: session.pool.remove_node(node_id, strict=strict))
        session.save()

    if removed:
        click.echo(f"[keyrouter] ✓ Nodo {node_id} eliminado")
    else:
        click.echo(f"[keyrouter] Nodo {node_id} no existe, sin cambios")


@nodes.command("update")
@click.argument("node_id")
@click.option("--label", "-l", default=None)
@click.option("--budget", "-b", type=int, default=None)
@click.option("--model", "-m", default=None)
@click.option("--system", "system_instruction", default=None)
@click.pass_obj
def update_node(obj, node_id, label, budget, model, system_instruction):
    """Cambia label, budget, modelo o system instruction de un nodo."""
    fields = {
        key: value
        for key, value in {
            "label":              label,
            "budget":             budget,
            "model":              model,
            "system_instruction": system_instruction,
        }.items()
        if value is not None
    }
    if not fields:
        _abort("Nada que actualizar: indica al menos una opción.")

    with _session(obj) as session:
        node = _run(lambda: session.pool.update_config(node_id, **fields))
        session.save()

    click.echo(f"[keyrouter] ✓ Nodo {node.label} actualizado")


@nodes.command("enable")
@click.argument("node_id")
@click.pass_obj
def enable_node(obj, node_id):
    """Vuelve a poner un nodo en rotación (limpia cooldown y fallos)."""
    _set_enabled(obj, node_id, True)


@nodes.command("disable")
@click.argument("node_id")
@click.pass_obj
def disable_node(obj, node_id):
    """Saca un nodo de rotación manualmente."""
    _set_enabled(obj, node_id, False)


def _set_enabled(obj, node_id: str, enabled: bool) -> None:
    with _session(obj) as session:
        node = _run(lambda: session.pool.set_enabled(node_id, enabled))
        session.save()

    estado = "online" if enabled else "offline"
    click.echo(f"[keyrouter] ✓ Nodo {node.label} {estado}")


# ------------------------------------------------------------------
# keyrouter auto-throttle / reconcile
# ------------------------------------------------------------------

@main.command("auto-throttle")
@click.argument("mode", type=click.Choice(["on", "off"], case_sensitive=False))
@click.pass_obj
def auto_throttle(obj, mode):
    """Activa o desactiva la retirada automática de nodos al 90% del budget."""
    with _session(obj) as session:
        session.pool.set_auto_throttle_enabled(mode.lower() == "on")
        session.save()

    click.echo(f"[keyrouter] ✓ Auto-throttle {mode.lower()}")


@main.command()
@click.pass_obj
def reconcile(obj):
    """Libera los cooldowns expirados ahora mismo."""
    with _session(obj) as session:
        released = session.pool.reconcile()
        session.save()

    if not released:
        click.echo("[keyrouter] Ningún cooldown expirado")
    for node in released:
        click.echo(f"[keyrouter] ✓ Nodo {node.label} vuelve a rotación")


# ------------------------------------------------------------------
# keyrouter ask / chat
# ------------------------------------------------------------------

@main.command()
@click.argument("prompt")
@click.pass_obj
def ask(obj, prompt):
    """Envía un prompt usando el nodo menos cargado del pool."""
    with _session(obj) as session:
        dispatcher = session.dispatcher()
        session.pool.reconcile()
        try:
            response = _send(dispatcher, prompt, [])
        finally:
            session.save()

    click.echo(response.text)
    click.echo(
        click.style(
            f"[keyrouter] nodo {response.node_label} | {response.model_used} | "
            f"tokens {response.tokens_input}+{response.tokens_output}",
            fg="bright_black",
        ),
        err=True,
    )


@main.command()
@click.pass_obj
def chat(obj):
    """Conversación interactiva. Línea vacía o Ctrl-D para salir."""
    history: list[ChatTurn] = []

    with _session(obj) as session:
        dispatcher = session.dispatcher()
        session.pool.start()
        try:
            while True:
                prompt = click.prompt("tú", default="", show_default=False)
                if not prompt.strip():
                    break
                response = _send(dispatcher, prompt, history)
                history.append(ChatTurn(Role.USER, prompt))
                history.append(ChatTurn(Role.MODEL, response.text))
                click.echo(f"[{response.node_label}] {response.text}")
                session.save()
        except (EOFError, click.Abort):
            click.echo("")
        finally:
            session.save()


def _send(dispatcher, prompt: str, history: list[ChatTurn]):
    try:
        return dispatcher.send(prompt, history)
    except PoolExhaustedError as e:
        _error(
            f"Sin nodos disponibles. {e}\n"
            f"Espera a que expiren los cooldowns o habilita nodos con "
            f"'keyrouter nodes enable'."
        )
        sys.exit(2)
    except UpstreamUnavailableError as e:
        _error(
            f"El upstream no respondió. {e}\n"
            f"Quedan nodos en rotación: reintenta el comando."
        )
        sys.exit(1)
    except Exception as e:
        _error(f"Error inesperado: {type(e).__name__}: {e}")
        sys.exit(1)


# ------------------------------------------------------------------
# keyrouter export / import
# ------------------------------------------------------------------

@main.command("export")
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.pass_obj
def export_state(obj, path):
    """Exporta el estado del pool a JSON (incluye credenciales)."""
    with _session(obj) as session:
        nodes_ = session.pool.list()
        raw    = state_to_json(nodes_, session.pool.auto_throttle_enabled)

    Path(path).write_text(raw, encoding="utf-8")
    click.echo(f"[keyrouter] ✓ {len(nodes_)} nodos exportados a {path}")


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_state(obj, path):
    """Reemplaza el pool con el estado de un JSON exportado."""
    raw = Path(path).read_text(encoding="utf-8")
    nodes_, auto = _run(lambda: state_from_json(raw))

    with _session(obj) as session:
        _run(lambda: session.pool.load_state(state_to_dict(nodes_, auto)))
        session.save()

    click.echo(f"[keyrouter] ✓ {len(nodes_)} nodos importados")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _session(obj) -> PoolSession:
    try:
        return PoolSession(db_path=obj["db_path"], config_path=obj["config_path"])
    except (FileNotFoundError, InvalidConfigError) as e:
        _abort(str(e))


def _run(operation):
    """Errores de configuración o ids inexistentes son culpa del usuario."""
    try:
        return operation()
    except (InvalidConfigError, NodeNotFoundError) as e:
        _abort(str(e))


def _format_node(node, now: float, critical_ratio: float) -> str:
    state = node.state(now)
    if state is NodeState.COOLING_DOWN:
        remaining = int(node.cooldown_until - now)
        status = click.style(f"COOLDOWN {remaining}s", fg="red")
    elif state is NodeState.DISABLED:
        status = click.style("OFFLINE", fg="bright_black")
    elif usage_ratio(node) >= critical_ratio:
        status = click.style("CRITICAL", fg="yellow")
    else:
        status = click.style("ONLINE", fg="green")

    last_used = (
        datetime.fromtimestamp(node.last_used).strftime("%H:%M:%S")
        if node.last_used else "-"
    )
    return (
        f"{node.id:<12}  {node.label:<14.14}  {node.masked_credential:<8}  "
        f"{node.usage_count:>5}/{node.budget:<5}  fallos {node.consecutive_failures}  "
        f"{node.model:<18.18}  {last_used:<8}  {status}"
    )


def _abort(message: str) -> None:
    """Error de validación, culpa del usuario."""
    click.echo(click.style(f"[keyrouter] Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _error(message: str) -> None:
    """Error de sistema, no es culpa del usuario."""
    click.echo(click.style(f"[keyrouter] {message}", fg="red"), err=True)
