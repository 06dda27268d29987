# tests/test_cli.py
import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from keyrouter.cli import main
from keyrouter.router.base import RateLimitedError, UpstreamUnavailableError
from keyrouter.router.models import ModelResponse
from keyrouter.storage.repository import Repository


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------

@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch) -> str:
    """DB aislada por test y sin config de usuario."""
    monkeypatch.setenv("KEYROUTER_CONFIG_PATH", str(tmp_path / "sin-config.yaml"))
    return str(tmp_path / "keyrouter.db")


def invoke(runner, db_path, *args, **kwargs):
    return runner.invoke(main, ["--db", db_path, *args], **kwargs)


def stored_nodes(db_path) -> list[dict]:
    repo = Repository(db_path=db_path)
    try:
        state = repo.load_pool_state()
    finally:
        repo.close()
    return state["nodes"] if state else []


def add_node(runner, db_path, credential="AIza-secret-1234", *extra) -> str:
    result = invoke(runner, db_path, "nodes", "add", "-k", credential, *extra)
    assert result.exit_code == 0, result.output
    return stored_nodes(db_path)[-1]["id"]


class FakeAdapter:

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls  = []

    def generate(self, node, prompt, history=()):
        self.calls.append((node.id, prompt, list(history)))
        if self.errors:
            raise self.errors.pop(0)
        return ModelResponse(
            text=f"eco: {prompt}", node_id=node.id, node_label=node.label,
            model_used=node.model, tokens_input=5, tokens_output=2,
        )


# ------------------------------------------------------------------
# keyrouter nodes
# ------------------------------------------------------------------

class TestNodes:

    def test_add_y_list(self, runner, db_path):
        add_node(runner, db_path, "AIza-secret-1234", "-l", "principal", "-b", "10")

        result = invoke(runner, db_path, "nodes", "list")

        assert result.exit_code == 0
        assert "principal" in result.output
        assert "0/10" in result.output
        assert "****1234" in result.output
        assert "AIza-secret" not in result.output

    def test_add_budget_invalido(self, runner, db_path):
        result = invoke(runner, db_path, "nodes", "add", "-k", "key", "-b", "0")
        assert result.exit_code == 1
        assert "budget" in result.output.lower()
        assert stored_nodes(db_path) == []

    def test_list_vacio(self, runner, db_path):
        result = invoke(runner, db_path, "nodes", "list")
        assert "vacío" in result.output.lower()

    def test_list_critical_usa_el_umbral_configurado(self, runner, db_path, tmp_path, monkeypatch):
        add_node(runner, db_path, "AIza-secret-1234", "-b", "10")
        repo = Repository(db_path=db_path)
        state = repo.load_pool_state()
        state["nodes"][0]["usageCount"] = 5
        repo.save_pool_state(state)
        repo.close()

        assert "CRITICAL" not in invoke(runner, db_path, "nodes", "list").output

        config = tmp_path / "umbral.yaml"
        config.write_text("pool:\n  auto_throttle_ratio: 0.5\n", encoding="utf-8")
        monkeypatch.setenv("KEYROUTER_CONFIG_PATH", str(config))

        assert "CRITICAL" in invoke(runner, db_path, "nodes", "list").output

    def test_disable_y_enable(self, runner, db_path):
        node_id = add_node(runner, db_path)

        result = invoke(runner, db_path, "nodes", "disable", node_id)
        assert result.exit_code == 0
        assert stored_nodes(db_path)[0]["enabled"] is False

        result = invoke(runner, db_path, "nodes", "enable", node_id)
        assert result.exit_code == 0
        assert stored_nodes(db_path)[0]["enabled"] is True

    def test_enable_id_inexistente(self, runner, db_path):
        result = invoke(runner, db_path, "nodes", "enable", "no-existe")
        assert result.exit_code == 1
        assert "no encontrado" in result.output.lower()

    def test_update(self, runner, db_path):
        node_id = add_node(runner, db_path)

        result = invoke(runner, db_path, "nodes", "update", node_id, "-b", "42", "-l", "nuevo")

        assert result.exit_code == 0
        node = stored_nodes(db_path)[0]
        assert (node["budget"], node["label"]) == (42, "nuevo")

    def test_update_sin_opciones(self, runner, db_path):
        node_id = add_node(runner, db_path)
        result = invoke(runner, db_path, "nodes", "update", node_id)
        assert result.exit_code == 1

    def test_remove_tolerante_y_strict(self, runner, db_path):
        node_id = add_node(runner, db_path)

        assert invoke(runner, db_path, "nodes", "remove", node_id).exit_code == 0
        assert stored_nodes(db_path) == []
        assert invoke(runner, db_path, "nodes", "remove", node_id).exit_code == 0
        assert invoke(runner, db_path, "nodes", "remove", node_id, "--strict").exit_code == 1


# ------------------------------------------------------------------
# keyrouter auto-throttle / ask
# ------------------------------------------------------------------

class TestDispatch:

    def test_auto_throttle_persistido(self, runner, db_path):
        add_node(runner, db_path)
        result = invoke(runner, db_path, "auto-throttle", "on")

        assert result.exit_code == 0
        repo = Repository(db_path=db_path)
        assert repo.load_pool_state()["autoThrottle"] is True
        repo.close()

    def test_ask_usa_el_pool_y_persiste_uso(self, runner, db_path):
        add_node(runner, db_path)
        adapter = FakeAdapter()

        with patch("keyrouter.router.gemini.GeminiAdapter", return_value=adapter):
            result = invoke(runner, db_path, "ask", "hola")

        assert result.exit_code == 0, result.output
        assert "eco: hola" in result.output
        assert stored_nodes(db_path)[0]["usageCount"] == 1

    def test_ask_sin_nodos_sale_con_2(self, runner, db_path):
        with patch("keyrouter.router.gemini.GeminiAdapter", return_value=FakeAdapter()):
            result = invoke(runner, db_path, "ask", "hola")

        assert result.exit_code == 2
        assert "sin nodos disponibles" in result.output.lower()

    def test_ask_rate_limit_persiste_cooldown(self, runner, db_path):
        add_node(runner, db_path)
        adapter = FakeAdapter(RateLimitedError("429"))

        with patch("keyrouter.router.gemini.GeminiAdapter", return_value=adapter):
            result = invoke(runner, db_path, "ask", "hola")

        assert result.exit_code == 2
        assert stored_nodes(db_path)[0]["cooldownUntil"] is not None

    def test_ask_upstream_caido_no_es_pool_agotado(self, runner, db_path):
        add_node(runner, db_path, "AIza-uno-1111")
        add_node(runner, db_path, "AIza-dos-2222")
        adapter = FakeAdapter(UpstreamUnavailableError("503"), UpstreamUnavailableError("503"))

        with patch("keyrouter.router.gemini.GeminiAdapter", return_value=adapter):
            result = invoke(runner, db_path, "ask", "hola")

        assert result.exit_code == 1
        assert "sin nodos disponibles" not in result.output.lower()
        assert "upstream no respondió" in result.output.lower()
        assert len({node_id for node_id, _, _ in adapter.calls}) == 2

    def test_chat_envia_historial(self, runner, db_path):
        add_node(runner, db_path)
        adapter = FakeAdapter()

        with patch("keyrouter.router.gemini.GeminiAdapter", return_value=adapter):
            result = invoke(runner, db_path, "chat", input="uno\ndos\n\n")

        assert result.exit_code == 0, result.output
        assert len(adapter.calls) == 2
        _, prompt, history = adapter.calls[1]
        assert prompt == "dos"
        assert [t.text for t in history] == ["uno", "eco: uno"]
        assert stored_nodes(db_path)[0]["usageCount"] == 2


# ------------------------------------------------------------------
# keyrouter export / import
# ------------------------------------------------------------------

class TestExportImport:

    def test_export_import(self, runner, db_path, tmp_path):
        add_node(runner, db_path, "AIza-uno-1111", "-l", "uno")
        add_node(runner, db_path, "AIza-dos-2222", "-l", "dos")
        exported = tmp_path / "pool.json"

        assert invoke(runner, db_path, "export", str(exported)).exit_code == 0
        data = json.loads(exported.read_text(encoding="utf-8"))
        assert [n["label"] for n in data["nodes"]] == ["uno", "dos"]

        other_db = str(tmp_path / "otra.db")
        result = invoke(runner, other_db, "import", str(exported))

        assert result.exit_code == 0
        assert stored_nodes(other_db) == stored_nodes(db_path)

    def test_import_invalido(self, runner, db_path, tmp_path):
        bad = tmp_path / "malo.json"
        bad.write_text("{no es json", encoding="utf-8")

        result = invoke(runner, db_path, "import", str(bad))

        assert result.exit_code == 1
