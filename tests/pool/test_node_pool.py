# tests/pool/test_node_pool.py
import json
import random
import threading
from unittest.mock import MagicMock

import pytest

from keyrouter.errors import InvalidConfigError, NodeNotFoundError, PoolExhaustedError
from keyrouter.pool.models import DispatchOutcome, NodeState
from keyrouter.pool.pool import NodePool
from keyrouter.pool.serialization import state_from_json, state_to_json


def drive_usage(pool, node_id, n):
    for _ in range(n):
        pool.report_outcome(node_id, DispatchOutcome.SUCCESS)


# ------------------------------------------------------------------
# Escenarios de punta a punta
# ------------------------------------------------------------------

class TestEscenarios:

    def test_elige_el_menos_usado(self, pool):
        a = pool.add_node("key-a", label="A", budget=10)
        b = pool.add_node("key-b", label="B", budget=10)
        drive_usage(pool, b, 5)

        assert pool.select_node().id == a

    def test_rate_limit_excluye_300_segundos(self, pool, clock):
        node_id = pool.add_node("key-a", budget=10)
        pool.report_outcome(node_id, DispatchOutcome.RATE_LIMITED)

        with pytest.raises(PoolExhaustedError):
            pool.select_node()

        clock.advance(299)
        pool.reconcile()
        with pytest.raises(PoolExhaustedError):
            pool.select_node()

        clock.advance(1)
        released = pool.reconcile()

        assert [n.id for n in released] == [node_id]
        assert pool.get(node_id).state(clock()) is NodeState.ACTIVE
        assert pool.select_node().id == node_id

    def test_tres_fallos_cooldown_60_y_cuarto_fallo_no_lo_mueve(self, pool, clock):
        node_id = pool.add_node("key-a")
        for _ in range(3):
            pool.report_outcome(node_id, DispatchOutcome.FAILURE)

        node = pool.get(node_id)
        assert node.cooldown_until == clock() + 60

        clock.advance(30)
        pool.report_outcome(node_id, DispatchOutcome.FAILURE)

        assert pool.get(node_id).cooldown_until == node.cooldown_until
        with pytest.raises(PoolExhaustedError):
            pool.select_node()

    def test_auto_throttle_agota_pool_de_un_nodo(self, pool):
        pool.set_auto_throttle_enabled(True)
        node_id = pool.add_node("key-a", budget=100)

        drive_usage(pool, node_id, 90)

        node = pool.get(node_id)
        assert node.usage_count == 90
        assert node.enabled is False
        with pytest.raises(PoolExhaustedError):
            pool.select_node()

    def test_todos_fuera_de_rotacion(self, pool):
        a = pool.add_node("key-a", budget=2)
        b = pool.add_node("key-b", budget=2)
        pool.set_enabled(a, False)
        drive_usage(pool, b, 2)

        with pytest.raises(PoolExhaustedError):
            pool.select_node()

    def test_nunca_devuelve_nodo_sin_budget(self, clock):
        pool = NodePool(clock=clock, rng=random.Random())
        ids = [pool.add_node(f"key-{i}", budget=5) for i in range(3)]

        served = 0
        while True:
            try:
                node = pool.select_node()
            except PoolExhaustedError:
                break
            assert node.usage_count < node.budget
            pool.report_outcome(node.id, DispatchOutcome.SUCCESS)
            served += 1

        assert served == 15
        assert all(pool.get(i).usage_count == 5 for i in ids)

    def test_subir_budget_no_rehabilita_nodo_throttled(self, pool):
        pool.set_auto_throttle_enabled(True)
        node_id = pool.add_node("key-a", budget=10)
        drive_usage(pool, node_id, 9)

        node = pool.update_config(node_id, budget=100)

        assert node.enabled is False
        with pytest.raises(PoolExhaustedError):
            pool.select_node()

        pool.set_enabled(node_id, True)
        assert pool.select_node().id == node_id

    def test_reenable_no_resetea_uso(self, pool):
        pool.set_auto_throttle_enabled(True)
        node_id = pool.add_node("key-a", budget=10)
        drive_usage(pool, node_id, 9)
        assert pool.get(node_id).enabled is False

        node = pool.set_enabled(node_id, True)

        assert node.usage_count == 9
        assert pool.select_node().id == node_id


# ------------------------------------------------------------------
# Superficie administrativa
# ------------------------------------------------------------------

class TestAdministracion:

    def test_errores_se_propagan(self, pool):
        with pytest.raises(InvalidConfigError):
            pool.add_node("")
        with pytest.raises(NodeNotFoundError):
            pool.update_config("no-existe", label="x")
        with pytest.raises(NodeNotFoundError):
            pool.set_enabled("no-existe", True)

    def test_report_outcome_de_nodo_eliminado_se_descarta(self, pool):
        node_id = pool.add_node("key-a")
        pool.remove_node(node_id)

        assert pool.report_outcome(node_id, DispatchOutcome.SUCCESS) is None
        assert len(pool) == 0

    def test_subscribe_recibe_eventos(self, pool):
        listener = MagicMock()
        unsubscribe = pool.subscribe(listener)

        node_id = pool.add_node("key-a")
        pool.report_outcome(node_id, DispatchOutcome.RATE_LIMITED)
        unsubscribe()
        pool.remove_node(node_id)

        events = [c.args[0] for c in listener.call_args_list]
        assert events == ["added", "outcome:rate_limited"]
        nodes = listener.call_args_list[-1].args[1]
        assert nodes[0].cooldown_until is not None

    def test_listener_que_falla_no_rompe_la_mutacion(self, pool):
        pool.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        node_id = pool.add_node("key-a")
        assert node_id in [n.id for n in pool.list()]

    def test_reconciler_como_context_manager(self, clock):
        with NodePool(clock=clock) as pool:
            assert pool._reconciler.is_running
        assert not pool._reconciler.is_running


# ------------------------------------------------------------------
# Estado persistible
# ------------------------------------------------------------------

class TestEstado:

    def test_round_trip_preserva_todo(self, pool, clock):
        pool.set_auto_throttle_enabled(True)
        a = pool.add_node("key-a", label="A", budget=10, model="m1",
                          system_instruction="Sé breve.")
        b = pool.add_node("key-b", label="B", budget=20)
        drive_usage(pool, a, 3)
        pool.report_outcome(b, DispatchOutcome.RATE_LIMITED)
        pool.set_enabled(a, False)

        restored = NodePool.from_state(pool.to_state(), clock=clock)

        assert restored.list() == pool.list()
        assert restored.auto_throttle_enabled is True

    def test_round_trip_json(self, pool):
        a = pool.add_node("key-a", budget=10)
        pool.report_outcome(a, DispatchOutcome.SUCCESS)

        raw = state_to_json(pool.list(), pool.auto_throttle_enabled)
        nodes, auto = state_from_json(raw)

        assert nodes == pool.list()
        assert auto is False

    def test_shape_persistido(self, pool):
        pool.add_node("key-a", budget=10)
        node = pool.to_state()["nodes"][0]

        assert set(node) == {
            "id", "credential", "label", "model", "systemInstruction", "budget",
            "usageCount", "enabled", "consecutiveFailures", "cooldownUntil", "lastUsed",
        }
        assert node["cooldownUntil"] is None
        json.dumps(pool.to_state())

    def test_estado_invalido_no_muta(self, pool):
        pool.add_node("key-a")
        before = pool.list()
        state = pool.to_state()
        state["nodes"][0]["budget"] = 0

        with pytest.raises(InvalidConfigError):
            pool.load_state(state)
        assert pool.list() == before

    @pytest.mark.parametrize("value", ["false", 0, None])
    def test_enabled_no_booleano_se_rechaza(self, pool, value):
        pool.add_node("key-a")
        before = pool.list()
        state = pool.to_state()
        state["nodes"][0]["enabled"] = value

        with pytest.raises(InvalidConfigError):
            pool.load_state(state)
        assert pool.list() == before

    def test_auto_throttle_no_booleano_se_rechaza(self):
        raw = json.dumps({"autoThrottle": "false", "nodes": []})

        with pytest.raises(InvalidConfigError):
            state_from_json(raw)

    def test_json_invalido(self):
        with pytest.raises(InvalidConfigError):
            state_from_json("{no es json")


# ------------------------------------------------------------------
# Concurrencia
# ------------------------------------------------------------------

class TestConcurrencia:

    def test_registros_concurrentes_no_pierden_actualizaciones(self, clock):
        pool = NodePool(clock=clock)
        node_id = pool.add_node("key-a", budget=10_000)

        def worker():
            drive_usage(pool, node_id, 200)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert pool.get(node_id).usage_count == 1600
