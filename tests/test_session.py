"""Session wiring, loaded-network tracking, and the CLI runner."""

import json

import pytest

import main
from network_graph.builder import REFERENCE_SCHEMA, ReferenceNetworkBuilder
from network_graph.collection import JsonFileStorage, MemoryStorage
from network_graph.ontology import OnParentDeleted, Scope
from network_graph.session import NetworkSession, SessionConfig


@pytest.fixture
def saved_network(tmp_path):
    session = NetworkSession()
    ReferenceNetworkBuilder(session.graph).build_reference_network()
    target = tmp_path / "teesside"
    session.save_directory(target)
    return target


def test_default_session_is_in_memory():
    session = NetworkSession()
    assert isinstance(session.store.storage, MemoryStorage)
    assert session.graph.on_parent_deleted == OnParentDeleted.ORPHAN
    assert session.registry is None
    assert session.resolver.graph is session.graph


def test_sessions_do_not_share_state():
    first, second = NetworkSession(), NetworkSession()
    ReferenceNetworkBuilder(first.graph).build_reference_network()
    assert len(second.graph.nodes) == 0


def test_config_drives_backend_policy_and_schema(tmp_path):
    schema = tmp_path / "schema.json"
    schema.write_text(json.dumps(REFERENCE_SCHEMA), encoding="utf-8")
    session = NetworkSession(SessionConfig(
        storage_dir=str(tmp_path / "store"), on_parent_deleted="cascade", schema_path=str(schema),
    ))
    assert isinstance(session.store.storage, JsonFileStorage)
    assert session.graph.on_parent_deleted == OnParentDeleted.CASCADE
    assert "Pipe" in session.registry


def test_collections_survive_a_new_session(tmp_path):
    config = SessionConfig(storage_dir=str(tmp_path))
    ReferenceNetworkBuilder(NetworkSession(config).graph).build_reference_network()

    reopened = NetworkSession(config)
    assert reopened.graph.stats()["blocks"] == 12
    assert reopened.resolver.resolve("phase", "branch-1/blocks/0").value == "gas"


def test_load_directory_tracks_the_network(saved_network):
    session = NetworkSession()
    assert session.load_directory(saved_network) is not None
    assert session.network_id == "teesside"
    assert session.is_network_loaded("teesside")

    assert session.load_directory(saved_network) is None
    assert session.load_directory(saved_network, force_reload=True) is not None


def test_reload_discards_unsaved_edits(saved_network):
    session = NetworkSession()
    session.load_directory(saved_network)
    session.graph.remove_node("branch-4")

    session.reload()

    assert session.graph.has_node("branch-4")


def test_save_defaults_to_the_source_directory(saved_network):
    session = NetworkSession()
    session.load_directory(saved_network)
    session.graph.set_default("currency", "EUR")

    changed = session.save_directory()

    assert [p.name for p in changed] == ["config.json"]


def test_reload_without_source_fails():
    with pytest.raises(RuntimeError):
        NetworkSession().reload()


def test_query_and_payload(saved_network):
    session = NetworkSession()
    session.load_directory(saved_network)
    assert session.run_query("branch-2/blocks[type=Compressor]/0/pressure").value == "110 bar"
    assert len(session.operation_payload()["network"]["branches"]) == 4


# ── CLI ──────────────────────────────────────────────

def test_cli_reference_resolve(capsys):
    code = main.main(["--reference", "--resolve", "phase", "--block", "branch-4/blocks/0",
                      "--log-level", "WARNING"])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["value"] == "dense" and out["scope"] == Scope.GLOBAL.value


def test_cli_aggregate(capsys):
    code = main.main(["--reference", "--aggregate", "electrical_power", "--scope", "group",
                      "--path", "group-1", "--log-level", "WARNING"])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["requiredInBlockTypes"] == ["Compressor"]
    assert len(out["affectedBlockPaths"]) == 5


def test_cli_export_and_load(tmp_path, capsys):
    target = tmp_path / "net"
    assert main.main(["--reference", "--export", str(target), "--log-level", "WARNING"]) == 0
    assert (target / "config.json").exists()

    code = main.main(["--network", str(target), "--query", "edges[target=branch-3]",
                      "--log-level", "WARNING"])
    assert code == 0
    edges = json.loads(capsys.readouterr().out)
    assert sorted(e["source"] for e in edges) == ["branch-1", "branch-2"]


def test_cli_reports_bad_queries(capsys):
    assert main.main(["--reference", "--query", "branch-1/blocks/x", "--log-level", "ERROR"]) == 1


def test_cli_needs_a_source():
    with pytest.raises(SystemExit):
        main.main([])
