"""
Graph model: node edits, parent invariants, delete policies, connections,
block edits, selection queries and bulk load.
"""

import pytest

from network_graph.errors import IndexOutOfRange, InvalidConnection, InvalidNode
from network_graph.graph import NetworkGraph, NetworkSnapshot
from network_graph.ontology import (
    Block, BranchData, Edge, GeographicData, GroupData, Node, NodeKind, OnParentDeleted, Position,
)


def branch(node_id, *blocks, parent=None, x=0.0, y=0.0):
    return Node(id=node_id, kind=NodeKind.BRANCH, position=Position(x, y), parent_id=parent,
                data=BranchData(node_id.upper(), list(blocks)))


def group(node_id, parent=None, x=0.0, y=0.0, **props):
    return Node(id=node_id, kind=NodeKind.GROUP, position=Position(x, y), parent_id=parent,
                data=GroupData(node_id.upper(), props))


# ── Nodes ────────────────────────────────────────────

def test_add_and_read_nodes(graph):
    graph.add_node(group("g1"))
    graph.add_node(branch("b1", Block("Pipe"), parent="g1"))

    assert graph.get_node("b1").parent_id == "g1"
    assert [n.id for n in graph.children_of("g1")] == ["b1"]
    assert graph.stats()["branches"] == 1


def test_duplicate_node_is_rejected(graph):
    graph.add_node(branch("b1"))
    with pytest.raises(InvalidNode):
        graph.add_node(branch("b1"))


def test_parent_must_be_an_existing_group(graph):
    graph.add_node(branch("b1"))
    with pytest.raises(InvalidNode):
        graph.add_node(branch("b2", parent="missing"))
    with pytest.raises(InvalidNode):
        graph.add_node(branch("b3", parent="b1"))
    assert not graph.has_node("b2") and not graph.has_node("b3")


def test_reparenting_into_a_descendant_is_rejected(graph):
    graph.add_node(group("outer"))
    graph.add_node(group("inner", parent="outer"))
    with pytest.raises(InvalidNode):
        graph.update_node("outer", {"parent_id": "inner"})
    with pytest.raises(InvalidNode):
        graph.update_node("outer", {"parent_id": "outer"})
    assert graph.get_node("outer").parent_id is None


def test_update_node_patch_and_callable(graph):
    graph.add_node(group("g1"))
    graph.add_node(branch("b1"))

    graph.update_node("b1", {"position": {"x": 5, "y": 7}, "parent_id": "g1"})
    graph.update_node("b1", lambda draft: setattr(draft.data, "label", "Renamed"))

    node = graph.get_node("b1")
    assert (node.position.x, node.position.y) == (5, 7)
    assert node.parent_id == "g1"
    assert node.label == "Renamed"


def test_id_and_kind_are_immutable(graph):
    graph.add_node(branch("b1"))
    with pytest.raises(InvalidNode):
        graph.update_node("b1", {"id": "b2"})
    with pytest.raises(InvalidNode):
        graph.update_node("b1", {"kind": NodeKind.GROUP})


def test_node_data_must_match_kind():
    with pytest.raises(TypeError):
        Node(id="x", kind=NodeKind.GROUP, data=BranchData())


# ── Delete policies ──────────────────────────────────

def test_remove_branch_removes_every_touching_edge(graph):
    """Deleting b1 with two outgoing and one incoming edge leaves no dangling edge."""
    for node_id in ("b1", "b2", "b3", "b4"):
        graph.add_node(branch(node_id))
    graph.connect("b1", "b2")
    graph.connect("b1", "b3")
    graph.connect("b4", "b1")
    keep = graph.connect("b2", "b3")

    graph.remove_node("b1")

    assert not graph.has_node("b1")
    assert [e.id for e in graph.all_edges()] == [keep.id]
    assert all("b1" not in (e.source, e.target) for e in graph.all_edges())


def test_remove_group_orphans_children(graph):
    """Orphan policy: children become top level at their absolute position."""
    graph.add_node(group("g1", x=100, y=50))
    graph.add_node(branch("b1", parent="g1", x=10, y=5))

    graph.remove_node("g1")

    child = graph.get_node("b1")
    assert child.parent_id is None
    assert (child.position.x, child.position.y) == (110, 55)


def test_remove_group_cascades(store):
    """Cascade policy: the whole subtree and its edges go."""
    graph = NetworkGraph(store, on_parent_deleted=OnParentDeleted.CASCADE)
    graph.add_node(group("g1"))
    graph.add_node(group("g2", parent="g1"))
    graph.add_node(branch("b1", parent="g2"))
    graph.add_node(branch("b2"))
    graph.connect("b1", "b2")

    graph.remove_node("g1")

    assert [n.id for n in graph.all_nodes()] == ["b2"]
    assert graph.all_edges() == []


def test_delete_policy_can_be_overridden_per_call(graph):
    graph.add_node(group("g1"))
    graph.add_node(branch("b1", parent="g1"))
    graph.remove_node("g1", on_parent_deleted="cascade")
    assert not graph.has_node("b1")


def test_remove_node_is_one_notification(graph):
    graph.add_node(group("g1"))
    graph.add_node(branch("b1", parent="g1"))
    graph.add_node(branch("b2"))
    graph.connect("b1", "b2")
    calls = []
    graph.nodes.subscribe(calls.append)

    graph.remove_node("g1")

    assert len(calls) == 1


def test_remove_missing_node_fails(graph):
    with pytest.raises(InvalidNode):
        graph.remove_node("ghost")


# ── Connections ──────────────────────────────────────

def test_connect_creates_distinct_edges(graph):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    first = graph.connect("a", "b")
    second = graph.connect("a", "b", weight=0.5)

    assert first.id != second.id
    assert first.weight == 1.0 and second.weight == 0.5
    assert [e.id for e in graph.outgoing("a")] == [first.id, second.id]
    assert len(graph.incoming("b")) == 2


@pytest.mark.parametrize("source,target", [
    ("a", "a"),          # same node
    ("a", "ghost"),      # missing endpoint
    ("a", "g"),          # non-branch endpoint
    ("g", "a"),
])
def test_invalid_connections(graph, source, target):
    graph.add_node(branch("a"))
    graph.add_node(group("g"))
    with pytest.raises(InvalidConnection):
        graph.connect(source, target)
    assert not graph.can_connect(source, target)
    assert graph.all_edges() == []


def test_disconnect_is_idempotent(graph):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    edge = graph.connect("a", "b")

    assert graph.disconnect(edge.id) is not None
    assert graph.disconnect(edge.id) is None
    assert graph.all_edges() == []


def test_edge_weight_must_be_positive(graph):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    with pytest.raises(ValueError):
        graph.connect("a", "b", weight=0)
    edge = graph.connect("a", "b")
    graph.set_edge_weight(edge.id, 0.25)
    assert graph.get_edge(edge.id).weight == 0.25


# ── Blocks ───────────────────────────────────────────

def test_block_edits(graph):
    graph.add_node(branch("b1", Block("Pipe"), Block("Compressor")))

    graph.add_block("b1", 1, Block("Pump", 2))
    graph.add_block("b1", None, Block("Storage"))
    assert [b.type for b in graph.get_branch("b1").blocks] == ["Pipe", "Pump", "Compressor", "Storage"]

    graph.update_block("b1", 1, {"quantity": 3, "duty": "5 MW"})
    assert graph.get_block("b1", 1).quantity == 3
    assert graph.get_block("b1", 1).properties == {"duty": "5 MW"}

    graph.move_block("b1", 0, 3)
    assert [b.type for b in graph.get_branch("b1").blocks] == ["Pump", "Compressor", "Storage", "Pipe"]

    graph.remove_block("b1", 1)
    assert [b.type for b in graph.get_branch("b1").blocks] == ["Pump", "Storage", "Pipe"]


def test_block_edits_replace_the_sequence(graph):
    graph.add_node(branch("b1", Block("Pipe")))
    before = graph.get_branch("b1").blocks

    graph.update_block("b1", 0, {"length": "3 km"})

    assert before[0].properties == {}
    assert graph.get_block("b1", 0).properties == {"length": "3 km"}


@pytest.mark.parametrize("edit", [
    lambda g: g.add_block("b1", 3, Block("Pipe")),
    lambda g: g.add_block("b1", -1, Block("Pipe")),
    lambda g: g.update_block("b1", 2, {"x": 1}),
    lambda g: g.remove_block("b1", 5),
    lambda g: g.move_block("b1", 0, 2),
    lambda g: g.get_block("b1", 2),
])
def test_block_index_out_of_range(graph, edit):
    graph.add_node(branch("b1", Block("Pipe"), Block("Pump")))
    with pytest.raises(IndexOutOfRange):
        edit(graph)
    assert [b.type for b in graph.get_branch("b1").blocks] == ["Pipe", "Pump"]


def test_quantity_defaults_to_one_and_must_be_positive():
    assert Block("Pipe").quantity == 1
    assert Block("Pipe", None).quantity == 1
    with pytest.raises(ValueError):
        Block("Pipe", 0)


# ── Selection ────────────────────────────────────────

def test_selection_live_queries(graph):
    graph.add_node(group("g1"))
    graph.add_node(branch("b1", parent="g1"))
    graph.add_node(branch("b2"))
    selected = graph.selected_branches()
    children = graph.selected_children()

    graph.select(["b2", "g1"])

    assert [n.id for n in selected.results] == ["b2"]
    assert [n.id for n in graph.selected_groups().results] == ["g1"]
    assert [n.id for n in children.results] == ["b1"]

    graph.clear_selection()
    assert selected.results == []
    assert children.results == []


# ── Bulk load ────────────────────────────────────────

def test_load_replaces_everything(reference_graph):
    snapshot = NetworkSnapshot(
        nodes=[branch("x", parent="gx"), group("gx"), branch("y")],
        edges=[Edge("x", "y", id="e1"), Edge("x", "x", id="self"), Edge("x", "gx", id="to-group")],
        defaults={"currency": "EUR"},
    )
    calls = []
    reference_graph.nodes.subscribe(calls.append)

    reference_graph.load(snapshot)

    assert [n.id for n in reference_graph.ordered_nodes(by_depth=False)] == ["gx", "x", "y"]
    assert [e.id for e in reference_graph.all_edges()] == ["e1"]
    assert reference_graph.default_values() == {"currency": "EUR"}
    assert len(calls) == 1


def test_load_detaches_cyclic_parents_without_touching_input(graph):
    a = group("a", parent="b")
    b = group("b", parent="a")
    with pytest.warns(UserWarning):
        graph.load(NetworkSnapshot(nodes=[a, b]))

    assert graph.get_node("a").parent_id is None
    assert graph.get_node("b").parent_id == "a"
    assert a.parent_id == "b"


def test_write_nodes_reconciles(graph):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    graph.write_nodes([branch("b", Block("Pipe")), branch("c")])

    assert sorted(graph.nodes.keys()) == ["b", "c"]
    assert graph.get_branch("b").blocks[0].type == "Pipe"


@pytest.mark.parametrize("nodes", [
    [branch("a", parent="nope")],                          # missing parent
    [branch("a"), branch("c", parent="a")],                # branch used as a parent
    [group("g1", parent="g2"), group("g2", parent="g1")],  # parent cycle
    [branch("a"), branch("a")],                            # duplicate id
])
def test_write_nodes_enforces_parent_invariants(graph, nodes):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    edge = graph.connect("a", "b")

    with pytest.raises(InvalidNode):
        graph.write_nodes(nodes)

    assert sorted(graph.nodes.keys()) == ["a", "b"]
    assert [e.id for e in graph.all_edges()] == [edge.id]


def test_write_nodes_drops_edges_of_removed_nodes(graph):
    """Reconciling away a branch takes its edges with it, in one change."""
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    graph.add_node(branch("c"))
    graph.connect("a", "b")
    kept = graph.connect("a", "c")
    calls = []
    graph.edges.subscribe(calls.append)

    graph.write_nodes([branch("a"), branch("c")])

    assert sorted(graph.nodes.keys()) == ["a", "c"]
    assert [e.id for e in graph.all_edges()] == [kept.id]
    assert len(calls) == 1


@pytest.mark.parametrize("edge", [
    Edge("a", "a", id="self"),
    Edge("a", "ghost", id="dangling"),
    Edge("a", "g", id="to-group"),
])
def test_write_edges_rejects_invalid_edges(graph, edge):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    graph.add_node(group("g"))
    existing = graph.connect("a", "b")

    with pytest.raises(InvalidConnection):
        graph.write_edges([Edge("b", "a", id="back"), edge])

    assert [e.id for e in graph.all_edges()] == [existing.id]


def test_write_edges_reconciles(graph):
    graph.add_node(branch("a"))
    graph.add_node(branch("b"))
    graph.connect("a", "b")

    graph.write_edges([Edge("b", "a", 0.5, id="back")])

    assert [(e.id, e.source, e.weight) for e in graph.all_edges()] == [("back", "b", 0.5)]


# ── Property values ──────────────────────────────────

@pytest.mark.parametrize("value", [[1, 2], {"x": 1}, None])
def test_property_values_outside_the_union_are_rejected(graph, value):
    graph.add_node(group("g1", location="onshore"))
    graph.add_node(branch("b1", Block("Pipe", 1, {"length": "5 km"}), parent="g1"))

    with pytest.raises(InvalidNode):
        graph.set_property("g1", "location", value)
    with pytest.raises(InvalidNode):
        graph.set_property("b1", "phase", value)
    with pytest.raises(ValueError):
        graph.set_default("currency", value)

    assert graph.get_node("g1").properties == {"location": "onshore"}
    assert graph.get_node("b1").properties == {}
    assert graph.default_values() == {}


def test_block_values_outside_the_union_are_rejected(graph):
    graph.add_node(branch("b1", Block("Pipe", 1, {"length": "5 km"})))

    with pytest.raises(InvalidNode):
        graph.update_block("b1", 0, {"length": [5, "km"]})
    with pytest.raises(InvalidNode):
        graph.update_block("b1", 0, lambda draft: draft.properties.update(size=None))

    assert graph.get_block("b1", 0).properties == {"length": "5 km"}
    graph.update_block("b1", 0, {"length": None})
    assert graph.get_block("b1", 0).properties == {}


def test_set_label(graph):
    graph.add_node(group("g1"))
    graph.set_label("g1", "Offshore Hub")
    assert graph.get_node("g1").label == "Offshore Hub"


# ── Live lookups ─────────────────────────────────────

def test_selected_geography(graph):
    graph.add_node(Node(id="geo", kind=NodeKind.GEOGRAPHIC_ANCHOR, data=GeographicData("Site")))
    graph.add_node(branch("b1"))
    geography = graph.selected_geography()

    graph.select(["geo", "b1"])

    assert [n.id for n in geography.results] == ["geo"]
    graph.clear_selection()
    assert geography.results == []


def test_find_by_id_follows_edits_and_removal(graph):
    found = graph.find_by_id("b1")
    assert found.results is None

    graph.add_node(branch("b1"))
    assert found.results.id == "b1"

    graph.update_node("b1", {"position": {"x": 5, "y": 6}})
    assert found.results.position == Position(5, 6)

    graph.remove_node("b1")
    assert found.results is None


def test_edges_by_endpoint_follow_connect_and_disconnect(graph):
    for node_id in ("a", "b", "c"):
        graph.add_node(branch(node_id))
    from_a = graph.edges_by_source("a")
    into_c = graph.edges_by_target("c")

    ab = graph.connect("a", "b")
    ac = graph.connect("a", "c")
    bc = graph.connect("b", "c")

    assert [e.id for e in from_a] == [ab.id, ac.id]
    assert [e.id for e in into_c] == [ac.id, bc.id]

    graph.disconnect(ac.id)
    assert [e.id for e in from_a.results] == [ab.id]
    assert [e.id for e in into_c.results] == [bc.id]

    graph.remove_node("b")
    assert [e.id for e in from_a.results] == []
    assert into_c.results == []


def test_snapshot_round_trips_through_load(reference_graph):
    snapshot = reference_graph.snapshot()
    other = NetworkGraph()
    other.load(snapshot)

    assert other.stats() == reference_graph.stats()
    assert other.default_values() == reference_graph.default_values()
