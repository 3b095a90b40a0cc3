"""Parent-before-child ordering, render layering and cycle handling."""

import warnings

import pytest

from network_graph.errors import CycleDetected
from network_graph.ontology import Node, NodeKind
from network_graph.ordering import find_parent_cycles, topological_order


def node(node_id, kind=NodeKind.BRANCH, parent=None, z_index=None):
    return Node(id=node_id, kind=kind, parent_id=parent, z_index=z_index)


def ids(nodes):
    return [n.id for n in nodes]


def is_parent_first(nodes):
    position = {n.id: i for i, n in enumerate(nodes)}
    return all(position[n.parent_id] < position[n.id]
               for n in nodes if n.parent_id in position)


def test_parent_moves_before_child():
    """[br1, g1, br2] with br1 inside g1 orders g1 before br1."""
    nodes = [node("br1", parent="g1"), node("g1", NodeKind.GROUP), node("br2")]
    ordered = topological_order(nodes)

    assert ids(ordered) == ["g1", "br1", "br2"]
    assert is_parent_first(ordered)


def test_siblings_keep_input_order():
    nodes = [node("g", NodeKind.GROUP), node("c", parent="g"), node("a", parent="g"), node("b", parent="g")]
    assert ids(topological_order(nodes)) == ["g", "c", "a", "b"]


def test_nested_groups():
    nodes = [node("leaf", parent="inner"), node("inner", NodeKind.GROUP, parent="outer"),
             node("outer", NodeKind.GROUP)]
    assert ids(topological_order(nodes)) == ["outer", "inner", "leaf"]


def test_parent_outside_the_input_imposes_nothing():
    nodes = [node("b", parent="absent"), node("a")]
    assert ids(topological_order(nodes)) == ["b", "a"]


def test_empty_input():
    assert topological_order([]) == []


def test_render_depth_is_a_stable_secondary_key():
    """Geographic nodes, then images, then everything else."""
    nodes = [
        node("br", NodeKind.BRANCH),
        node("img", NodeKind.IMAGE),
        node("grp", NodeKind.GROUP),
        node("geo", NodeKind.GEOGRAPHIC_WINDOW),
        node("anchor", NodeKind.GEOGRAPHIC_ANCHOR),
    ]
    ordered = topological_order(nodes, by_depth=True)
    assert ids(ordered) == ["geo", "anchor", "img", "br", "grp"]


def test_explicit_z_index_overrides_kind_depth():
    nodes = [node("img", NodeKind.IMAGE), node("front", NodeKind.IMAGE, z_index=5)]
    assert ids(topological_order(list(reversed(nodes)), by_depth=True)) == ["img", "front"]


def test_depth_never_breaks_parent_first():
    """A parent drawn at a higher layer still precedes its children."""
    nodes = [node("child", parent="g"), node("g", NodeKind.GROUP, z_index=3)]
    ordered = topological_order(nodes, by_depth=True)
    assert ids(ordered) == ["g", "child"]


def test_cycle_terminates_and_warns():
    """A parent cycle is broken at its first-seen member."""
    nodes = [node("a", NodeKind.GROUP, parent="b"), node("b", NodeKind.GROUP, parent="a"), node("c")]

    with pytest.warns(CycleDetected) as record:
        ordered = topological_order(nodes)

    assert sorted(ids(ordered)) == ["a", "b", "c"]
    assert ids(ordered)[:2] == ["a", "b"]
    assert set(record[0].message.cycle) == {"a", "b"}


def test_self_parent_cycle():
    with pytest.warns(CycleDetected):
        ordered = topological_order([node("x", NodeKind.GROUP, parent="x")])
    assert ids(ordered) == ["x"]


def test_no_warning_without_cycles():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        topological_order([node("g", NodeKind.GROUP), node("b", parent="g")])


def test_find_parent_cycles():
    nodes = [node("a", NodeKind.GROUP, parent="b"), node("b", NodeKind.GROUP, parent="a"),
             node("c", parent="a")]
    assert [sorted(c) for c in find_parent_cycles(nodes)] == [["a", "b"]]
