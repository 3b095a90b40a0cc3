"""Shared fixtures for the process network tests."""

import pytest

from network_graph.builder import ReferenceNetworkBuilder, reference_registry
from network_graph.collection import CollectionStore, MemoryStorage
from network_graph.graph import NetworkGraph
from scope_resolution.resolver import ScopeResolver


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage):
    return CollectionStore(storage)


@pytest.fixture
def graph(store):
    return NetworkGraph(store)


@pytest.fixture
def registry():
    return reference_registry()


@pytest.fixture
def reference_graph(graph):
    return ReferenceNetworkBuilder(graph).build_reference_network()


@pytest.fixture
def resolver(reference_graph, registry):
    return ScopeResolver(reference_graph, registry)
