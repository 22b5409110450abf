"""Tests for the unit dependency graph."""

import pytest

from story_pipeline.errors import CycleError
from story_pipeline.graph import DependencyGraph


@pytest.fixture
def graph():
    # api -> schema, ui -> api, docs independent
    return DependencyGraph.from_mapping({
        "schema": [],
        "api": ["schema"],
        "ui": ["api"],
        "docs": [],
    })


class TestDependencyGraph:
    def test_units_in_insertion_order(self, graph):
        assert graph.units == ["schema", "api", "ui", "docs"]
        assert len(graph) == 4
        assert "api" in graph
        assert "billing" not in graph

    def test_dependencies_and_dependents(self, graph):
        assert graph.dependencies_of("ui") == ["api"]
        assert graph.dependents_of("schema") == ["api"]
        assert graph.dependencies_of("unknown") == []

    def test_ready_units(self, graph):
        assert graph.ready_units([]) == ["schema", "docs"]
        assert graph.ready_units(["schema"]) == ["api", "docs"]
        assert graph.ready_units(["schema", "api", "ui", "docs"]) == []

    def test_newly_ready(self, graph):
        assert graph.newly_ready("schema", []) == ["api"]
        assert graph.newly_ready("docs", ["schema"]) == []

    def test_newly_ready_waits_for_every_prerequisite(self):
        graph = DependencyGraph.from_mapping({"a": [], "b": [], "c": ["a", "b"]})
        assert graph.newly_ready("a", []) == []
        assert graph.newly_ready("b", ["a"]) == ["c"]

    def test_blocked_by_is_transitive(self, graph):
        assert graph.blocked_by("schema") == ["api", "ui"]
        assert graph.blocked_by("docs") == []

    def test_duplicate_edge_ignored(self, graph):
        graph.add_dependency("ui", "api")
        assert graph.dependencies_of("ui") == ["api"]

    def test_cycle_rejected(self, graph):
        with pytest.raises(CycleError) as exc_info:
            graph.add_dependency("schema", "ui")

        assert exc_info.value.cycle == ["schema", "ui", "api", "schema"]
        assert graph.dependencies_of("schema") == []

    def test_self_edge_rejected(self):
        graph = DependencyGraph()
        with pytest.raises(CycleError):
            graph.add_dependency("a", "a")

    def test_cyclic_mapping_rejected(self):
        with pytest.raises(CycleError):
            DependencyGraph.from_mapping({"a": ["b"], "b": ["a"]})
