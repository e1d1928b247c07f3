"""
Resource graph tests: declaration rules, cycle rejection and ordering.
"""
import pytest

from infragraph.errors import CycleError, ValidationError
from infragraph.graph import ResourceGraph
from infragraph.models.outputs import interpolate
from infragraph.models.resource import ResourceState


class TestDeclare:
    def setup_method(self):
        self.graph = ResourceGraph()

    def test_handles_carry_declaration_order(self):
        a = self.graph.declare("test.Thing", "a")
        b = self.graph.declare("test.Thing", "b")
        assert (a.index, b.index) == (0, 1)
        assert a.qualified_name == "test.Thing:a"
        assert a.backend == "test"
        assert len(self.graph) == 2

    def test_new_resource_is_pending(self):
        h = self.graph.declare("test.Thing", "a")
        assert self.graph.get(h).state == ResourceState.PENDING

    def test_duplicate_rejected(self):
        self.graph.declare("test.Thing", "a")
        with pytest.raises(ValidationError):
            self.graph.declare("test.Thing", "a")

    def test_same_name_different_kind_allowed(self):
        self.graph.declare("test.Thing", "a")
        self.graph.declare("test.Other", "a")
        assert len(self.graph) == 2

    @pytest.mark.parametrize("kind,name", [
        ("Thing", "a"),
        ("test.", "a"),
        ("test.Thing", ""),
        ("test.Thing", "has space"),
        ("test.Thing", "-leading"),
    ])
    def test_malformed_identity_rejected(self, kind, name):
        with pytest.raises(ValidationError):
            self.graph.declare(kind, name)

    def test_spec_must_be_mapping(self):
        with pytest.raises(ValidationError):
            self.graph.declare("test.Thing", "a", spec=["not", "a", "dict"])

    def test_dependency_on_foreign_handle_rejected(self):
        foreign = ResourceGraph().declare("test.Thing", "elsewhere")
        with pytest.raises(ValidationError):
            self.graph.declare("test.Thing", "a", deps=[foreign])

    def test_references_in_spec_become_dependencies(self):
        cluster = self.graph.declare("test.Cluster", "c")
        ns = self.graph.declare("test.Thing", "ns")
        op = self.graph.declare("test.Thing", "op", spec={
            "endpoint": cluster.output("endpoint"),
            "nested": [{"namespace": interpolate("{}-x", ns.output("name"))}],
        })
        assert self.graph.dependencies(op) == [cluster, ns]
        assert self.graph.dependents(cluster) == [op]

    def test_explicit_and_implicit_dependencies_not_duplicated(self):
        cluster = self.graph.declare("test.Cluster", "c")
        op = self.graph.declare("test.Thing", "op", spec={"e": cluster.output("e")}, deps=[cluster])
        assert self.graph.dependencies(op) == [cluster]

    def test_find_and_contains(self):
        h = self.graph.declare("test.Thing", "a")
        assert self.graph.find("test.Thing", "a") == h
        assert self.graph.find("test.Thing", "missing") is None
        assert h in self.graph
        assert "test.Thing:a" not in self.graph


class TestCycles:
    def setup_method(self):
        self.graph = ResourceGraph()
        self.a = self.graph.declare("test.Thing", "a")
        self.b = self.graph.declare("test.Thing", "b", deps=[self.a])
        self.c = self.graph.declare("test.Thing", "c", deps=[self.b])

    def test_closing_edge_rejected(self):
        with pytest.raises(CycleError) as exc_info:
            self.graph.add_dependency(self.a, self.c)
        assert exc_info.value.cycle == [
            "test.Thing:a", "test.Thing:c", "test.Thing:b", "test.Thing:a",
        ]

    def test_graph_unchanged_after_rejected_edge(self):
        with pytest.raises(CycleError):
            self.graph.add_dependency(self.a, self.c)
        assert self.graph.dependencies(self.a) == []
        assert self.graph.topological_order() == [self.a, self.b, self.c]

    def test_self_edge_rejected(self):
        with pytest.raises(CycleError):
            self.graph.add_dependency(self.b, self.b)

    def test_forward_edge_accepted(self):
        d = self.graph.declare("test.Thing", "d")
        self.graph.add_dependency(d, self.c)
        assert self.graph.dependencies(d) == [self.c]
        assert self.graph.dependents(self.c) == [d]

    def test_repeated_edge_is_noop(self):
        self.graph.add_dependency(self.c, self.b)
        assert self.graph.dependencies(self.c) == [self.b]

    def test_unknown_handle_rejected(self):
        foreign = ResourceGraph().declare("test.Thing", "zzz")
        with pytest.raises(ValidationError):
            self.graph.add_dependency(self.a, foreign)


class TestTopologicalOrder:
    def setup_method(self):
        self.graph = ResourceGraph()

    def test_declaration_order_breaks_ties(self):
        x = self.graph.declare("test.Thing", "x")
        y = self.graph.declare("test.Thing", "y")
        z = self.graph.declare("test.Thing", "z")
        d = self.graph.declare("test.Thing", "d", deps=[z])
        e = self.graph.declare("test.Thing", "e")
        assert self.graph.topological_order() == [x, y, z, d, e]

    def test_late_edge_moves_resource_after_dependency(self):
        x = self.graph.declare("test.Thing", "x")
        y = self.graph.declare("test.Thing", "y")
        e = self.graph.declare("test.Thing", "e")
        self.graph.add_dependency(x, e)
        assert self.graph.topological_order() == [y, e, x]

    def test_every_resource_after_its_dependencies(self):
        handles = []
        for i in range(30):
            deps = [handles[j] for j in range(len(handles)) if (i * 7 + j) % 5 == 0]
            handles.append(self.graph.declare("test.Thing", f"r{i}", deps=deps))
        # a few edges added after declaration, all pointing backwards
        self.graph.add_dependency(handles[3], handles[1])
        self.graph.add_dependency(handles[20], handles[19])

        order = self.graph.topological_order()
        position = {h: i for i, h in enumerate(order)}
        assert len(order) == 30
        for h in handles:
            for dep in self.graph.dependencies(h):
                assert position[dep] < position[h]

    def test_reverse_order(self):
        a = self.graph.declare("test.Thing", "a")
        b = self.graph.declare("test.Thing", "b", deps=[a])
        c = self.graph.declare("test.Thing", "c", deps=[b])
        assert self.graph.reverse_order() == [c, b, a]
