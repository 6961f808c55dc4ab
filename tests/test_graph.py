"""Tests for runbook graph validation and ordering."""

from conftest import make_runbook, make_step

from runwarden.core.graph import (
    dependents,
    descendants,
    entry_points,
    has_cycle,
    topological_order,
    validate,
)
from runwarden.models import Runbook


class TestValidate:
    """Tests for structural validation."""

    def test_valid_runbook(self):
        """A simple chain is valid."""
        runbook = make_runbook(
            make_step("a"),
            make_step("b", depends_on=["a"]),
        )
        result = validate(runbook)
        assert result.is_valid
        assert result.errors == []

    def test_missing_name(self):
        runbook = Runbook(name="  ", steps=[make_step("a")])
        result = validate(runbook)
        assert result.errors == ["Runbook name is required"]

    def test_no_steps(self):
        runbook = Runbook(name="Empty")
        result = validate(runbook)
        assert result.errors == ["Runbook must have at least one step"]

    def test_duplicate_step_ids(self):
        runbook = make_runbook(make_step("a"), make_step("a"))
        result = validate(runbook)
        assert "Duplicate step ID: a" in result.errors

    def test_unknown_dependency(self):
        runbook = make_runbook(make_step("a", depends_on=["ghost"]))
        result = validate(runbook)
        assert result.errors == ["Step 'a' depends on non-existent step 'ghost'"]

    def test_cycle(self):
        runbook = make_runbook(
            make_step("a", depends_on=["c"]),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["b"]),
        )
        result = validate(runbook)
        assert result.errors == ["Runbook contains a dependency cycle"]

    def test_self_dependency_is_a_cycle(self):
        runbook = make_runbook(make_step("a", depends_on=["a"]))
        assert "Runbook contains a dependency cycle" in validate(runbook).errors

    def test_collects_all_errors(self):
        """Validation reports every problem, not just the first."""
        runbook = Runbook(
            name="",
            steps=[make_step("a", depends_on=["x"]), make_step("b", depends_on=["y"])],
        )
        result = validate(runbook)
        assert len(result.errors) == 3
        assert result.errors[0] == "Runbook name is required"

    def test_cycle_check_skipped_with_duplicates(self):
        """Duplicate IDs make the graph ambiguous, so no cycle is reported."""
        runbook = make_runbook(
            make_step("a", depends_on=["a"]),
            make_step("a"),
        )
        result = validate(runbook)
        assert "Duplicate step ID: a" in result.errors
        assert "Runbook contains a dependency cycle" not in result.errors


class TestGraphQueries:
    """Tests for ordering and neighbor queries."""

    def test_topological_order_respects_dependencies(self):
        steps = [
            make_step("deploy", depends_on=["build", "test"]),
            make_step("test", depends_on=["build"]),
            make_step("build"),
        ]
        order = [s.step_id for s in topological_order(steps)]
        assert order.index("build") < order.index("test") < order.index("deploy")

    def test_topological_order_keeps_declared_order_for_roots(self):
        steps = [make_step("x"), make_step("y"), make_step("z")]
        assert [s.step_id for s in topological_order(steps)] == ["x", "y", "z"]

    def test_has_cycle(self):
        assert has_cycle([make_step("a", depends_on=["b"]), make_step("b", depends_on=["a"])])
        assert not has_cycle([make_step("a"), make_step("b", depends_on=["a"])])

    def test_has_cycle_ignores_unknown_dependencies(self):
        assert not has_cycle([make_step("a", depends_on=["missing"])])

    def test_entry_points(self):
        steps = [make_step("a"), make_step("b", depends_on=["a"]), make_step("c")]
        assert [s.step_id for s in entry_points(steps)] == ["a", "c"]

    def test_dependents(self):
        steps = [
            make_step("a"),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["a", "b"]),
        ]
        assert [s.step_id for s in dependents(steps, "a")] == ["b", "c"]
        assert dependents(steps, "c") == []

    def test_descendants(self):
        steps = [
            make_step("a"),
            make_step("b", depends_on=["a"]),
            make_step("c", depends_on=["b"]),
            make_step("d"),
        ]
        assert sorted(s.step_id for s in descendants(steps, "a")) == ["b", "c"]
        assert descendants(steps, "d") == []
