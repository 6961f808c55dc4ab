"""Tests for runbook dry runs."""

from datetime import timedelta

import pytest
from conftest import FakeRunner, make_runbook, make_step

from runwarden.core.dry_run import describe_condition, dry_run
from runwarden.core.executor import RunbookNotFoundError
from runwarden.core.supervisor import Supervisor
from runwarden.models import RetryPolicy, RunWardenConfig, StepCondition, ThingConfig

THINGS = {
    "deploy": ThingConfig(cmd="/opt/deploy.sh", profiles={"default": "--dry", "prod": "--env prod"}),
    "notify": ThingConfig(cmd="notify-send"),
}


class TestDryRun:
    """Tests for previewing a runbook."""

    def test_steps_in_execution_order(self):
        runbook = make_runbook(
            make_step("announce", depends_on=["ship"], thing_id="notify"),
            make_step("ship", thing_id="deploy"),
        )

        preview = dry_run(runbook, THINGS)

        assert preview.is_valid
        assert preview.errors == []
        assert [s.step_id for s in preview.steps] == ["ship", "announce"]

    def test_resolves_commands(self):
        ship = make_step("ship", thing_id="deploy")
        ship.profile_id = "prod"
        hotfix = make_step("hotfix", thing_id="deploy")
        hotfix.arguments_override = "--hotfix"
        runbook = make_runbook(ship, hotfix, make_step("announce", thing_id="notify"))

        steps = {s.step_id: s for s in dry_run(runbook, THINGS).steps}

        assert steps["ship"].command == "/opt/deploy.sh --env prod"
        assert steps["hotfix"].command == "/opt/deploy.sh --hotfix"
        assert steps["announce"].command == "notify-send"

    def test_conditions_retries_and_timeouts(self):
        runbook = make_runbook(
            make_step("ship", thing_id="deploy"),
            make_step(
                "rollback",
                depends_on=["ship"],
                condition=StepCondition.on_failure(),
                retry=RetryPolicy(max_attempts=4, initial_delay=timedelta(seconds=2)),
                timeout=timedelta(minutes=1),
                thing_id="deploy",
            ),
            make_step(
                "report",
                depends_on=["rollback"],
                condition=StepCondition.from_expression("ship.failed"),
                thing_id="notify",
            ),
        )

        steps = {s.step_id: s for s in dry_run(runbook, THINGS).steps}

        assert steps["ship"].condition == "on_success"
        assert steps["ship"].max_attempts == 1
        assert steps["ship"].retry_delays == []
        rollback = steps["rollback"]
        assert rollback.condition == "on_failure"
        assert rollback.depends_on == ["ship"]
        assert rollback.max_attempts == 4
        assert rollback.retry_delays == [timedelta(seconds=2), timedelta(seconds=4), timedelta(seconds=8)]
        assert rollback.timeout == timedelta(minutes=1)
        assert steps["report"].condition == "expression: ship.failed"

    def test_unknown_thing_and_profile(self):
        ship = make_step("ship", thing_id="deploy")
        ship.profile_id = "staging"
        runbook = make_runbook(ship, make_step("ghost", thing_id="missing"))

        preview = dry_run(runbook, THINGS)

        assert preview.is_valid
        steps = {s.step_id: s for s in preview.steps}
        assert steps["ship"].command == "/opt/deploy.sh"
        assert steps["ghost"].command is None
        assert preview.warnings == [
            "ship: Unknown profile 'staging' for thing 'deploy'",
            "ghost: Unknown thing 'missing'",
        ]

    def test_invalid_runbook(self):
        runbook = make_runbook(
            make_step("a", depends_on=["b"], thing_id="notify"),
            make_step("b", depends_on=["a"], thing_id="notify"),
        )

        preview = dry_run(runbook, THINGS)

        assert not preview.is_valid
        assert preview.errors == ["Runbook contains a dependency cycle"]
        assert [s.step_id for s in preview.steps] == ["a", "b"]

    def test_describe_condition(self):
        assert describe_condition(StepCondition.always()) == "always"
        assert describe_condition(StepCondition.from_expression("a.succeeded")) == "expression: a.succeeded"
        assert describe_condition(StepCondition(type="expression")) == "expression:"


class TestSupervisorDryRun:
    """Tests for dry runs of stored runbooks."""

    def test_stored_runbook(self, temp_db):
        supervisor = Supervisor(config=RunWardenConfig(things=THINGS), db=temp_db, runner=FakeRunner())
        temp_db.add_runbook(make_runbook(make_step("ship", thing_id="deploy"), runbook_id="release"))

        preview = supervisor.dry_run_runbook("release")

        assert preview.runbook_id == "release"
        assert preview.steps[0].command == "/opt/deploy.sh --dry"
        assert temp_db.list_executions(runbook_id="release") == []

    def test_missing_runbook(self, temp_db):
        supervisor = Supervisor(config=RunWardenConfig(), db=temp_db, runner=FakeRunner())
        with pytest.raises(RunbookNotFoundError):
            supervisor.dry_run_runbook("nope")
