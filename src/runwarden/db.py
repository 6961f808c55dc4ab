"""SQLite database for RunWarden runbooks, executions and self-healing state."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator
from zoneinfo import ZoneInfo

from loguru import logger

from runwarden.config import DEFAULT_DB_FILE
from runwarden.models import (
    ExecutionStatus,
    HealingStatus,
    Runbook,
    RunbookExecution,
    SelfHealingExecution,
    SelfHealingRule,
    StepExecution,
    StepStatus,
)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Runbook definitions (latest version)
CREATE TABLE IF NOT EXISTS runbooks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    config_json TEXT NOT NULL,
    is_enabled INTEGER DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Every saved version of a runbook
CREATE TABLE IF NOT EXISTS runbook_versions (
    runbook_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    config_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (runbook_id, version)
);

-- Runbook executions
CREATE TABLE IF NOT EXISTS runbook_executions (
    id TEXT PRIMARY KEY,
    runbook_id TEXT NOT NULL,
    runbook_version INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    trigger_info TEXT,
    error_message TEXT
);

-- One row per step per execution
CREATE TABLE IF NOT EXISTS step_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL,
    step_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    run_id TEXT,
    status TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    attempt INTEGER DEFAULT 0,
    error_message TEXT,
    output TEXT,
    UNIQUE (execution_id, step_id)
);

-- Trigger firings
CREATE TABLE IF NOT EXISTS trigger_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    runbook_id TEXT NOT NULL,
    trigger_type TEXT NOT NULL,
    fired_at TEXT NOT NULL,
    execution_id TEXT,
    payload_json TEXT,
    source TEXT,
    success INTEGER DEFAULT 1,
    message TEXT
);

-- Self-healing rules
CREATE TABLE IF NOT EXISTS self_healing_rules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    trigger_condition TEXT NOT NULL,
    remediation_runbook_id TEXT NOT NULL,
    max_executions_per_hour INTEGER NOT NULL DEFAULT 3,
    cooldown_seconds REAL NOT NULL DEFAULT 600,
    requires_approval INTEGER DEFAULT 0,
    is_enabled INTEGER DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Self-healing executions
CREATE TABLE IF NOT EXISTS self_healing_executions (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    triggering_alert_id TEXT,
    remediation_execution_id TEXT,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    result TEXT
);

CREATE INDEX IF NOT EXISTS idx_executions_runbook_id ON runbook_executions(runbook_id);
CREATE INDEX IF NOT EXISTS idx_executions_status ON runbook_executions(status);
CREATE INDEX IF NOT EXISTS idx_step_executions_execution_id ON step_executions(execution_id);
CREATE INDEX IF NOT EXISTS idx_trigger_history_runbook_id ON trigger_history(runbook_id);
CREATE INDEX IF NOT EXISTS idx_healing_executions_rule_id ON self_healing_executions(rule_id, started_at);
"""


def _ts(value: datetime | None) -> str | None:
    """Serialize a timestamp so stored values sort chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo("UTC"))
    return value.astimezone(ZoneInfo("UTC")).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database manager for RunWarden."""

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = db_path or DEFAULT_DB_FILE
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.debug(f"Initialized database at {self.db_path}")
            elif row[0] > SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is newer than supported version {SCHEMA_VERSION}"
                )

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Runbook Methods

    def add_runbook(self, runbook: Runbook) -> None:
        """Insert a new runbook at version 1.

        Raises:
            ValueError: If a runbook with the same ID exists
        """
        runbook.version = 1
        config_json = runbook.model_dump_json()

        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO runbooks (
                        id, name, description, config_json, is_enabled,
                        version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        runbook.id,
                        runbook.name,
                        runbook.description,
                        config_json,
                        1 if runbook.is_enabled else 0,
                        runbook.version,
                        _ts(runbook.created_at),
                        _ts(runbook.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Runbook '{runbook.id}' already exists") from e

            conn.execute(
                "INSERT INTO runbook_versions (runbook_id, version, config_json, created_at) VALUES (?, ?, ?, ?)",
                (runbook.id, runbook.version, config_json, _ts(runbook.updated_at)),
            )

    def update_runbook(self, runbook: Runbook) -> Runbook:
        """Update a runbook, bumping its version.

        Returns:
            The stored runbook with its new version and timestamps

        Raises:
            KeyError: If the runbook does not exist
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version, created_at FROM runbooks WHERE id = ?", (runbook.id,)
            ).fetchone()
            if row is None:
                raise KeyError(runbook.id)

            updated = runbook.model_copy(
                update={
                    "version": row["version"] + 1,
                    "created_at": datetime.fromisoformat(row["created_at"]),
                    "updated_at": datetime.now(ZoneInfo("UTC")),
                }
            )
            config_json = updated.model_dump_json()

            conn.execute(
                """
                UPDATE runbooks SET
                    name = ?,
                    description = ?,
                    config_json = ?,
                    is_enabled = ?,
                    version = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.name,
                    updated.description,
                    config_json,
                    1 if updated.is_enabled else 0,
                    updated.version,
                    _ts(updated.updated_at),
                    updated.id,
                ),
            )
            conn.execute(
                "INSERT INTO runbook_versions (runbook_id, version, config_json, created_at) VALUES (?, ?, ?, ?)",
                (updated.id, updated.version, config_json, _ts(updated.updated_at)),
            )

        logger.debug(f"Runbook '{updated.id}' updated to version {updated.version}")
        return updated

    def get_runbook(self, runbook_id: str) -> Runbook | None:
        """Get the latest version of a runbook."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config_json FROM runbooks WHERE id = ?", (runbook_id,)
            ).fetchone()

            if row is None:
                return None

            return Runbook.model_validate_json(row["config_json"])

    def get_runbook_version(self, runbook_id: str, version: int) -> Runbook | None:
        """Get a specific stored version of a runbook."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config_json FROM runbook_versions WHERE runbook_id = ? AND version = ?",
                (runbook_id, version),
            ).fetchone()

            if row is None:
                return None

            return Runbook.model_validate_json(row["config_json"])

    def list_runbooks(self, enabled_only: bool = False) -> list[Runbook]:
        """List runbooks ordered by name."""
        with self._connect() as conn:
            query = "SELECT config_json FROM runbooks"
            if enabled_only:
                query += " WHERE is_enabled = 1"
            query += " ORDER BY name"

            rows = conn.execute(query).fetchall()
            return [Runbook.model_validate_json(row["config_json"]) for row in rows]

    def delete_runbook(self, runbook_id: str) -> bool:
        """Delete a runbook and its stored versions."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM runbooks WHERE id = ?", (runbook_id,))
            conn.execute("DELETE FROM runbook_versions WHERE runbook_id = ?", (runbook_id,))
            return cursor.rowcount > 0

    # Execution Methods

    def add_execution(self, execution: RunbookExecution) -> None:
        """Insert an execution and its step rows."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runbook_executions (
                    id, runbook_id, runbook_version, status, started_at,
                    ended_at, trigger_info, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.runbook_id,
                    execution.runbook_version,
                    execution.status.value,
                    _ts(execution.started_at),
                    _ts(execution.ended_at),
                    execution.trigger_info,
                    execution.error_message,
                ),
            )

            for step in execution.step_executions:
                self._insert_step(conn, execution.id, step)

    def update_execution(self, execution: RunbookExecution) -> None:
        """Update an execution's status fields."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE runbook_executions SET
                    status = ?,
                    ended_at = ?,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    execution.status.value,
                    _ts(execution.ended_at),
                    execution.error_message,
                    execution.id,
                ),
            )

    def get_execution(self, execution_id: str) -> RunbookExecution | None:
        """Get an execution with its step rows."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM runbook_executions WHERE id = ?", (execution_id,)
            ).fetchone()

            if row is None:
                return None

            steps = conn.execute(
                "SELECT * FROM step_executions WHERE execution_id = ? ORDER BY id",
                (execution_id,),
            ).fetchall()

            execution = self._row_to_execution(row)
            execution.step_executions = [self._row_to_step(s) for s in steps]
            return execution

    def list_executions(
        self,
        runbook_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 100,
    ) -> list[RunbookExecution]:
        """List executions, newest first. Step rows are not loaded."""
        with self._connect() as conn:
            query = "SELECT * FROM runbook_executions WHERE 1=1"
            params: list = []

            if runbook_id:
                query += " AND runbook_id = ?"
                params.append(runbook_id)

            if status:
                query += " AND status = ?"
                params.append(status.value)

            query += " ORDER BY started_at DESC LIMIT ?"
            params.append(limit)

            rows = conn.execute(query, params).fetchall()
            return [self._row_to_execution(row) for row in rows]

    def get_unfinished_executions(self) -> list[RunbookExecution]:
        """Executions not in a terminal status, with their step rows."""
        unfinished = (
            ExecutionStatus.PENDING.value,
            ExecutionStatus.RUNNING.value,
            ExecutionStatus.PAUSED.value,
        )
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM runbook_executions WHERE status IN (?, ?, ?)", unfinished
            ).fetchall()

        executions = []
        for row in rows:
            execution = self.get_execution(row["id"])
            if execution is not None:
                executions.append(execution)
        return executions

    def _insert_step(self, conn: sqlite3.Connection, execution_id: str, step: StepExecution) -> None:
        conn.execute(
            """
            INSERT INTO step_executions (
                execution_id, step_id, step_name, run_id, status,
                started_at, ended_at, attempt, error_message, output
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution_id,
                step.step_id,
                step.step_name,
                step.run_id,
                step.status.value,
                _ts(step.started_at),
                _ts(step.ended_at),
                step.attempt,
                step.error_message,
                step.output,
            ),
        )

    def add_step_execution(self, execution_id: str, step: StepExecution) -> None:
        """Insert a step row."""
        with self._connect() as conn:
            self._insert_step(conn, execution_id, step)

    def update_step_execution(self, execution_id: str, step: StepExecution) -> None:
        """Update a step row in place."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE step_executions SET
                    run_id = ?,
                    status = ?,
                    started_at = ?,
                    ended_at = ?,
                    attempt = ?,
                    error_message = ?,
                    output = ?
                WHERE execution_id = ? AND step_id = ?
                """,
                (
                    step.run_id,
                    step.status.value,
                    _ts(step.started_at),
                    _ts(step.ended_at),
                    step.attempt,
                    step.error_message,
                    step.output,
                    execution_id,
                    step.step_id,
                ),
            )

    def _row_to_execution(self, row: sqlite3.Row) -> RunbookExecution:
        """Convert a database row to a RunbookExecution."""
        return RunbookExecution(
            id=row["id"],
            runbook_id=row["runbook_id"],
            runbook_version=row["runbook_version"],
            status=ExecutionStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            ended_at=_parse_ts(row["ended_at"]),
            trigger_info=row["trigger_info"],
            error_message=row["error_message"],
        )

    def _row_to_step(self, row: sqlite3.Row) -> StepExecution:
        """Convert a database row to a StepExecution."""
        return StepExecution(
            step_id=row["step_id"],
            step_name=row["step_name"],
            run_id=row["run_id"],
            status=StepStatus(row["status"]),
            started_at=_parse_ts(row["started_at"]),
            ended_at=_parse_ts(row["ended_at"]),
            attempt=row["attempt"] or 0,
            error_message=row["error_message"],
            output=row["output"],
        )

    # Trigger History Methods

    def add_trigger_history(
        self,
        runbook_id: str,
        trigger_type: str,
        execution_id: str | None = None,
        payload: dict | None = None,
        source: str | None = None,
        success: bool = True,
        message: str | None = None,
    ) -> int:
        """Record a trigger firing."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO trigger_history (
                    runbook_id, trigger_type, fired_at, execution_id,
                    payload_json, source, success, message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    runbook_id,
                    trigger_type,
                    _ts(datetime.now(ZoneInfo("UTC"))),
                    execution_id,
                    json.dumps(payload) if payload is not None else None,
                    source,
                    1 if success else 0,
                    message,
                ),
            )
            return cursor.lastrowid or 0

    def get_trigger_history(self, runbook_id: str | None = None, limit: int = 100) -> list[dict]:
        """Get trigger history, newest first."""
        with self._connect() as conn:
            query = "SELECT * FROM trigger_history"
            params: list = []

            if runbook_id:
                query += " WHERE runbook_id = ?"
                params.append(runbook_id)

            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            rows = conn.execute(query, params).fetchall()

        history = []
        for row in rows:
            entry = dict(row)
            entry["payload"] = json.loads(entry.pop("payload_json")) if row["payload_json"] else None
            entry["success"] = bool(entry["success"])
            history.append(entry)
        return history

    # Self-Healing Rule Methods

    def add_healing_rule(self, rule: SelfHealingRule) -> None:
        """Insert a self-healing rule."""
        now = _ts(datetime.now(ZoneInfo("UTC")))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO self_healing_rules (
                    id, name, description, trigger_condition, remediation_runbook_id,
                    max_executions_per_hour, cooldown_seconds, requires_approval,
                    is_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.name,
                    rule.description,
                    rule.trigger_condition,
                    rule.remediation_runbook_id,
                    rule.max_executions_per_hour,
                    rule.cooldown_period.total_seconds(),
                    1 if rule.requires_approval else 0,
                    1 if rule.is_enabled else 0,
                    now,
                    now,
                ),
            )

    def update_healing_rule(self, rule: SelfHealingRule) -> bool:
        """Update a self-healing rule. Returns False if it does not exist."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE self_healing_rules SET
                    name = ?,
                    description = ?,
                    trigger_condition = ?,
                    remediation_runbook_id = ?,
                    max_executions_per_hour = ?,
                    cooldown_seconds = ?,
                    requires_approval = ?,
                    is_enabled = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    rule.name,
                    rule.description,
                    rule.trigger_condition,
                    rule.remediation_runbook_id,
                    rule.max_executions_per_hour,
                    rule.cooldown_period.total_seconds(),
                    1 if rule.requires_approval else 0,
                    1 if rule.is_enabled else 0,
                    _ts(datetime.now(ZoneInfo("UTC"))),
                    rule.id,
                ),
            )
            return cursor.rowcount > 0

    def delete_healing_rule(self, rule_id: str) -> bool:
        """Delete a self-healing rule."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM self_healing_rules WHERE id = ?", (rule_id,))
            return cursor.rowcount > 0

    def get_healing_rule(self, rule_id: str) -> SelfHealingRule | None:
        """Get a self-healing rule."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM self_healing_rules WHERE id = ?", (rule_id,)
            ).fetchone()
            return self._row_to_rule(row) if row else None

    def list_healing_rules(self, enabled_only: bool = False) -> list[SelfHealingRule]:
        """List self-healing rules ordered by creation."""
        with self._connect() as conn:
            query = "SELECT * FROM self_healing_rules"
            if enabled_only:
                query += " WHERE is_enabled = 1"
            query += " ORDER BY created_at"

            rows = conn.execute(query).fetchall()
            return [self._row_to_rule(row) for row in rows]

    def _row_to_rule(self, row: sqlite3.Row) -> SelfHealingRule:
        """Convert a database row to a SelfHealingRule."""
        return SelfHealingRule(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            trigger_condition=row["trigger_condition"],
            remediation_runbook_id=row["remediation_runbook_id"],
            max_executions_per_hour=row["max_executions_per_hour"],
            cooldown_period=timedelta(seconds=row["cooldown_seconds"]),
            requires_approval=bool(row["requires_approval"]),
            is_enabled=bool(row["is_enabled"]),
        )

    # Self-Healing Execution Methods

    def save_healing_execution(self, execution: SelfHealingExecution) -> None:
        """Insert or update a self-healing execution."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO self_healing_executions (
                    id, rule_id, triggering_alert_id, remediation_execution_id,
                    status, started_at, completed_at, result
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.rule_id,
                    execution.triggering_alert_id,
                    execution.remediation_execution_id,
                    execution.status.value,
                    _ts(execution.started_at),
                    _ts(execution.completed_at),
                    execution.result,
                ),
            )

    def get_healing_execution(self, execution_id: str) -> SelfHealingExecution | None:
        """Get a self-healing execution."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM self_healing_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            return self._row_to_healing_execution(row) if row else None

    def get_recent_healing_executions(
        self,
        limit: int = 50,
        rule_id: str | None = None,
        status: HealingStatus | None = None,
    ) -> list[SelfHealingExecution]:
        """Get self-healing executions, newest first."""
        with self._connect() as conn:
            query = "SELECT * FROM self_healing_executions WHERE 1=1"
            params: list = []

            if rule_id:
                query += " AND rule_id = ?"
                params.append(rule_id)

            if status:
                query += " AND status = ?"
                params.append(status.value)

            query += " ORDER BY started_at DESC LIMIT ?"
            params.append(limit)

            rows = conn.execute(query, params).fetchall()
            return [self._row_to_healing_execution(row) for row in rows]

    def count_healing_executions(self, rule_id: str, since: datetime) -> int:
        """Count a rule's executions started at or after `since`."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM self_healing_executions WHERE rule_id = ? AND started_at >= ?",
                (rule_id, _ts(since)),
            ).fetchone()
            return row[0] if row else 0

    def get_last_healing_start(self, rule_id: str) -> datetime | None:
        """Start time of a rule's most recent execution."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(started_at) FROM self_healing_executions WHERE rule_id = ?",
                (rule_id,),
            ).fetchone()
            return _parse_ts(row[0]) if row else None

    def _row_to_healing_execution(self, row: sqlite3.Row) -> SelfHealingExecution:
        """Convert a database row to a SelfHealingExecution."""
        return SelfHealingExecution(
            id=row["id"],
            rule_id=row["rule_id"],
            triggering_alert_id=row["triggering_alert_id"],
            remediation_execution_id=row["remediation_execution_id"],
            status=HealingStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            result=row["result"],
        )
