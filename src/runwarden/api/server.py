"""FastAPI server for RunWarden API."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from runwarden.core.executor import (
    ExecutionNotFoundError,
    RunbookNotFoundError,
    RunbookValidationError,
)
from runwarden.core.self_healing import HealingExecutionNotFoundError, RuleNotFoundError
from runwarden.models import (
    Alert,
    AlertRule,
    DryRunResult,
    ExecutionStatus,
    Runbook,
    RunbookDefinition,
    RunbookExecution,
    SelfHealingExecution,
    SelfHealingRule,
    utc_now,
)

if TYPE_CHECKING:
    from runwarden.core.supervisor import Supervisor

# Global supervisor reference (set by daemon)
_supervisor: "Supervisor | None" = None


def set_supervisor(supervisor: "Supervisor | None") -> None:
    """Set the global supervisor reference."""
    global _supervisor
    _supervisor = supervisor


def get_supervisor() -> "Supervisor":
    """Get the supervisor instance."""
    if _supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return _supervisor


# Security
security = HTTPBearer(auto_error=False)


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> bool:
    """Verify the API token if authentication is enabled."""
    if _supervisor is None:
        return True

    config = _supervisor.config
    if not config.api.auth.enabled:
        return True

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    expected_token = config.api.auth.token
    if credentials.credentials != expected_token:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


# Request/Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float | None = None
    runbooks_total: int = 0
    executions_active: int = 0
    pending_approvals: int = 0


class RunbookCreateRequest(RunbookDefinition):
    id: str | None = None


class RunbookListResponse(BaseModel):
    runbooks: list[Runbook]
    total: int


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str]


class ExecuteRequest(BaseModel):
    trigger_info: str | None = None


class ExecutionResponse(BaseModel):
    success: bool
    message: str
    execution_id: str | None = None


class ExecutionListResponse(BaseModel):
    executions: list[RunbookExecution]
    total: int


class AlertFireRequest(BaseModel):
    alert: Alert
    rule: AlertRule


class HealingRuleRequest(BaseModel):
    name: str
    trigger_condition: str
    remediation_runbook_id: str
    description: str = ""
    max_executions_per_hour: int = Field(default=3, ge=0)
    cooldown_seconds: int = Field(default=600, ge=0)
    requires_approval: bool = False
    is_enabled: bool = True


class HealingRuleListResponse(BaseModel):
    rules: list[SelfHealingRule]
    total: int


class HealingExecutionListResponse(BaseModel):
    executions: list[SelfHealingExecution]
    total: int


def _build_rule(request: HealingRuleRequest, supervisor: "Supervisor") -> SelfHealingRule:
    """Turn a rule request into a validated rule."""
    try:
        rule = SelfHealingRule.create(
            name=request.name,
            trigger_condition=request.trigger_condition,
            remediation_runbook_id=request.remediation_runbook_id,
            description=request.description,
            max_executions_per_hour=request.max_executions_per_hour,
            cooldown_period=timedelta(seconds=request.cooldown_seconds),
            requires_approval=request.requires_approval,
            is_enabled=request.is_enabled,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if supervisor.get_runbook(rule.remediation_runbook_id) is None:
        raise HTTPException(
            status_code=400,
            detail=f"Remediation runbook '{rule.remediation_runbook_id}' not found",
        )
    return rule


# Create FastAPI app
def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="RunWarden API",
        description="Runbook orchestration and self-healing",
        version="0.1.0",
    )

    # Health endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Get daemon health status."""
        from runwarden import __version__

        supervisor = get_supervisor()

        uptime = None
        if supervisor.started_at is not None:
            uptime = (utc_now() - supervisor.started_at).total_seconds()

        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime_seconds=uptime,
            runbooks_total=len(supervisor.list_runbooks()),
            executions_active=len(supervisor.executor.list_active_executions()),
            pending_approvals=len(supervisor.self_healing.get_pending_approvals()),
        )

    # Runbook endpoints

    @app.get("/api/v1/runbooks", response_model=RunbookListResponse)
    async def list_runbooks(
        enabled: bool | None = Query(None, description="Filter by enabled status"),
        _auth: bool = Depends(verify_token),
    ):
        """List all runbooks."""
        supervisor = get_supervisor()
        runbooks = supervisor.list_runbooks()
        if enabled is not None:
            runbooks = [r for r in runbooks if r.is_enabled == enabled]
        return RunbookListResponse(runbooks=runbooks, total=len(runbooks))

    @app.post("/api/v1/runbooks", response_model=Runbook, status_code=201)
    async def create_runbook(
        request: RunbookCreateRequest,
        _auth: bool = Depends(verify_token),
    ):
        """Create a runbook."""
        supervisor = get_supervisor()
        definition = RunbookDefinition.model_validate(request.model_dump(exclude={"id"}))

        try:
            return supervisor.create_runbook(definition, runbook_id=request.id)
        except RunbookValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/api/v1/runbooks/validate", response_model=ValidationResponse)
    async def validate_runbook(
        definition: RunbookDefinition,
        _auth: bool = Depends(verify_token),
    ):
        """Validate a runbook definition without storing it."""
        supervisor = get_supervisor()
        result = supervisor.validate_runbook(definition.to_runbook())
        return ValidationResponse(is_valid=result.is_valid, errors=result.errors)

    @app.get("/api/v1/runbooks/{runbook_id}", response_model=Runbook)
    async def get_runbook(
        runbook_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Get a runbook."""
        supervisor = get_supervisor()
        runbook = supervisor.get_runbook(runbook_id)
        if runbook is None:
            raise HTTPException(status_code=404, detail=f"Runbook '{runbook_id}' not found")
        return runbook

    @app.put("/api/v1/runbooks/{runbook_id}", response_model=Runbook)
    async def update_runbook(
        runbook_id: str,
        definition: RunbookDefinition,
        _auth: bool = Depends(verify_token),
    ):
        """Replace a runbook's definition, creating a new version."""
        supervisor = get_supervisor()
        try:
            return supervisor.update_runbook(runbook_id, definition)
        except RunbookNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RunbookValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors)

    @app.delete("/api/v1/runbooks/{runbook_id}")
    async def delete_runbook(
        runbook_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Delete a runbook."""
        supervisor = get_supervisor()
        try:
            supervisor.delete_runbook(runbook_id)
        except RunbookNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"success": True, "runbook_id": runbook_id}

    @app.post("/api/v1/runbooks/{runbook_id}/execute", response_model=ExecutionResponse)
    async def execute_runbook(
        runbook_id: str,
        request: ExecuteRequest | None = None,
        _auth: bool = Depends(verify_token),
    ):
        """Start a runbook execution."""
        supervisor = get_supervisor()
        trigger_info = request.trigger_info if request else None

        try:
            execution_id = await supervisor.start_runbook(runbook_id, trigger_info=trigger_info, source="api")
        except RunbookNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RunbookValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors)

        return ExecutionResponse(
            success=True,
            message=f"Runbook '{runbook_id}' started",
            execution_id=execution_id,
        )

    @app.post("/api/v1/runbooks/{runbook_id}/dry-run", response_model=DryRunResult)
    async def dry_run_runbook(
        runbook_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Preview what a runbook would execute without running it."""
        supervisor = get_supervisor()
        try:
            return supervisor.dry_run_runbook(runbook_id)
        except RunbookNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # Execution endpoints

    @app.get("/api/v1/executions", response_model=ExecutionListResponse)
    async def list_executions(
        runbook_id: str | None = Query(None, description="Filter by runbook ID"),
        status: ExecutionStatus | None = Query(None, description="Filter by status"),
        limit: int = Query(100, le=500, description="Max executions to return"),
        _auth: bool = Depends(verify_token),
    ):
        """List runbook executions, most recent first."""
        supervisor = get_supervisor()
        executions = supervisor.db.list_executions(runbook_id=runbook_id, status=status, limit=limit)
        # Prefer live state for executions still in flight
        executions = [
            supervisor.executor.get_execution(e.id) if supervisor.executor.is_active(e.id) else e
            for e in executions
        ]
        return ExecutionListResponse(executions=executions, total=len(executions))

    @app.get("/api/v1/executions/{execution_id}", response_model=RunbookExecution)
    async def get_execution(
        execution_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Get an execution with its steps."""
        supervisor = get_supervisor()
        execution = supervisor.executor.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution '{execution_id}' not found")
        return execution

    async def _control(execution_id: str, action: str) -> ExecutionResponse:
        supervisor = get_supervisor()
        handler = {
            "pause": supervisor.executor.pause_execution,
            "resume": supervisor.executor.resume_execution,
            "cancel": supervisor.executor.cancel_execution,
        }[action]

        try:
            changed = await handler(execution_id)
        except ExecutionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        if not changed:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot {action} execution '{execution_id}' in its current state",
            )
        return ExecutionResponse(success=True, message=f"Execution {action} requested", execution_id=execution_id)

    @app.post("/api/v1/executions/{execution_id}/pause", response_model=ExecutionResponse)
    async def pause_execution(execution_id: str, _auth: bool = Depends(verify_token)):
        """Pause an active execution."""
        return await _control(execution_id, "pause")

    @app.post("/api/v1/executions/{execution_id}/resume", response_model=ExecutionResponse)
    async def resume_execution(execution_id: str, _auth: bool = Depends(verify_token)):
        """Resume a paused execution."""
        return await _control(execution_id, "resume")

    @app.post("/api/v1/executions/{execution_id}/cancel", response_model=ExecutionResponse)
    async def cancel_execution(execution_id: str, _auth: bool = Depends(verify_token)):
        """Cancel an active execution."""
        return await _control(execution_id, "cancel")

    # Webhook Trigger Endpoint

    @app.post("/api/v1/webhooks/{runbook_id}", response_model=ExecutionResponse)
    async def webhook_trigger(
        runbook_id: str,
        request: Request,
        x_signature_256: str | None = Header(None),
        x_hub_signature_256: str | None = Header(None),
    ):
        """Trigger a runbook via a signed webhook."""
        supervisor = get_supervisor()

        if supervisor.get_runbook(runbook_id) is None:
            raise HTTPException(status_code=404, detail=f"Runbook '{runbook_id}' not found")

        body = await request.body()
        signature = x_signature_256 or x_hub_signature_256
        source_ip = request.client.host if request.client else None

        result = await supervisor.handle_webhook(runbook_id, body, signature, source_ip)
        if not result.success:
            status_code = 400
            if result.message == "Invalid signature":
                status_code = 401
            elif result.message.endswith("not allowed"):
                status_code = 403
            raise HTTPException(status_code=status_code, detail=result.message)

        return ExecutionResponse(
            success=True,
            message=f"Runbook '{runbook_id}' triggered via webhook",
            execution_id=result.execution_id,
        )

    # Alert endpoints

    @app.post("/api/v1/alerts/fire")
    async def fire_alert(
        request: AlertFireRequest,
        _auth: bool = Depends(verify_token),
    ):
        """Publish a fired alert to the self-healing engine."""
        supervisor = get_supervisor()
        supervisor.fire_alert(request.alert, request.rule)
        return {"success": True, "alert_id": request.alert.id}

    @app.post("/api/v1/alerts/resolve")
    async def resolve_alert(
        alert: Alert,
        _auth: bool = Depends(verify_token),
    ):
        """Publish a resolved alert."""
        supervisor = get_supervisor()
        supervisor.resolve_alert(alert)
        return {"success": True, "alert_id": alert.id}

    # Self-healing endpoints

    @app.get("/api/v1/healing/rules", response_model=HealingRuleListResponse)
    async def list_healing_rules(
        enabled_only: bool = Query(False),
        _auth: bool = Depends(verify_token),
    ):
        """List self-healing rules."""
        supervisor = get_supervisor()
        rules = supervisor.self_healing.get_rules(enabled_only=enabled_only)
        return HealingRuleListResponse(rules=rules, total=len(rules))

    @app.post("/api/v1/healing/rules", response_model=SelfHealingRule, status_code=201)
    async def create_healing_rule(
        request: HealingRuleRequest,
        _auth: bool = Depends(verify_token),
    ):
        """Create a self-healing rule."""
        supervisor = get_supervisor()
        rule = _build_rule(request, supervisor)
        return supervisor.self_healing.create_rule(rule)

    @app.put("/api/v1/healing/rules/{rule_id}", response_model=SelfHealingRule)
    async def update_healing_rule(
        rule_id: str,
        request: HealingRuleRequest,
        _auth: bool = Depends(verify_token),
    ):
        """Replace a self-healing rule."""
        supervisor = get_supervisor()
        rule = _build_rule(request, supervisor).model_copy(update={"id": rule_id})
        try:
            return supervisor.self_healing.update_rule(rule)
        except RuleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.delete("/api/v1/healing/rules/{rule_id}")
    async def delete_healing_rule(
        rule_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Delete a self-healing rule."""
        supervisor = get_supervisor()
        try:
            supervisor.self_healing.delete_rule(rule_id)
        except RuleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"success": True, "rule_id": rule_id}

    @app.post("/api/v1/healing/rules/{rule_id}/trigger", response_model=SelfHealingExecution)
    async def trigger_healing_rule(
        rule_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Run a rule's remediation runbook now."""
        supervisor = get_supervisor()
        try:
            return await supervisor.self_healing.trigger_manually(rule_id)
        except RuleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/api/v1/healing/executions", response_model=HealingExecutionListResponse)
    async def list_healing_executions(
        pending: bool = Query(False, description="Only executions awaiting approval"),
        limit: int = Query(50, le=500),
        _auth: bool = Depends(verify_token),
    ):
        """List recent self-healing executions."""
        supervisor = get_supervisor()
        if pending:
            executions = supervisor.self_healing.get_pending_approvals()
        else:
            executions = supervisor.self_healing.get_recent_executions(limit=limit)
        return HealingExecutionListResponse(executions=executions, total=len(executions))

    @app.post("/api/v1/healing/executions/{execution_id}/approve", response_model=SelfHealingExecution)
    async def approve_healing_execution(
        execution_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Approve a pending self-healing execution."""
        supervisor = get_supervisor()
        try:
            return await supervisor.self_healing.approve_execution(execution_id)
        except HealingExecutionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RuleNotFoundError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/api/v1/healing/executions/{execution_id}/reject", response_model=SelfHealingExecution)
    async def reject_healing_execution(
        execution_id: str,
        _auth: bool = Depends(verify_token),
    ):
        """Reject a pending self-healing execution."""
        supervisor = get_supervisor()
        try:
            return supervisor.self_healing.reject_execution(execution_id)
        except HealingExecutionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    return app


async def run_server(supervisor: "Supervisor", host: str = "127.0.0.1", port: int = 9877) -> None:
    """Run the API server."""
    import uvicorn

    set_supervisor(supervisor)
    app = create_app()

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    await server.serve()
