"""
Self-Healing Engine - API Routes
================================
"""

from datetime import datetime
from typing import Any, NoReturn, Optional
from fastapi import APIRouter, Body, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from healing_shared.constants import ApprovalStatus, AuditAction, ExecutionStatus, JobType
from healing_shared.schemas.actions import ActionExecution, ApprovalRequest, AutomatedAction
from healing_shared.schemas.jobs import JOB_MODELS, JobResult
from healing_shared.utils.logging import get_logger

from healing_engine.api.schemas import (
    AcknowledgeRequest,
    ActionCreate,
    ApprovalList,
    AssignRequest,
    AuditList,
    DecisionRequest,
    ExecutionList,
    JobAccepted,
    MappingApproval,
    MappingList,
    OperatorRequest,
)
from healing_engine.core.engine import SelfHealingEngine
from healing_engine.core.errors import (
    ApprovalExpired,
    ConfigurationError,
    DeliveryFailure,
    InvalidTransition,
    NotFoundError,
    SelfHealingError,
)
from healing_engine.core.job_runner import JobRunner
from healing_engine.core.stores import MappingWeight

logger = get_logger(__name__)

router = APIRouter()


def _engine(request: Request) -> SelfHealingEngine:
    return request.app.state.engine


def _runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


def _raise_http(error: SelfHealingError) -> NoReturn:
    """Translate an engine error into the matching HTTP status."""
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidTransition, ApprovalExpired)):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ConfigurationError):
        raise HTTPException(
            status_code=422,
            detail={"message": str(error), "errors": error.errors}
        )
    if isinstance(error, DeliveryFailure):
        raise HTTPException(status_code=502, detail=str(error))
    raise HTTPException(status_code=400, detail=str(error))


# =============================================================================
# JOBS
# =============================================================================

@router.post("/jobs/{kind}", tags=["jobs"])
async def submit_job(
    kind: JobType,
    request: Request,
    body: dict[str, Any] = Body(...),
    wait: bool = False
):
    """
    Submit a pattern_scan, action_execution, approval_maintenance or
    learning_analysis job.

    With ``wait=true`` the job runs inline and its JobResult is returned;
    otherwise it is queued and 202 is returned with the job id.
    """
    try:
        job = JOB_MODELS[kind].model_validate({**body, "job_type": kind.value})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    runner = _runner(request)
    if wait:
        return await runner.run(job)

    runner.submit(job)
    logger.info(
        f"Job {job.job_id} ({kind.value}) accepted",
        extra={"job_id": job.job_id, "organization_id": job.organization_id}
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=JobAccepted(
            job_id=job.job_id,
            job_type=kind.value,
            organization_id=job.organization_id,
        ).model_dump(),
    )


@router.get("/jobs/{job_id}", response_model=JobResult, tags=["jobs"])
async def get_job_result(job_id: str, request: Request):
    """Result of a finished job."""
    result = _runner(request).results.get(job_id)
    if not result:
        raise HTTPException(status_code=404, detail="Job not found or still running")
    return result


# =============================================================================
# ACTIONS
# =============================================================================

@router.post("/actions", response_model=AutomatedAction, status_code=201, tags=["actions"])
async def register_action(action_data: ActionCreate, request: Request):
    """Validate and register an automated action."""
    try:
        return _engine(request).register_action(AutomatedAction(**action_data.model_dump()))
    except SelfHealingError as e:
        _raise_http(e)


@router.get("/actions", tags=["actions"])
async def list_actions(organization_id: str, request: Request):
    actions = _engine(request).catalog.for_organization(organization_id)
    return {"actions": actions, "count": len(actions)}


@router.post("/actions/{action_id}/escalations/acknowledge", tags=["actions"])
async def acknowledge_escalation(action_id: str, acknowledgement: AcknowledgeRequest, request: Request):
    """Stop an escalation climbing for one pattern; returns the escalation state."""
    try:
        return _engine(request).acknowledge_escalation(
            acknowledgement.organization_id,
            action_id,
            acknowledgement.pattern_id,
            acknowledgement.acknowledged_by,
        )
    except SelfHealingError as e:
        _raise_http(e)


# =============================================================================
# APPROVALS
# =============================================================================

@router.post("/approvals/{request_id}/approve", response_model=ActionExecution, tags=["approvals"])
async def approve_request(request_id: str, decision: DecisionRequest, request: Request):
    """Approve a pending request and resume its execution."""
    try:
        return await _engine(request).approve(request_id, decision.decided_by, decision.reason)
    except SelfHealingError as e:
        _raise_http(e)


@router.post("/approvals/{request_id}/reject", response_model=ActionExecution, tags=["approvals"])
async def reject_request(request_id: str, decision: DecisionRequest, request: Request):
    try:
        return _engine(request).reject(request_id, decision.decided_by, decision.reason)
    except SelfHealingError as e:
        _raise_http(e)


@router.post("/approvals/{request_id}/assign", response_model=ApprovalRequest, tags=["approvals"])
async def assign_request(request_id: str, assignment: AssignRequest, request: Request):
    """Hand an open request to a reviewer and notify them."""
    try:
        return await _engine(request).assign_approval(
            request_id, assignment.assigned_to, assignment.assigned_by
        )
    except SelfHealingError as e:
        _raise_http(e)


@router.get("/approvals", response_model=ApprovalList, tags=["approvals"])
async def list_approvals(
    organization_id: str,
    request: Request,
    approval_status: Optional[ApprovalStatus] = None,
    pending: bool = False
):
    """Approval requests; ``pending=true`` lists open ones, most urgent first."""
    engine = _engine(request)
    if pending:
        approvals = engine.workflow.list_pending(organization_id)
    else:
        approvals = engine.approvals.query(organization_id, approval_status)
    return ApprovalList(approvals=approvals, count=len(approvals))


# =============================================================================
# EXECUTIONS
# =============================================================================

@router.get("/executions", response_model=ExecutionList, tags=["executions"])
async def list_executions(
    organization_id: str,
    request: Request,
    execution_status: Optional[ExecutionStatus] = None,
    action_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100
):
    executions = _engine(request).executions.query(
        organization_id,
        status=execution_status,
        action_id=action_id,
        since=since,
        limit=limit,
    )
    return ExecutionList(executions=executions, count=len(executions))


@router.get("/executions/{execution_id}", response_model=ActionExecution, tags=["executions"])
async def get_execution(execution_id: str, request: Request):
    execution = _engine(request).executions.get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


@router.post("/executions/{execution_id}/rollback", response_model=ActionExecution, tags=["executions"])
async def rollback_execution(
    execution_id: str,
    request: Request,
    operator: Optional[OperatorRequest] = None
):
    """Reverse a completed execution."""
    try:
        return await _engine(request).rollback(execution_id, (operator or OperatorRequest()).performed_by)
    except SelfHealingError as e:
        _raise_http(e)


@router.post("/executions/{execution_id}/cancel", response_model=ActionExecution, tags=["executions"])
async def cancel_execution(
    execution_id: str,
    request: Request,
    operator: Optional[OperatorRequest] = None
):
    """Cancel an execution that has not started running."""
    try:
        return _engine(request).cancel(execution_id, (operator or OperatorRequest()).performed_by)
    except SelfHealingError as e:
        _raise_http(e)


# =============================================================================
# AUDIT AND STATISTICS
# =============================================================================

@router.get("/audit", response_model=AuditList, tags=["audit"])
async def query_audit(
    organization_id: str,
    request: Request,
    action: Optional[AuditAction] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: Optional[int] = None
):
    entries = _engine(request).audit.query(
        organization_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        limit=limit,
    )
    return AuditList(entries=entries, count=len(entries))


@router.get("/audit/users/{person_id}", response_model=AuditList, tags=["audit"])
async def user_activity(
    person_id: str,
    organization_id: str,
    request: Request,
    days: int = Query(default=7, ge=1),
    limit: int = Query(default=100, ge=1)
):
    """What one person did recently, newest first."""
    entries = _engine(request).audit.user_activity(organization_id, person_id, days=days, limit=limit)
    return AuditList(entries=entries, count=len(entries))


@router.get("/audit/export", response_class=PlainTextResponse, tags=["audit"])
async def export_audit(
    organization_id: str,
    request: Request,
    action: Optional[AuditAction] = None,
    entity_type: Optional[str] = None,
    since: Optional[datetime] = None
):
    """The filtered audit trail as CSV."""
    body = _engine(request).audit.export_csv(
        organization_id, action=action, entity_type=entity_type, since=since
    )
    return PlainTextResponse(
        body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="audit-{organization_id}.csv"'},
    )


@router.get("/statistics", tags=["stats"])
async def get_statistics(organization_id: str, request: Request):
    """Execution, approval and audit counters for an organization."""
    return _engine(request).statistics(organization_id)


@router.get("/safety/statistics", tags=["stats"])
async def get_safety_statistics(organization_id: str, request: Request, days: int = Query(default=7, ge=1)):
    """Gate outcomes over the trailing window."""
    return _engine(request).gate.statistics(organization_id, days=days)


# =============================================================================
# LEARNING
# =============================================================================

@router.get("/learning/mappings", response_model=MappingList, tags=["learning"])
async def list_mappings(organization_id: str, request: Request):
    mappings = _engine(request).learning.weights.for_organization(organization_id)
    return MappingList(mappings=mappings, count=len(mappings))


@router.post(
    "/learning/mappings/{pattern_type}/{action_type}/approve",
    response_model=MappingWeight,
    tags=["learning"],
)
async def approve_mapping(pattern_type: str, action_type: str, approval: MappingApproval, request: Request):
    """Sign off a learned pattern -> action mapping."""
    try:
        return _engine(request).approve_mapping(
            approval.organization_id, pattern_type, action_type, approval.approved_by
        )
    except SelfHealingError as e:
        _raise_http(e)
