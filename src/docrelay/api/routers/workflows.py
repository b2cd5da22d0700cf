"""Workflow session API endpoints.

Two audiences share this router:
- recipients, who only ever hold an access token (GET/POST /workflow/{token})
- the issuing system, which creates sessions and manages them by session id

Every handler calls the engine and then result.unwrap(): an Err re-raises its domain
exception and exception_handlers.py turns it into the right status code.

Route order matters! /list and /session/... are declared BEFORE /{token}, otherwise
"list" would be treated as a token.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from docrelay.api.dependencies import get_workflow_service
from docrelay.api.schemas.workflow import (
    ApiResponse,
    CancelWorkflowRequest,
    CreatedSessionResponse,
    CreateWorkflowRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
    SessionViewResponse,
    SubmitWorkflowRequest,
)
from docrelay.application.services import WorkflowService
from docrelay.domain.entities import SessionStatus
from docrelay.domain.value_objects import SessionId

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/create",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[CreatedSessionResponse],
)
async def create_workflow(
    body: CreateWorkflowRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[CreatedSessionResponse]:
    """Create a workflow session and notify its first recipient."""
    result = await service.create_session(
        [r.to_spec() for r in body.recipients],
        metadata=body.metadata,
        document_ref=body.document_ref,
    )
    session = result.unwrap()
    return ApiResponse(
        data=CreatedSessionResponse.from_created(session, service.settings.base_url),
        message="Workflow created successfully",
    )


@router.get("/list", response_model=ApiResponse[SessionListResponse])
async def list_workflows(
    status_filter: SessionStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1),
    limit: int = Query(default=20),
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionListResponse]:
    """List sessions, newest first. limit is clamped to 1..100."""
    result = await service.list_sessions(status=status_filter, page=page, limit=limit)
    return ApiResponse(
        data=SessionListResponse.from_page(result),
        message="Workflows retrieved successfully",
    )


@router.get("/session/{session_id}/status", response_model=ApiResponse[SessionResponse])
async def get_workflow_status(
    session_id: UUID,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionResponse]:
    """Current state of a session."""
    session = (await service.get_session(SessionId(session_id))).unwrap()
    return ApiResponse(
        data=SessionResponse.from_entity(session),
        message="Workflow status retrieved successfully",
    )


@router.get("/session/{session_id}/stats", response_model=ApiResponse[SessionStatsResponse])
async def get_workflow_stats(
    session_id: UUID,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionStatsResponse]:
    """Progress summary of a session."""
    stats = (await service.get_stats(SessionId(session_id))).unwrap()
    return ApiResponse(
        data=SessionStatsResponse.from_stats(stats),
        message="Workflow statistics retrieved successfully",
    )


@router.put("/session/{session_id}/expire", response_model=ApiResponse[SessionResponse])
async def expire_workflow(
    session_id: UUID,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionResponse]:
    """Expire a session now. Calling it on an already finished session is a no-op."""
    session = (await service.expire_session(SessionId(session_id))).unwrap()
    return ApiResponse(
        data=SessionResponse.from_entity(session),
        message="Workflow expired successfully",
    )


@router.post("/session/{session_id}/cancel", response_model=ApiResponse[SessionResponse])
async def cancel_workflow(
    session_id: UUID,
    body: CancelWorkflowRequest | None = None,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionResponse]:
    """Cancel an active session."""
    request = body or CancelWorkflowRequest()
    session = (
        await service.cancel_session(
            SessionId(session_id),
            reason=request.reason,
            cancelled_by=request.cancelled_by,
        )
    ).unwrap()
    return ApiResponse(
        data=SessionResponse.from_entity(session),
        message="Workflow cancelled successfully",
    )


@router.get("/{token}", response_model=ApiResponse[SessionViewResponse])
async def resolve_workflow(
    token: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionViewResponse]:
    """Open a workflow link. 404 for unknown links, 410 for expired ones."""
    view = (await service.resolve(token)).unwrap()
    return ApiResponse(
        data=SessionViewResponse.from_view(view),
        message="Workflow retrieved successfully",
    )


@router.post("/{token}/submit", response_model=ApiResponse[SessionViewResponse])
async def submit_workflow(
    token: str,
    body: SubmitWorkflowRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> ApiResponse[SessionViewResponse]:
    """Submit the form data for this link's step."""
    view = (await service.submit(token, body.form_data)).unwrap()
    return ApiResponse(
        data=SessionViewResponse.from_view(view),
        message="Workflow step submitted successfully",
    )
