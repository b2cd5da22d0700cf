"""API request/response schemas."""

from docrelay.api.schemas.workflow import (
    ApiResponse,
    CancelWorkflowRequest,
    CreatedSessionResponse,
    CreateWorkflowRequest,
    RecipientRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
    SessionViewResponse,
    SubmitWorkflowRequest,
)

__all__ = [
    "ApiResponse",
    "CancelWorkflowRequest",
    "CreateWorkflowRequest",
    "CreatedSessionResponse",
    "RecipientRequest",
    "SessionListResponse",
    "SessionResponse",
    "SessionStatsResponse",
    "SessionViewResponse",
    "SubmitWorkflowRequest",
]
