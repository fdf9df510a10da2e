"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .jobs import ApprovalRequest, CreateJobRequest, InputRequest, SaveLogRequest

__all__ = [
    "ApiResponse",
    "ApprovalRequest",
    "CreateJobRequest",
    "InputRequest",
    "ResponseMeta",
    "SaveLogRequest",
]
