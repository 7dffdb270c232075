"""Grievance API schemas shared across routers."""

from .base import (
    EngineBaseModel,
    ErrorDetail,
    ErrorResponse,
    PaginatedResponse,
)

__all__ = [
    "EngineBaseModel",
    "PaginatedResponse",
    "ErrorDetail",
    "ErrorResponse",
]
