"""
Schemas Module
==============

This module provides Pydantic models for request/response validation.
Schemas ensure data integrity and provide automatic validation.
"""

from app.schemas.access import (
    AccessRecordResponse,
    AdapterRegistrySettings,
    AdapterSettings,
    AuditQuery,
    CommandRequest,
    DecisionResponse,
    GuestGrantRequest,
    HistoryQuery,
)

__all__ = [
    "AccessRecordResponse",
    "AdapterRegistrySettings",
    "AdapterSettings",
    "AuditQuery",
    "CommandRequest",
    "DecisionResponse",
    "GuestGrantRequest",
    "HistoryQuery",
]
