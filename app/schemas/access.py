"""
Access Schemas
==============

Pydantic models for the adapter registry file and the access API.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.enums import DeviceKind, Operation


# ============================================================================
# Adapter registry configuration
# ============================================================================

class AdapterSettings(BaseModel):
    """One entry of the adapter registry JSON file"""
    vendor: str = Field(..., min_length=1, max_length=64, description="Vendor key devices refer to")
    type: Literal["http", "zigbee2mqtt", "simulated"] = Field(..., description="Adapter implementation")
    kinds: Optional[List[DeviceKind]] = Field(
        default=None,
        description="Restrict this adapter to some device kinds (all kinds when omitted)",
    )
    base_url: Optional[str] = Field(default=None, description="Vendor REST base URL (http adapters)")
    confirm_with_status: bool = Field(
        default=True,
        description="Poll status once when the vendor only acknowledges a command",
    )
    topic_prefix: str = Field(default="zigbee2mqtt", description="Zigbee2MQTT base topic")
    min_request_interval_seconds: float = Field(default=0.5, ge=0, description="Minimum gap between vendor calls")
    options: Dict[str, Any] = Field(default_factory=dict, description="Adapter specific options")

    @field_validator("vendor", mode="before")
    def _normalize_vendor(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("type", mode="before")
    def _normalize_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace("-", "")
        return v

    @model_validator(mode="after")
    def _check_required(self):
        if self.type == "http" and not self.base_url:
            raise ValueError(f"Adapter '{self.vendor}' of type http needs base_url")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "vendor": "acme",
                "type": "http",
                "kinds": ["lock"],
                "base_url": "https://api.acme-locks.example/v1",
                "confirm_with_status": True,
                "min_request_interval_seconds": 0.5,
            }
        }
    )


class AdapterRegistrySettings(BaseModel):
    adapters: List[AdapterSettings] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_vendor_kinds(self):
        seen = set()
        for entry in self.adapters:
            for kind in entry.kinds or [None]:
                key = (entry.vendor, kind)
                if key in seen:
                    raise ValueError(f"Adapter for vendor '{entry.vendor}' configured twice")
                seen.add(key)
        return self


# ============================================================================
# Access API
# ============================================================================

class CommandRequest(BaseModel):
    """Request model for dispatching a command to a device"""
    operation: Operation = Field(..., description="Operation to perform")
    params: Dict[str, Any] = Field(default_factory=dict, description="Operation parameters")
    busy_policy: Optional[Literal["queue", "fail_fast"]] = Field(
        default=None,
        description="Override the configured busy policy for this call",
    )

    @field_validator("operation", mode="before")
    def _coerce_operation(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"operation": "unlock", "params": {}}
        }
    )


class GuestGrantRequest(BaseModel):
    """Request model for issuing a guest grant"""
    actor_id: str = Field(..., min_length=1, description="Guest receiving access")
    device_ids: List[str] = Field(..., min_length=1, description="Devices the guest may use")
    valid_from: datetime = Field(..., description="Window start (inclusive)")
    valid_until: datetime = Field(..., description="Window end (inclusive)")

    @model_validator(mode="after")
    def _check_window(self):
        if self.valid_until < self.valid_from:
            raise ValueError("valid_until must not precede valid_from")
        return self


class AuditQuery(BaseModel):
    """Query string for the audit endpoint"""
    device_id: Optional[str] = None
    actor_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)


class HistoryQuery(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class DecisionResponse(BaseModel):
    """Response model for permission preflight checks"""
    device_id: str
    operation: Operation
    allowed: bool
    reason: Optional[str] = None
    message: str
    matched_roles: List[str] = Field(default_factory=list)
    via_guest_grant: bool = False


class AccessRecordResponse(BaseModel):
    """Response model for one audit entry"""
    sequence: Optional[int] = None
    device_id: str
    actor_id: str
    operation: Operation
    requested_at: datetime
    completed_at: Optional[datetime] = None
    outcome: str
    denial_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
