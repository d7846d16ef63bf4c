from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models import ApprovalStatus, DeliveryStatus


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    allowed_radius_m: float | None = Field(default=None, ge=0)


class AttendanceCheckinRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    site_id: int | None = Field(default=None, ge=1)
    remarks: str | None = Field(default=None, max_length=2000)
    ts_utc: datetime | None = None


class GeofenceRead(BaseModel):
    is_inside: bool
    distance_m: float | None
    allowed_radius_m: float | None
    decision: str
    validated: bool


class AttendanceEventRead(BaseModel):
    id: int
    employee_id: str
    site_id: int | None
    lat: float
    lon: float
    ts_utc: datetime
    status: ApprovalStatus
    distance_m: float | None
    is_inside_geofence: bool
    remarks: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceCheckinResponse(BaseModel):
    event: AttendanceEventRead
    geofence: GeofenceRead
    escalated: bool
    notification: dict[str, Any] | None = None


class AttendanceDecisionRequest(BaseModel):
    status: Literal["Approved", "Rejected"]
    reason: str | None = Field(default=None, max_length=2000)


class AttendanceDecisionResponse(BaseModel):
    event: AttendanceEventRead
    notification: dict[str, Any] | None = None


class ApplicationNotifyRequest(BaseModel):
    type: Literal["new_request", "decision"]
    id: str = Field(min_length=1, max_length=128)
    status: Literal["Approved", "Rejected"] | None = None
    rejection_reason: str | None = Field(default=None, max_length=2000)


class AttendanceNotifyRequest(BaseModel):
    event_id: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=2000)


class TaskNotifyRequest(BaseModel):
    type: Literal["task_assigned", "task_update"]
    task_id: str = Field(min_length=1, max_length=128)
    target_user_ids: list[str] = Field(min_length=1)


class MonthlyReportRequest(BaseModel):
    type: Literal["attendance", "payslip"]
    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    target_email: str | None = Field(default=None, max_length=255)


class HolidayNotifyRequest(BaseModel):
    holiday_id: str = Field(min_length=1, max_length=128)


class BroadcastRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    body: str | None = Field(default=None, max_length=4000)
    template_slug: str | None = Field(default=None, max_length=128)
    variables: dict[str, Any] = Field(default_factory=dict)
    target_roles: list[str] = Field(default_factory=list)
    user_ids: list[str] = Field(default_factory=list)
    badge_count: int | None = Field(default=None, ge=0)
    url: str | None = Field(default=None, max_length=2000)
    include_email: bool = False
    include_whatsapp: bool = False

    @model_validator(mode="after")
    def validate_content(self) -> "BroadcastRequest":
        if not self.template_slug and not ((self.title or "").strip() and (self.body or "").strip()):
            raise ValueError("Either template_slug or both title and body are required")
        if not self.target_roles and not self.user_ids:
            raise ValueError("At least one of target_roles or user_ids is required")
        return self


class DispatchSummaryRead(BaseModel):
    dispatch_id: str
    event_type: str
    status: DeliveryStatus
    recipient_count: int
    attempted_count: int
    success_count: int
    failure_count: int
    notified_count: int
    invalid_token_count: int
    channels: dict[str, dict[str, int]]
    skipped_channels: list[str]
    record_id: int | None = None


class HolidayNotifyResponse(BaseModel):
    holiday_id: str
    already_sent: bool
    summary: DispatchSummaryRead | None = None


class AnnouncementRunResponse(BaseModel):
    processed: int
    results: list[dict[str, Any]]


class BirthdayRunResponse(BaseModel):
    run_date: date
    checked: int
    celebrant_ids: list[str]
    summary: DispatchSummaryRead


class ResourceCapabilityRead(BaseModel):
    view_all: bool
    view_team: bool
    view_self: bool
    approve: bool


class CapabilitiesResponse(BaseModel):
    uid: str
    roles: list[str]
    has_subordinates: bool
    capabilities: dict[str, ResourceCapabilityRead]


class ScopedRecordsResponse(BaseModel):
    resource: str
    scope: str
    truncated: bool
    degraded: bool
    items: list[dict[str, Any]]


class PushTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=8000)


class PushTokenResponse(BaseModel):
    ok: bool
    token_count: int


class DeliveryRecordRead(BaseModel):
    id: int
    dispatch_id: str
    event_type: str
    title: str
    template_slug: str | None
    target_roles: list[str] | None
    user_ids: list[str] | None
    employee_ids: list[str] | None
    channels: list[str]
    recipient_count: int
    attempted_count: int
    success_count: int
    failure_count: int
    notified_count: int
    invalid_token_count: int
    channel_breakdown: dict[str, Any]
    skipped_channels: list[str]
    status: DeliveryStatus
    created_by: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
