from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .utils import utc_now


class PlanTier(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PRO = "pro"


class SubjectKind(str, Enum):
    USER = "user"
    IP = "ip"


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class BackendState(str, Enum):
    NOT_STARTED = "not_started"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    BUILT = "built"
    STARTING = "starting"
    STARTING_EXISTING = "starting_existing"
    HEALTH_CHECKING = "health_checking"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class PlanLimits(BaseModel):
    """Quota of a tier. ``None`` means unlimited."""

    model_config = ConfigDict(frozen=True)

    max_ops_per_day: Optional[int] = None
    max_file_size_bytes: Optional[int] = None
    max_pages: Optional[int] = None


class Subject(BaseModel):
    """The entity a daily counter is kept for: a user id or a client IP."""

    model_config = ConfigDict(frozen=True)

    kind: SubjectKind
    id: str

    @classmethod
    def for_request(cls, subject_id: Optional[str], client_ip: str) -> "Subject":
        if subject_id:
            return cls(kind=SubjectKind.USER, id=subject_id)
        return cls(kind=SubjectKind.IP, id=client_ip)


class UserRecord(BaseModel):
    id: str
    email: str
    plan: str = "free"
    plan_expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    email: Optional[str] = None
    tier: PlanTier = PlanTier.ANONYMOUS
    is_active: bool = True


class LimitContext(BaseModel):
    """Decision attached to an admitted request and consumed by the proxy."""

    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    subject_email: Optional[str] = None
    client_ip: str
    tier: PlanTier
    max_pages: Optional[int] = None
    content_length: int = 0

    @property
    def subject(self) -> Subject:
        return Subject.for_request(self.subject_id, self.client_ip)


class OperationLogEntry(BaseModel):
    subject_id: Optional[str] = None
    subject_email: Optional[str] = None
    ip_address: str
    operation: str
    status: OperationStatus = OperationStatus.SUCCESS
    file_size_bytes: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class OperationRecord(OperationLogEntry):
    id: str


class RejectionBody(BaseModel):
    error: str
    reason: str
    limit: Optional[Union[str, int]] = None


class UsageLimits(BaseModel):
    used: int
    limit: Optional[int]
    plan: PlanTier
    maxFileSizeMB: Optional[int]
    maxPages: Optional[int]


class OperationCount(BaseModel):
    operation: str
    count: int


class UsageStats(BaseModel):
    today: int
    thisWeek: int
    thisMonth: int
    total: int
    byOperation: List[OperationCount]


class BackendStatus(BaseModel):
    state: BackendState
    pid: Optional[int] = None
    base_url: str
    last_exit_code: Optional[int] = None


class SystemHealth(BaseModel):
    status: str
    components: Dict[str, str]
    backend: BackendStatus
    timestamp: datetime


class OperationList(BaseModel):
    operations: List[OperationRecord]
