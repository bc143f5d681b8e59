"""Domain types for error tracking, alerting, escalation and notification."""

from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


# ── Error Types ──────────────────────────────────────────────────


class ErrorLevel(StrEnum):
    """Severity of a captured error, ordered warning < error < critical < fatal."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK: dict[ErrorLevel, int] = {
    ErrorLevel.WARNING: 1,
    ErrorLevel.ERROR: 2,
    ErrorLevel.CRITICAL: 3,
    ErrorLevel.FATAL: 4,
}


class BreadcrumbLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Breadcrumb(BaseModel):
    """Timestamped trace-context entry recorded ahead of an error."""

    timestamp: float = Field(default_factory=time.time)
    category: str
    message: str
    level: BreadcrumbLevel = BreadcrumbLevel.INFO
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorContext(BaseModel):
    """Where an error happened."""

    workflow_id: str | None = None
    workflow_name: str | None = None
    node_id: str | None = None
    node_name: str | None = None
    execution_id: str | None = None
    user_id: str | None = None
    environment: str = "development"
    version: str = "1.0.0"
    platform: str = ""


class ErrorMetadata(BaseModel):
    """Request-level metadata plus free-form tags and extras."""

    user_agent: str | None = None
    ip_address: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class PerformanceSnapshot(BaseModel):
    """Process resource usage at capture time."""

    cpu_seconds: float | None = None
    memory_mb: float | None = None
    queue_size: int | None = None


class GroupStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    MUTED = "muted"


class ErrorEvent(BaseModel):
    """One error occurrence. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    fingerprint: str
    timestamp: float = Field(default_factory=time.time)
    level: ErrorLevel = ErrorLevel.ERROR
    message: str
    type: str
    stack_trace: str | None = None
    context: ErrorContext = Field(default_factory=ErrorContext)
    metadata: ErrorMetadata = Field(default_factory=ErrorMetadata)
    breadcrumbs: list[Breadcrumb] = Field(default_factory=list)
    performance: PerformanceSnapshot = Field(default_factory=PerformanceSnapshot)
    status: GroupStatus = GroupStatus.OPEN


class Trend(StrEnum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class GroupSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DayBucket(BaseModel):
    date: str  # YYYY-MM-DD (UTC)
    count: int = 0


class HourBucket(BaseModel):
    hour: int  # 0-23 (UTC)
    count: int = 0


class GroupStatistics(BaseModel):
    """Occurrence histograms and derived classification for a group."""

    occurrences_by_day: list[DayBucket] = Field(default_factory=list)  # newest first
    occurrences_by_hour: list[HourBucket] = Field(default_factory=list)
    trend: Trend = Trend.STABLE
    severity: GroupSeverity = GroupSeverity.LOW


class ErrorGroup(BaseModel):
    """Deduplicated issue: every occurrence sharing one fingerprint."""

    id: str = Field(default_factory=new_id)
    fingerprint: str
    title: str
    message: str
    type: str
    level: ErrorLevel
    first_seen: float
    last_seen: float
    count: int = 1
    user_ids: list[str] = Field(default_factory=list)
    status: GroupStatus = GroupStatus.OPEN
    assigned_to: str | None = None
    tags: list[str] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)
    affected_workflows: list[str] = Field(default_factory=list)
    statistics: GroupStatistics = Field(default_factory=GroupStatistics)
    samples: list[ErrorEvent] = Field(default_factory=list)  # newest first
    resolved_at: float | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def user_count(self) -> int:
        return len(self.user_ids)


class ErrorFilter(BaseModel):
    """Search criteria for stored error events."""

    text: str | None = None
    level: ErrorLevel | None = None
    type: str | None = None
    workflow_id: str | None = None
    user_id: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    limit: int = 50
    offset: int = 0


class TrendPoint(BaseModel):
    """One bucket of the error trend series."""

    timestamp: float
    count: int = 0
    levels: dict[str, int] = Field(default_factory=dict)


# ── Alert Types ──────────────────────────────────────────────────


class AlertType(StrEnum):
    ERROR = "error"
    PERFORMANCE = "performance"
    SECURITY = "security"
    INFRASTRUCTURE = "infrastructure"
    BUSINESS = "business"


class AlertSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


class AlertContext(BaseModel):
    environment: str = "development"
    service: str = "faultline"
    version: str = "1.0.0"
    tags: list[str] = Field(default_factory=list)


class AlertRecipients(BaseModel):
    users: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)
    integrations: list[str] = Field(default_factory=list)


class AlertEscalation(BaseModel):
    """Escalation progress mirrored onto the alert."""

    level: int = 0
    max_level: int = 0
    escalated_at: float | None = None
    escalated_to: list[str] = Field(default_factory=list)
    suppress_until: float | None = None

    @model_validator(mode="after")
    def _level_within_max(self) -> AlertEscalation:
        if self.level > self.max_level:
            raise ValueError(
                f"escalation level {self.level} exceeds max level {self.max_level}"
            )
        return self


class Acknowledgment(BaseModel):
    acknowledged_by: str
    acknowledged_at: float
    note: str | None = None


class Resolution(BaseModel):
    resolved_by: str
    resolved_at: float
    resolution: str
    root_cause: str | None = None


class ChannelType(StrEnum):
    EMAIL = "email"
    CHAT = "chat"
    SMS = "sms"
    WEBHOOK = "webhook"
    PUSH = "push"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


class NotificationRecord(BaseModel):
    """One entry in an alert's append-only delivery log."""

    id: str
    channel: ChannelType
    recipient: str
    sent_at: float
    status: NotificationStatus = NotificationStatus.PENDING
    error: str | None = None
    retry_count: int = 0


class AlertSpec(BaseModel):
    """Input for ``AlertManager.create_alert``."""

    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    source: str = "system"
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    recipients: AlertRecipients = Field(default_factory=AlertRecipients)


class Alert(BaseModel):
    """Actionable incident derived from one or more signals."""

    id: str = Field(default_factory=new_id)
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.OPEN
    title: str
    message: str
    source: str = "system"
    fingerprint: str
    timestamp: float = Field(default_factory=time.time)
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: AlertContext = Field(default_factory=AlertContext)
    recipients: AlertRecipients = Field(default_factory=AlertRecipients)
    escalation: AlertEscalation = Field(default_factory=AlertEscalation)
    acknowledgment: Acknowledgment | None = None
    resolution: Resolution | None = None
    notifications: list[NotificationRecord] = Field(default_factory=list)


class AlertFilter(BaseModel):
    """Search criteria for stored alerts."""

    type: AlertType | None = None
    severity: AlertSeverity | None = None
    status: AlertStatus | None = None
    source: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    limit: int = 50
    offset: int = 0


# ── Alert Rules ──────────────────────────────────────────────────


class ConditionOperator(StrEnum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    MATCHES = "matches"


class AlertCondition(BaseModel):
    """``field`` is a (possibly dotted) path on the Alert."""

    field: str
    operator: ConditionOperator
    value: Any = None


class ActionType(StrEnum):
    NOTIFY = "notify"
    ESCALATE = "escalate"
    SUPPRESS = "suppress"
    WEBHOOK = "webhook"
    SCRIPT = "script"


class AlertAction(BaseModel):
    """Rule action. ``config`` keys depend on the action type.

    notify: users, channels, delay_secs
    escalate: delay_secs
    suppress: suppress_for_secs
    webhook: webhook_url
    script: script_path, args
    """

    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)


class ThrottlePolicy(BaseModel):
    window_secs: float
    max_alerts: int


class RuleSchedule(BaseModel):
    """Active window. Days are 0=Sunday .. 6=Saturday; times are HH:MM."""

    days: list[int] = Field(default_factory=lambda: list(range(7)))
    start_time: str = "00:00"
    end_time: str = "23:59"
    timezone: str = "UTC"


class AlertRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    enabled: bool = True
    conditions: list[AlertCondition] = Field(default_factory=list)
    actions: list[AlertAction] = Field(default_factory=list)
    throttle: ThrottlePolicy | None = None
    schedule: RuleSchedule | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = ""
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


# ── Escalation Types ─────────────────────────────────────────────


class EscalationTrigger(BaseModel):
    """Predicates an alert must satisfy. ``None`` means "any"."""

    severities: list[AlertSeverity] | None = None
    types: list[AlertType] | None = None
    sources: list[str] | None = None


class EscalationRecipients(BaseModel):
    users: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)
    integrations: list[str] = Field(default_factory=list)

    def flatten(self) -> list[str]:
        return [*self.users, *self.groups, *self.channels, *self.integrations]


class StopConditions(BaseModel):
    on_acknowledgment: bool = True
    on_resolution: bool = True
    max_retries: int = 3


class EscalationLevel(BaseModel):
    level: int
    name: str = ""
    delay_secs: float | None = None  # from the previous level; None → engine default
    recipients: EscalationRecipients = Field(default_factory=EscalationRecipients)
    notify: bool = True
    auto_escalate: bool = False
    require_acknowledgment: bool = True
    stop_conditions: StopConditions = Field(default_factory=StopConditions)


class EscalationRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    enabled: bool = True
    triggers: list[EscalationTrigger] = Field(default_factory=list)
    levels: list[EscalationLevel] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class EscalationStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class EscalationEventType(StrEnum):
    STARTED = "started"
    ESCALATED = "escalated"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    STOPPED = "stopped"
    FAILED = "failed"
    COMPLETED = "completed"


class EscalationEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    type: EscalationEventType
    level: int
    timestamp: float
    recipients: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EscalationInstance(BaseModel):
    """A running escalation for one alert."""

    id: str = Field(default_factory=new_id)
    alert_id: str
    rule_id: str
    current_level: int = 0
    max_level: int
    started_at: float
    last_escalated_at: float | None = None
    next_escalation_at: float | None = None
    status: EscalationStatus = EscalationStatus.ACTIVE
    history: list[EscalationEvent] = Field(default_factory=list)
    failures: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Notification Types ───────────────────────────────────────────


class RetryPolicy(BaseModel):
    """Exponential backoff policy for failed deliveries."""

    max_retries: int = 3
    retry_delay_secs: float = 60.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-indexed)."""
        return self.retry_delay_secs * (self.backoff_multiplier ** attempt)


class RateLimits(BaseModel):
    """Per-channel rolling request limits."""

    requests_per_minute: int = 60
    requests_per_hour: int = 1000


class NotificationRequest(BaseModel):
    alert_id: str
    recipient: str
    channel: ChannelType
    subject: str
    message: str
    priority: AlertSeverity = AlertSeverity.MEDIUM
    metadata: dict[str, Any] = Field(default_factory=dict)
    template: str | None = None
    endpoint: str | None = None  # overrides the channel's configured URL


class NotificationResult(BaseModel):
    id: str = Field(default_factory=new_id)
    alert_id: str
    channel: ChannelType
    recipient: str
    priority: AlertSeverity = AlertSeverity.MEDIUM
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: float
    delivered_at: float | None = None
    error: str | None = None
    retry_count: int = 0
    retry_at: float | None = None
    request: NotificationRequest | None = None  # rendered, replayed on retry


class NotificationTemplate(BaseModel):
    """Subject/body with literal ``{{var}}`` placeholders."""

    id: str
    name: str = ""
    channel: ChannelType | None = None
    subject: str
    body_template: str
    variables: list[str] = Field(default_factory=list)


class ChannelConfig(BaseModel):
    id: str
    type: ChannelType
    name: str = ""
    enabled: bool = True
    retry_policy: RetryPolicy | None = None  # None → service default
    rate_limits: RateLimits = Field(default_factory=RateLimits)


class ChannelTestResult(BaseModel):
    success: bool
    error: str | None = None


# ── Signal Payloads ──────────────────────────────────────────────


class AlertLifecycleEvent(BaseModel):
    """Payload for alert_acknowledged / alert_resolved / alert_suppressed."""

    alert_id: str
    status: AlertStatus
    actor: str
    note: str | None = None
    resolution: str | None = None
    root_cause: str | None = None
    duration_secs: float | None = None
    timestamp: float = Field(default_factory=time.time)


class ErrorGroupUpdate(BaseModel):
    """Payload for error_group_updated / error_group_assigned."""

    fingerprint: str
    status: GroupStatus | None = None
    assigned_to: str | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    count: int | None = None


class EscalationSignal(BaseModel):
    """Payload for the escalation_* signals."""

    alert_id: str
    escalation_id: str
    rule_id: str = ""
    level: int = 0
    level_name: str = ""
    recipients: list[str] = Field(default_factory=list)
    require_acknowledgment: bool = False
    reason: str = ""
    timestamp: float = Field(default_factory=time.time)


class EscalationRequest(BaseModel):
    """Payload for escalation_requested (an ``escalate`` rule action)."""

    alert_id: str
    delay_secs: float = 0.0
