"""Payment, webhook and report types shared by targets and the harness."""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIMESTAMP = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})$"
)


class TargetError(Exception):
    """Raised when a target rejects or fails an operation."""


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    SUBMISSION_PENDING = "SUBMISSION_PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    def is_terminal(self) -> bool:
        """Whether no further business progress is expected from this status."""
        return self in _TERMINAL_STATUSES

    def __str__(self) -> str:
        return self.value


_TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.CONFIRMED,
        PaymentStatus.SETTLED,
        PaymentStatus.REJECTED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }
)


def format_time(moment: datetime) -> str:
    """Render a timestamp in RFC 3339 form, in UTC, without trailing zero fractions."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    return text + "Z"


def parse_time(value: Optional[str]) -> datetime:
    """Parse an RFC 3339 timestamp; fractions finer than microseconds are truncated."""
    if not value:
        return ZERO_TIME
    match = _TIMESTAMP.match(value)
    if match is None:
        raise TargetError(f"invalid timestamp {value!r}")
    text = match["base"]
    if match["frac"]:
        text += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    text += "+00:00" if tz == "Z" else tz
    return datetime.fromisoformat(text)


def _parse_status(value: Any) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise TargetError(f"invalid payment status {value!r}") from None


@dataclass
class CreatePaymentRequest:
    merchant_id: str
    idempotency_key: str
    amount_cents: int
    pix_key: str
    description: str = ""
    correlation_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "merchant_id": self.merchant_id,
            "idempotency_key": self.idempotency_key,
            "amount_cents": self.amount_cents,
            "pix_key": self.pix_key,
        }
        if self.description:
            data["description"] = self.description
        if self.correlation_id:
            data["correlation_id"] = self.correlation_id
        return data


@dataclass
class CreatePaymentResponse:
    payment_id: str = ""
    status: Optional[PaymentStatus] = None
    provider_ref: str = ""
    idempotency_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "payment_id": self.payment_id,
            "status": self.status.value if self.status is not None else "",
        }
        if self.provider_ref:
            data["provider_reference"] = self.provider_ref
        data["idempotency_key"] = self.idempotency_key
        return data


@dataclass
class Payment:
    id: str
    merchant_id: str
    idempotency_key: str
    idempotency_hash: str
    amount_cents: int
    pix_key: str
    status: PaymentStatus
    description: str = ""
    provider_ref: str = ""
    version: int = 0
    created_at: datetime = ZERO_TIME
    updated_at: datetime = ZERO_TIME

    def copy(self) -> "Payment":
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "payment_id": self.id,
            "merchant_id": self.merchant_id,
            "idempotency_key": self.idempotency_key,
            "idempotency_hash": self.idempotency_hash,
            "amount_cents": self.amount_cents,
            "pix_key": self.pix_key,
        }
        if self.description:
            data["description"] = self.description
        data["status"] = self.status.value
        if self.provider_ref:
            data["provider_reference"] = self.provider_ref
        data["version"] = self.version
        data["created_at"] = format_time(self.created_at)
        data["updated_at"] = format_time(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payment":
        """Build a payment from its JSON form; missing fields take zero values."""
        return cls(
            id=data.get("payment_id", ""),
            merchant_id=data.get("merchant_id", ""),
            idempotency_key=data.get("idempotency_key", ""),
            idempotency_hash=data.get("idempotency_hash", ""),
            amount_cents=int(data.get("amount_cents", 0)),
            pix_key=data.get("pix_key", ""),
            description=data.get("description", ""),
            status=_parse_status(data.get("status", "")),
            provider_ref=data.get("provider_reference", ""),
            version=int(data.get("version", 0)),
            created_at=parse_time(data.get("created_at")),
            updated_at=parse_time(data.get("updated_at")),
        )


@dataclass
class WebhookEvent:
    event_id: str
    provider_ref: str
    payment_status: PaymentStatus
    occurred_at: datetime = ZERO_TIME
    raw_payload: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "provider_reference": self.provider_ref,
            "payment_status": self.payment_status.value,
            "occurred_at": format_time(self.occurred_at),
        }
        if self.raw_payload:
            data["raw_payload"] = dict(self.raw_payload)
        return data


@dataclass(frozen=True)
class TargetSnapshot:
    payments: int = 0
    webhooks_seen: int = 0
    outbox_queued: int = 0
    outbox_processed: int = 0


@runtime_checkable
class Target(Protocol):
    """A payment system the harness can attack."""

    def create_payment(self, request: CreatePaymentRequest) -> Payment:
        """Create (or idempotently return) a payment."""

    def get_payment(self, payment_id: str) -> Payment:
        """Read a payment by id."""

    def handle_webhook(self, event: WebhookEvent) -> None:
        """Deliver a provider webhook event."""

    def reconcile(self, payment_id: str) -> None:
        """Reconcile a payment against the provider."""


@runtime_checkable
class CrashableTarget(Protocol):
    """A target exposing crash/reset hooks."""

    def reset(self) -> None:
        """Drop all state, simulating a crash."""

    def snapshot(self) -> TargetSnapshot:
        """Return counters describing current state."""


@dataclass
class Summary:
    system_name: str = ""
    version: str = ""
    total_scenarios_executed: int = 0
    max_concurrency_level: int = 0
    faults_injected: list[str] = field(default_factory=list)
    termination_reason: str = ""


@dataclass
class SystemAnalysis:
    architecture_type: str = ""
    fsm_valid: bool = False
    idempotency_strength: str = ""
    replay_safety: str = ""
    outbox_correctness: str = ""
    psp_isolation: str = ""
    optimistic_locking: str = ""


@dataclass
class Invariant:
    name: str
    status: str
    evidence: str
    risk_level: str


@dataclass
class AttackResult:
    category: str
    scenario: str
    expected_behavior: str
    observed_behavior: str = ""
    result: str = ""
    notes: str = ""


@dataclass
class CriticalBreak:
    title: str
    severity: str
    scenario: str
    root_cause: str
    financial_impact: str
    reproduction_steps: list[str] = field(default_factory=list)
    why_critical: str = ""


@dataclass
class Issue:
    title: str
    description: str
    impact: str = ""
    likelihood: str = ""


def _issue_dict(issue: Issue) -> dict[str, Any]:
    data: dict[str, Any] = {"title": issue.title, "description": issue.description}
    if issue.impact:
        data["impact"] = issue.impact
    if issue.likelihood:
        data["likelihood"] = issue.likelihood
    return data


@dataclass
class Confidence:
    evidence_quality: str = ""
    reproducibility: str = ""
    coverage_of_chaos_scenarios: str = ""


@dataclass
class FinalVerdict:
    status: str = ""
    resilience_score: int = 0
    conclusion: str = ""


@dataclass
class Report:
    summary: Summary = field(default_factory=Summary)
    system_analysis: SystemAnalysis = field(default_factory=SystemAnalysis)
    invariants: list[Invariant] = field(default_factory=list)
    attack_results: list[AttackResult] = field(default_factory=list)
    critical_breaks: list[CriticalBreak] = field(default_factory=list)
    major_issues: list[Issue] = field(default_factory=list)
    minor_issues: list[Issue] = field(default_factory=list)
    confidence: Confidence = field(default_factory=Confidence)
    final_verdict: FinalVerdict = field(default_factory=FinalVerdict)

    def to_dict(self) -> dict[str, Any]:
        """Return the report as JSON-ready data."""
        return {
            "summary": dataclasses.asdict(self.summary),
            "system_analysis": dataclasses.asdict(self.system_analysis),
            "invariants": [dataclasses.asdict(i) for i in self.invariants],
            "attack_results": [dataclasses.asdict(r) for r in self.attack_results],
            "critical_breaks": [dataclasses.asdict(c) for c in self.critical_breaks],
            "major_issues": [_issue_dict(i) for i in self.major_issues],
            "minor_issues": [_issue_dict(i) for i in self.minor_issues],
            "confidence": dataclasses.asdict(self.confidence),
            "final_verdict": dataclasses.asdict(self.final_verdict),
        }