"""Bounded, PII-redacting audit trail of verification outcomes.

One record is written per top-level pipeline invocation. Records live only
in memory: a fixed-capacity ring buffer that evicts the oldest record
first.
"""

import secrets
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime

from ..costs import ApiCosts
from ..logging_config import get_logger
from ..verification.models import (
    BaseVerificationResult,
    FinalOutcome,
    RetryAttempt,
)
from ..verification.pii import PIIDetector

logger = get_logger(__name__)


def generate_audit_id() -> str:
    return f"verify_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


@dataclass
class AuditEntry:
    """Audit data collected while a pipeline runs.

    Holds raw prompt/response text; the log sanitizes both when the entry
    is recorded. retry_attempts is append-only.
    """

    request_id: str
    service: str
    original_prompt: str
    candidate_response: str
    result: BaseVerificationResult | None = None
    retry_attempts: list[RetryAttempt] = field(default_factory=list)
    final_outcome: FinalOutcome = FinalOutcome.REJECTED
    total_processing_time_ms: float = 0.0
    user_id: str | None = None
    session_id: str | None = None
    api_costs: ApiCosts = field(default_factory=ApiCosts)
    error: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class AuditRecord:
    """Immutable, sanitized record as stored in the log."""

    audit_id: str
    request_id: str
    service: str
    sanitized_prompt: str
    sanitized_response: str
    result: BaseVerificationResult | None
    retry_attempts: tuple[RetryAttempt, ...]
    final_outcome: FinalOutcome
    total_processing_time_ms: float
    timestamp: datetime
    user_id: str | None = None
    session_id: str | None = None
    api_costs: ApiCosts = field(default_factory=ApiCosts)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "audit_id": self.audit_id,
            "request_id": self.request_id,
            "service": self.service,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "sanitized_prompt": self.sanitized_prompt,
            "sanitized_response": self.sanitized_response,
            "result": self.result.model_dump(mode="json") if self.result else None,
            "retry_attempts": [a.model_dump(mode="json") for a in self.retry_attempts],
            "final_outcome": self.final_outcome.value,
            "total_processing_time_ms": round(self.total_processing_time_ms, 1),
            "api_costs": self.api_costs.to_dict(),
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditLog:
    """In-memory ring buffer of AuditRecords.

    Features:
    - PII in prompts and responses replaced with typed placeholder tags
    - Capacity-bounded, oldest record evicted first
    - Appends happen under a lock, so a record is stored whole or not at all
    """

    def __init__(
        self,
        capacity: int = 1000,
        sanitize: bool = True,
        detailed_logging: bool = True,
        detector: PIIDetector | None = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.sanitize = sanitize
        self.detailed_logging = detailed_logging
        self.detector = detector or PIIDetector()

        self._records: deque[AuditRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> str:
        """Sanitize and store an entry, returning its audit id."""
        audit_id = generate_audit_id()
        stored = AuditRecord(
            audit_id=audit_id,
            request_id=entry.request_id,
            service=entry.service,
            sanitized_prompt=self.sanitize_text(entry.original_prompt),
            sanitized_response=self.sanitize_text(entry.candidate_response),
            result=entry.result.model_copy(deep=True) if entry.result else None,
            retry_attempts=tuple(entry.retry_attempts),
            final_outcome=entry.final_outcome,
            total_processing_time_ms=entry.total_processing_time_ms,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            session_id=entry.session_id,
            api_costs=entry.api_costs,
            error=self.sanitize_text(entry.error) if entry.error else None,
        )

        with self._lock:
            self._records.append(stored)

        if self.detailed_logging:
            logger.info(
                "Verification audit [%s]: service=%s outcome=%s score=%s time=%.0fms retries=%d issues=%d",
                audit_id,
                stored.service,
                stored.final_outcome.value,
                f"{stored.result.overall_score:.1f}" if stored.result else "n/a",
                stored.total_processing_time_ms,
                len(stored.retry_attempts),
                len(stored.result.issues) if stored.result else 0,
            )
        return audit_id

    def sanitize_text(self, text: str) -> str:
        if not self.sanitize:
            return text
        return self.detector.redact(text)

    def get(self, audit_id: str) -> AuditRecord | None:
        with self._lock:
            for record in reversed(self._records):
                if record.audit_id == audit_id:
                    return record
        return None

    def get_audit_logs(self, limit: int = 50) -> list[AuditRecord]:
        """Most recent records, oldest first."""
        if limit <= 0:
            return []
        with self._lock:
            records = list(self._records)
        return records[-limit:]

    def get_stats(self) -> dict:
        """Aggregate stats over every retained record."""
        with self._lock:
            records = list(self._records)

        if not records:
            return {
                "total_verifications": 0,
                "success_rate": 0.0,
                "average_score": 0.0,
                "average_processing_time_ms": 0.0,
                "issue_breakdown": {},
            }

        approved = sum(1 for r in records if r.final_outcome == FinalOutcome.APPROVED)
        scores = [r.result.overall_score if r.result else 0.0 for r in records]
        issue_breakdown: Counter[str] = Counter()
        for r in records:
            if r.result:
                issue_breakdown.update(issue.category.value for issue in r.result.issues)

        return {
            "total_verifications": len(records),
            "success_rate": approved / len(records) * 100,
            "average_score": sum(scores) / len(records),
            "average_processing_time_ms": sum(r.total_processing_time_ms for r in records) / len(records),
            "issue_breakdown": dict(issue_breakdown),
        }

    def get_report_section(self) -> str:
        """Generate a markdown summary of the retained records."""
        stats = self.get_stats()
        with self._lock:
            outcomes = Counter(r.final_outcome.value for r in self._records)

        lines = [
            "## Verification Audit",
            "",
            f"**Total Verifications:** {stats['total_verifications']}",
            f"**Success Rate:** {stats['success_rate']:.1f}%",
            f"**Average Score:** {stats['average_score']:.1f}",
            f"**Average Processing Time:** {stats['average_processing_time_ms']:.0f}ms",
            "",
            "### Outcomes",
            f"- Approved: {outcomes.get('approved', 0)}",
            f"- Rejected: {outcomes.get('rejected', 0)}",
            f"- Manual review: {outcomes.get('manual_review', 0)}",
            "",
        ]
        if stats["issue_breakdown"]:
            lines.append("### Issues by Category")
            for category, count in sorted(stats["issue_breakdown"].items(), key=lambda kv: -kv[1]):
                lines.append(f"- {category.capitalize()}: {count}")
            lines.append("")

        return "\n".join(lines)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
