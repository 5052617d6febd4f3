"""Pattern-based detection and redaction of structured personal identifiers.

The same detectors drive two things:
- the deterministic safety pass over candidate responses, and
- redaction of prompts and responses before they reach the audit log.
"""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class PIIPattern:
    """A detector for one kind of structured identifier."""
    kind: str
    pattern: re.Pattern
    placeholder: str


# Order matters for redaction: card numbers are replaced before the shorter
# national ID and phone patterns get a chance to match inside them.
DEFAULT_PATTERNS = (
    PIIPattern(
        kind="payment_card",
        pattern=re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
        placeholder="[CARD_REDACTED]",
    ),
    PIIPattern(
        kind="national_id",
        pattern=re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
        placeholder="[NATIONAL_ID_REDACTED]",
    ),
    PIIPattern(
        kind="email",
        pattern=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        placeholder="[EMAIL_REDACTED]",
    ),
    PIIPattern(
        kind="phone",
        pattern=re.compile(r"\b\d{3}[\s.-]?\d{3}[\s.-]?\d{4}\b"),
        placeholder="[PHONE_REDACTED]",
    ),
)


@dataclass
class PIIMatch:
    kind: str
    start: int
    end: int


class PIIDetector:
    """Detect and redact national IDs, payment cards, emails and phone numbers.

    Example:
        detector = PIIDetector()
        detector.detect_kinds("SSN 123-45-6789")    # ["national_id"]
        detector.redact("mail me at a@b.io")         # "mail me at [EMAIL_REDACTED]"
    """

    def __init__(self, patterns: tuple[PIIPattern, ...] = DEFAULT_PATTERNS):
        self.patterns = patterns

    def contains_pii(self, text: str) -> bool:
        return bool(text) and any(p.pattern.search(text) for p in self.patterns)

    def detect_kinds(self, text: str) -> list[str]:
        """Kinds of identifiers present in the text, in detector order.

        Spans already claimed by an earlier detector are not reported again,
        so a card number is not also reported as a phone number.
        """
        return sorted({m.kind for m in self.find(text)}, key=self._kind_order)

    def find(self, text: str) -> list[PIIMatch]:
        if not text:
            return []

        matches: list[PIIMatch] = []
        claimed: list[tuple[int, int]] = []
        for p in self.patterns:
            for m in p.pattern.finditer(text):
                if any(m.start() < end and start < m.end() for start, end in claimed):
                    continue
                claimed.append((m.start(), m.end()))
                matches.append(PIIMatch(kind=p.kind, start=m.start(), end=m.end()))

        matches.sort(key=lambda m: m.start)
        return matches

    def redact(self, text: str) -> str:
        """Replace every detected span with its typed placeholder tag."""
        if not text:
            return text

        redacted = text
        for p in self.patterns:
            redacted = p.pattern.sub(p.placeholder, redacted)
        return redacted

    def _kind_order(self, kind: str) -> int:
        for i, p in enumerate(self.patterns):
            if p.kind == kind:
                return i
        return len(self.patterns)
