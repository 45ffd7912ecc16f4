"""
core/digest/models.py — Value types of the digest subsystem.

DigestMessage: one notification (recipient, subject, body), immutable.
DigestRecord:  per-recipient buckets, PeriodKey → ordered list of messages,
               plus a free-form string properties map.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

REFERENCE_ROOT = "/digest"


@dataclass(frozen=True)
class DigestMessage:
    """Eine einzelne Benachrichtigung für einen Empfänger."""
    recipient_id: str
    subject: str
    body: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "recipient_id": self.recipient_id,
            "subject": self.subject,
            "body": self.body,
        }


@dataclass
class DigestRecord:
    """
    Digest of one recipient.

    buckets keeps insertion order per period; duplicates are allowed.
    A record without buckets is deletable.
    """
    id: str
    buckets: Dict[str, List[DigestMessage]] = field(default_factory=dict)
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def reference(self) -> str:
        return digest_reference(self.id)

    def periods(self) -> List[str]:
        return sorted(self.buckets)

    def messages(self, period: str) -> List[DigestMessage]:
        """Copy of the bucket for `period` ([] when absent)."""
        return list(self.buckets.get(period, []))

    def message_count(self) -> int:
        return sum(len(msgs) for msgs in self.buckets.values())

    def has_prior_periods(self, current: str) -> bool:
        """True if any bucket belongs to a period other than `current`."""
        return any(period != current for period in self.buckets)

    def copy(self) -> "DigestRecord":
        return DigestRecord(
            id=self.id,
            buckets={period: list(msgs) for period, msgs in self.buckets.items()},
            properties=dict(self.properties),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "properties": dict(self.properties),
            "periods": [
                {
                    "period": period,
                    "messages": [
                        {"subject": m.subject, "body": m.body}
                        for m in self.buckets[period]
                    ],
                }
                for period in self.periods()
            ],
            "message_count": self.message_count(),
        }


def digest_reference(digest_id: str) -> str:
    """Internal reference path of a digest record: /digest/<id>."""
    return f"{REFERENCE_ROOT}/{digest_id}"
