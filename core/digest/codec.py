"""
core/digest/codec.py — Durable encoding of DigestRecord.

Tree layout (JSON):
    {
      "digest": {
        "id": "alice",
        "properties": {"k": "v"},
        "periods": [
          {"period": "2024-01-01",
           "messages": [{"subject": "...", "body": "..."}, ...]},
          ...
        ]
      }
    }

Periods are written in key order, messages in bucket order, properties in
key order. Strings are JSON-escaped with non-ASCII as \\uXXXX, so the output
is canonical: encode(decode(x)) == x for any x produced by encode().
Repeated period nodes are merged on decode, in document order.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

from core.digest.models import DigestMessage, DigestRecord

SCHEMA_VERSION = 1


def to_tree(record: DigestRecord) -> Dict[str, Any]:
    return {
        "digest": {
            "id": record.id,
            "schema_version": SCHEMA_VERSION,
            "properties": {k: str(record.properties[k]) for k in sorted(record.properties)},
            "periods": [
                {
                    "period": period,
                    "messages": [
                        {"subject": msg.subject, "body": msg.body}
                        for msg in record.buckets[period]
                    ],
                }
                for period in record.periods()
            ],
        }
    }


def from_tree(tree: Dict[str, Any]) -> DigestRecord:
    """Rebuild a record from its tree. Raises ValueError on malformed input."""
    if not isinstance(tree, dict) or not isinstance(tree.get("digest"), dict):
        raise ValueError("missing 'digest' node")
    node = tree["digest"]
    digest_id = node.get("id")
    if not isinstance(digest_id, str):
        raise ValueError("digest node without string 'id'")

    properties = node.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValueError(f"digest {digest_id!r}: 'properties' is not an object")

    buckets: Dict[str, List[DigestMessage]] = {}
    for period_node in node.get("periods") or []:
        period = period_node.get("period") if isinstance(period_node, dict) else None
        if not isinstance(period, str):
            raise ValueError(f"digest {digest_id!r}: period node without 'period'")
        msgs = buckets.setdefault(period, [])
        for msg_node in period_node.get("messages") or []:
            if not isinstance(msg_node, dict):
                raise ValueError(f"digest {digest_id!r}: malformed message in {period}")
            msgs.append(DigestMessage(
                recipient_id=digest_id,
                subject=str(msg_node.get("subject", "")),
                body=str(msg_node.get("body", "")),
            ))

    return DigestRecord(
        id=digest_id,
        buckets=buckets,
        properties={str(k): str(v) for k, v in properties.items()},
    )


def encode(record: DigestRecord) -> str:
    return json.dumps(to_tree(record), ensure_ascii=True)


def decode(text: str) -> DigestRecord:
    try:
        tree = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid digest document: {exc}") from exc
    return from_tree(tree)
