"""
core/digest/render.py — Plain-text layout of one digest mail.

    <Service> Notifications 2024-01-01

    1.  first subject
    2.  second subject

    ----------------------

    1.  first subject

    first body
    ----------------------

    2.  second subject

    second body
    ----------------------

    This automatic notification message was sent by <Service> (<url>)
    You can change how you receive notifications in your notification preferences.
"""
from __future__ import annotations

from typing import List, Tuple

from core.digest.models import DigestMessage

SEPARATOR = "----------------------"


def render_subject(period_key: str, service_name: str) -> str:
    return f"{service_name} Notifications {period_key}"


def render_digest(
    messages: List[DigestMessage],
    period_key: str,
    service_name: str = "Digest",
    server_url: str = "http://localhost",
) -> Tuple[str, str]:
    """Return (subject, body) for a non-empty bucket."""
    if not messages:
        raise ValueError("cannot render an empty digest")

    subject = render_subject(period_key, service_name)
    parts: List[str] = [subject, "\n\n"]

    for n, msg in enumerate(messages, start=1):
        parts.append(f"{n}.  {msg.subject}\n")
    parts.append(f"\n{SEPARATOR}\n\n")

    for n, msg in enumerate(messages, start=1):
        parts.append(f"{n}.  {msg.subject}\n\n")
        parts.append(msg.body)
        parts.append(f"\n{SEPARATOR}\n\n")

    parts.append(
        f"This automatic notification message was sent by {service_name} ({server_url})\n"
        "You can change how you receive notifications in your notification preferences.\n"
    )
    return subject, "".join(parts)
