"""
core/digest/delivery.py — Collaborators that turn a bucket into a sent mail.

BaseSender     transmits a finished mail (SMTP etc. live outside this package)
BaseDirectory  resolves a recipient id to a deliverable address
DigestMailer   resolve → render → send, one best-effort attempt per bucket

Failures never propagate out of DigestMailer.deliver(): they are logged and
reported as False, so the caller still clears the bucket.

Logging marker: [DigestDelivery]
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from core.digest.errors import DeliveryFailedError
from core.digest.events import DigestEventLogger
from core.digest.models import DigestMessage, digest_reference
from core.digest.render import render_digest
from utils.logger import log_debug, log_info, log_warn


class BaseSender(ABC):
    """Transport for one outgoing mail."""

    @abstractmethod
    def send(
        self,
        from_addr: str,
        to: str,
        subject: str,
        body: str,
        header_to: Optional[str] = None,
        reply_to: Optional[str] = None,
        headers: Optional[List[str]] = None,
    ) -> None:
        """Deliver the mail; raise on failure."""
        pass


class BaseDirectory(ABC):
    """Recipient id → mail address."""

    @abstractmethod
    def address_of(self, recipient_id: str) -> Optional[str]:
        """Address for the recipient, None (or LookupError) if unknown."""
        pass


class LoggingSender(BaseSender):
    """Writes mails to the log instead of transmitting them. Keeps the last ones for inspection."""

    def __init__(self, keep: int = 100) -> None:
        self._keep = keep
        self.sent: List[Dict[str, object]] = []

    def send(self, from_addr, to, subject, body, header_to=None, reply_to=None, headers=None) -> None:
        log_info(
            f"[DigestDelivery] test-mode mail from={from_addr} to={to} "
            f"subject={subject!r} body_chars={len(body)}"
        )
        log_debug(f"[DigestDelivery] body:\n{body}")
        self.sent.append({
            "from": from_addr,
            "to": to,
            "subject": subject,
            "body": body,
            "header_to": header_to,
            "reply_to": reply_to,
            "headers": list(headers or []),
        })
        if len(self.sent) > self._keep:
            del self.sent[: len(self.sent) - self._keep]


class StaticDirectory(BaseDirectory):
    """Fixed id → address map, optionally `<id>@<domain>` for unknown ids."""

    def __init__(self, addresses: Optional[Dict[str, str]] = None, default_domain: Optional[str] = None) -> None:
        self._addresses = dict(addresses or {})
        self._domain = default_domain

    def address_of(self, recipient_id: str) -> Optional[str]:
        address = self._addresses.get(recipient_id)
        if address:
            return address
        if self._domain and recipient_id:
            return f"{recipient_id}@{self._domain}"
        return None


def _mail_settings() -> Dict[str, str]:
    try:
        import config
        return {
            "service_name": config.get_digest_service_name(),
            "server_name":  config.get_digest_server_name(),
            "server_url":   config.get_digest_server_url(),
        }
    except Exception:
        return {"service_name": "Digest", "server_name": "localhost", "server_url": "http://localhost"}


class DigestMailer:
    """
    Renders and sends one digest per (recipient, period).

    Args:
        sender:       BaseSender (default LoggingSender)
        directory:    BaseDirectory (default StaticDirectory with no entries)
        events:       DigestEventLogger for digest.sent events
        service_name / server_name / server_url: default from config
    """

    def __init__(
        self,
        sender: Optional[BaseSender] = None,
        directory: Optional[BaseDirectory] = None,
        events: Optional[DigestEventLogger] = None,
        service_name: Optional[str] = None,
        server_name: Optional[str] = None,
        server_url: Optional[str] = None,
    ) -> None:
        cfg = _mail_settings()
        self.sender = sender if sender is not None else LoggingSender()
        self.directory = directory if directory is not None else StaticDirectory()
        self._events = events if events is not None else DigestEventLogger()
        self.service_name = service_name or cfg["service_name"]
        self.server_name = server_name or cfg["server_name"]
        self.server_url = server_url or cfg["server_url"]

    @property
    def from_address(self) -> str:
        return f"postmaster@{self.server_name}"

    def deliver(self, recipient_id: str, messages: List[DigestMessage], period_key: str) -> bool:
        """One best-effort delivery. Returns True if the sender accepted the mail."""
        if not messages:
            return False
        try:
            self._deliver(recipient_id, messages, period_key)
        except Exception as exc:
            log_warn(
                f"[DigestDelivery] digest to={recipient_id} period={period_key} "
                f"not sent: {exc}"
            )
            self._events.record_sent(digest_reference(recipient_id), period_key, len(messages), ok=False)
            return False
        log_info(
            f"[DigestDelivery] digest sent to={recipient_id} period={period_key} "
            f"messages={len(messages)}"
        )
        self._events.record_sent(digest_reference(recipient_id), period_key, len(messages), ok=True)
        return True

    def _deliver(self, recipient_id: str, messages: List[DigestMessage], period_key: str) -> None:
        to = self._resolve(recipient_id)
        subject, body = render_digest(messages, period_key, self.service_name, self.server_url)
        try:
            self.sender.send(self.from_address, to, subject, body, header_to=to)
        except Exception as exc:
            raise DeliveryFailedError(recipient_id, f"sender failed: {exc}") from exc

    def _resolve(self, recipient_id: str) -> str:
        try:
            to = self.directory.address_of(recipient_id)
        except LookupError as exc:
            raise DeliveryFailedError(recipient_id, f"no address for {recipient_id!r}: {exc}") from exc
        if not to:
            raise DeliveryFailedError(recipient_id, f"no address for {recipient_id!r}")
        return to
