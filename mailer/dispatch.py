"""
mailer/dispatch.py -- EmailDispatcher: "send email of kind K with payload P".

Transports:
  HttpTransport -- POSTs a Resend-compatible JSON document
      ({"from", "to", "subject", "text", "html"}) with a Bearer API key.
      Every call carries an explicit timeout; requests.Timeout is converted
      to the typed auth.errors.Timeout.
  LogTransport  -- development stand-in used when EMAIL_API_KEY is empty.
      The rendered message goes to the operator logger instead of a mailbox.

Delivery never rolls back the state change that triggered it. notify() is
what the services call: it never raises, and when delivery fails it logs the
generated secret (temporary password or reset code) at WARNING on the
operator logger so an administrator can hand it over out of band.

Layer rule: may import from auth/ (errors, models) and core/, never from api/.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests
from jinja2 import TemplateError

from auth.errors import Timeout
from core.config import Settings
from mailer.templates import RenderedEmail, render

logger = logging.getLogger("sessionguard.mailer")
operator_logger = logging.getLogger("sessionguard.operator")


class EmailTransport(Protocol):
    def deliver(self, recipient: str, message: RenderedEmail) -> None: ...


class HttpTransport:
    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float = 15.0) -> None:
        self.api_url = api_url
        self.sender = sender
        self.timeout = timeout
        # Shared session for connection pooling; the provider is a known host.
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    def deliver(self, recipient: str, message: RenderedEmail) -> None:
        payload = {
            "from": self.sender,
            "to": [recipient],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        try:
            resp = self._session.post(self.api_url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise Timeout(f"Email provider did not answer within {self.timeout:g}s") from exc
        resp.raise_for_status()


class LogTransport:
    def deliver(self, recipient: str, message: RenderedEmail) -> None:
        operator_logger.info("[simulated email] To: %s | Subject: %s\n%s", recipient, message.subject, message.text)


class EmailDispatcher:
    """Port used by the auth services to send transactional email."""

    def __init__(self, transport: EmailTransport) -> None:
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailDispatcher":
        if not settings.email_api_key:
            logger.warning("EMAIL_API_KEY not set -- emails will be written to the operator log only")
            return cls(LogTransport())
        return cls(
            HttpTransport(
                api_url=settings.email_api_url,
                api_key=settings.email_api_key,
                sender=settings.email_from,
                timeout=settings.email_timeout_seconds,
            )
        )

    def send(self, kind: str, recipient: str, template_data: dict[str, Any]) -> bool:
        """Render and deliver one email. Returns False on delivery failure.

        Raises auth.errors.Timeout when the transport times out.
        """
        try:
            message = render(kind, template_data)
        except (ValueError, TemplateError):
            logger.exception("Could not render %s email", kind)
            return False
        try:
            self.transport.deliver(recipient, message)
        except requests.RequestException as exc:
            logger.warning("Email %s to %s failed: %s", kind, recipient, exc)
            return False
        logger.info("Email %s sent to %s", kind, recipient)
        return True

    def notify(
        self,
        kind: str,
        recipient: str,
        template_data: dict[str, Any],
        secret_field: str | None = None,
    ) -> bool:
        """send() that never raises, with the operator fallback for secrets."""
        try:
            delivered = self.send(kind, recipient, template_data)
        except Timeout as exc:
            logger.warning("Email %s to %s timed out: %s", kind, recipient, exc.message)
            delivered = False
        if not delivered and secret_field:
            operator_logger.warning(
                "EMAIL DELIVERY FAILED (%s) for %s -- %s: %s",
                kind,
                recipient,
                secret_field,
                template_data.get(secret_field),
            )
        return delivered
