"""
security/notifier.py -- Outbound notification senders.

This package decides THAT a principal must be told something; a Notifier
decides HOW. Delivery is fire-and-forget from the policy engine's point of
view: a failed send is logged by the notifier and never turns into a failed
enforcement decision or a rolled-back audit record.

Notifiers:
  LoggingNotifier -- default when NOTIFICATION_WEBHOOK_URL is empty. Writes the
                     link to the log (local development, tests).
  WebhookNotifier -- POSTs a JSON payload to NOTIFICATION_WEBHOOK_URL for an
                     external mailer to deliver.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from auth.models import Principal
from auth.tokens import create_verification_token
from core.config import Settings

logger = logging.getLogger("credguard.notifier")

VERIFY_PATH = "/email/verify/{token}"
RESET_PATH = "/reset-password/{token}"


class Notifier(Protocol):
    def send_verification_notification(self, principal: Principal) -> None: ...

    def send_password_reset_notification(self, principal: Principal, token: str) -> None: ...


def verification_link(base_url: str, principal: Principal) -> str:
    token = create_verification_token(principal)
    return base_url.rstrip("/") + VERIFY_PATH.format(token=token)


def reset_link(base_url: str, token: str) -> str:
    return base_url.rstrip("/") + RESET_PATH.format(token=token)


class LoggingNotifier:
    def __init__(self, base_url: str = "http://localhost:8000") -> None:
        self.base_url = base_url

    def send_verification_notification(self, principal: Principal) -> None:
        logger.info(
            "Verification link for %s#%s <%s>: %s",
            principal.principal_type,
            principal.id,
            principal.email,
            verification_link(self.base_url, principal),
        )

    def send_password_reset_notification(self, principal: Principal, token: str) -> None:
        logger.info(
            "Password reset link for %s#%s <%s>: %s",
            principal.principal_type,
            principal.id,
            principal.email,
            reset_link(self.base_url, token),
        )


class WebhookNotifier:
    """Hand notifications to an external mailer over HTTP.

    Payload:
        {"event": "verify_email" | "password_reset", "email": ..., "principal_type": ...,
         "principal_id": ..., "link": ...}
    """

    def __init__(self, url: str, base_url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.base_url = base_url
        self.timeout = timeout
        # Shared session for connection pooling; the webhook is a known
        # endpoint so 3 redirect hops are plenty.
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send_verification_notification(self, principal: Principal) -> None:
        self._post("verify_email", principal, verification_link(self.base_url, principal))

    def send_password_reset_notification(self, principal: Principal, token: str) -> None:
        self._post("password_reset", principal, reset_link(self.base_url, token))

    def _post(self, event: str, principal: Principal, link: str) -> None:
        payload = {
            "event": event,
            "email": principal.email,
            "principal_type": principal.principal_type,
            "principal_id": principal.id,
            "link": link,
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Notification %s for %s failed: %s", event, principal.email, e)

    def close(self) -> None:
        self._session.close()


def build_notifier(settings: Settings) -> Notifier:
    """Pick the notifier the settings call for."""
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            base_url=settings.app_base_url,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotifier(base_url=settings.app_base_url)
