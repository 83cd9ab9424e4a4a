"""
Outbound email — verification mails and other account notifications.

Backends:
  - LogMailer    — logs the message instead of sending (development, tests)
  - BrevoMailer  — Brevo (formerly SendInBlue) transactional email HTTP API
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import MailConfig

logger = structlog.get_logger()


class BaseMailer(abc.ABC):

    @abc.abstractmethod
    async def send_email(self, to: str, subject: str, html_content: str) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        pass


class LogMailer(BaseMailer):
    """Records messages in memory and in the log."""

    def __init__(self):
        self.outbox: list[dict[str, Any]] = []

    async def send_email(self, to: str, subject: str, html_content: str) -> dict[str, Any]:
        message = {"to": to, "subject": subject, "html": html_content}
        self.outbox.append(message)
        logger.info("email_logged", to=to, subject=subject)
        return {"status": "logged", "to": to}


class BrevoMailer(BaseMailer):

    def __init__(self, config: MailConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                headers={
                    "api-key": self.config.api_key,
                    "accept": "application/json",
                },
                timeout=30.0,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def send_email(self, to: str, subject: str, html_content: str) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(self.config.api_url, json={
            "sender": {"email": self.config.sender_email, "name": self.config.sender_name},
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html_content,
        })
        resp.raise_for_status()
        data = resp.json()
        logger.info("email_sent", to=to, subject=subject, message_id=data.get("messageId"))
        return {"status": "sent", "to": to, "message_id": data.get("messageId", "")}

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_mailer(config: MailConfig) -> BaseMailer:
    if config.provider == "brevo":
        return BrevoMailer(config)
    return LogMailer()
