"""Templated transactional email: SMTP delivery or a mock provider for development."""

import asyncio
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, select_autoescape

from indexnow_worker.config import Settings, get_settings
from indexnow_worker.errors import ExternalServiceError, PayloadValidationError
from indexnow_worker.lib.pii_redactor import PIIRedactor

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"


class EmailService:
    """Render a named template and deliver it through the configured provider."""

    def __init__(self, settings: Optional[Settings] = None, template_dir: Path = TEMPLATE_DIR):
        self.settings = settings or get_settings()
        self.provider = self.settings.email_provider
        self.default_sender = self.settings.email_from
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        # Messages accepted by the mock provider, newest last
        self.outbox: list[dict[str, Any]] = []
        logger.info(f"EmailService initialized with provider: {self.provider}")

    def render(self, template: str, subject: str, data: dict[str, Any]) -> str:
        """
        Render ``<template>.html`` with ``data``.

        Raises:
            PayloadValidationError: unknown template or missing template variables
        """
        context = {
            "subject": subject,
            "app_url": self.settings.public_base_url,
            "year": datetime.now(timezone.utc).year,
            **data,
        }
        try:
            return self._env.get_template(f"{template}.html").render(**context)
        except TemplateNotFound as e:
            raise PayloadValidationError(f"Unknown email template: {template}") from e
        except Exception as e:
            # StrictUndefined raises UndefinedError for missing template data
            raise PayloadValidationError(f"Cannot render email template {template}: {e}") from e

    async def send_email(self, to: str, subject: str, template: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Send a templated email.

        Returns:
            Delivery summary (provider, masked recipient, template)

        Raises:
            PayloadValidationError: the template cannot be rendered
            ExternalServiceError: the provider rejected or failed the delivery
        """
        html_body = self.render(template, subject, data)

        if self.provider == "mock":
            self._send_mock_email(to, subject, template, html_body)
        elif self.provider == "smtp":
            await self._send_smtp_email(to, subject, html_body)
        else:
            raise ExternalServiceError(f"Unsupported email provider: {self.provider}")

        masked = PIIRedactor.mask_email(to)
        logger.info(f"Email '{template}' sent to {masked} via {self.provider}")
        return {"provider": self.provider, "to": masked, "template": template}

    def _send_mock_email(self, to: str, subject: str, template: str, html_body: str) -> None:
        self.outbox.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "from": self.default_sender,
            "to": to,
            "subject": subject,
            "template": template,
            "html_body": html_body,
        })
        logger.debug(f"Mock email '{subject}' ({len(html_body)} chars) recorded")

    async def _send_smtp_email(self, to: str, subject: str, html_body: str) -> None:
        if not self.settings.smtp_host:
            raise ExternalServiceError("SMTP host is not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.default_sender
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))

        try:
            await asyncio.to_thread(self._deliver_smtp_message, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalServiceError(f"SMTP delivery failed: {e.__class__.__name__}") from e

    def _deliver_smtp_message(self, message: MIMEMultipart) -> None:
        """Blocking SMTP delivery executed in a worker thread."""
        timeout = self.settings.external_call_timeout_seconds
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=timeout) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_user and self.settings.smtp_password:
                server.login(self.settings.smtp_user, self.settings.smtp_password)
            server.send_message(message)
