"""
Mail transport for the durable email channel.

MailTransport is the collaborator interface used by the email worker:

    send(template, to, data, idempotency_key) -> message_id

A transport backed by a provider API that deduplicates on an idempotency key
makes a resumed job effectively-once. SmtpMailTransport cannot: SMTP has no
such key, so it is at-least-once. It sets the Message-ID header from the
idempotency key, so a resend of the same job after a worker crash carries the
same Message-ID. Mail clients that thread on Message-ID show the copies as
one message; relays still deliver both.

Failure classification:
- Recipient refused, 550/551/553: DeliveryPermanentError
- Connection errors, timeouts, other SMTP errors: TransientDeliveryError
"""

import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Protocol

from alert_engine.config.settings import AppSettings
from alert_engine.services.exceptions import DeliveryPermanentError, TransientDeliveryError
from alert_engine.utils.logging_config import get_logger
from alert_engine.utils.template_renderer import TemplateRenderer


logger = get_logger("delivery")


# Mailbox unavailable, user not local, mailbox name not allowed
PERMANENT_SMTP_CODES = {550, 551, 553}


class MailTransport(Protocol):
    """
    Sends one templated email.

    Implementations should deduplicate on idempotency_key where the provider
    supports it; otherwise the same key must at least yield the same
    message id on every attempt.
    """

    def send(
        self, template: str, to: str, data: Dict[str, Any], idempotency_key: str
    ) -> str:
        ...


class SmtpMailTransport:
    """
    SMTP implementation of MailTransport. At-least-once: a resend is
    delivered again, under the same Message-ID.

    Usage:
        >>> transport = SmtpMailTransport.from_settings(settings, TemplateRenderer())
        >>> transport.send("budget-exceeded", "ada@example.com", data, job.guid)
        '<dlv_01hgw2bbg0000000000000001@alert-engine>'
    """

    def __init__(
        self,
        renderer: TemplateRenderer,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str = "alerts@localhost",
        timeout: float = 10,
    ):
        self.renderer = renderer
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: AppSettings, renderer: TemplateRenderer) -> "SmtpMailTransport":
        return cls(
            renderer=renderer,
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.smtp_from,
        )

    @staticmethod
    def message_id_for(idempotency_key: str) -> str:
        return f"<{idempotency_key}@alert-engine>"

    def build_message(
        self, template: str, to: str, data: Dict[str, Any], idempotency_key: str
    ) -> MIMEMultipart:
        html_body = self.renderer.render(template, data).decode("utf-8")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = data.get("title") or "Budget alert"
        msg["From"] = self.sender
        msg["To"] = to
        msg["Message-ID"] = self.message_id_for(idempotency_key)

        msg.attach(MIMEText(data.get("body") or "", "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(
        self, template: str, to: str, data: Dict[str, Any], idempotency_key: str
    ) -> str:
        """
        Render and send one alert email.

        Returns:
            The Message-ID of the sent message

        Raises:
            DeliveryPermanentError: If the recipient is rejected
            TransientDeliveryError: On network or server errors
        """
        msg = self.build_message(template, to, data, idempotency_key)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryPermanentError(f"Recipient refused: {to} {e.recipients}")
        except smtplib.SMTPResponseException as e:
            if e.smtp_code in PERMANENT_SMTP_CODES:
                raise DeliveryPermanentError(f"SMTP {e.smtp_code}: {e.smtp_error!r}")
            raise TransientDeliveryError(f"SMTP {e.smtp_code}: {e.smtp_error!r}")
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            raise TransientDeliveryError(f"SMTP error: {e}")

        logger.info(
            "Email sent",
            extra={"template": template, "message_id": msg["Message-ID"]},
        )
        return msg["Message-ID"]
