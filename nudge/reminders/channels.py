"""
Channel transports: web push (VAPID), email over SMTP and SMS through Telnyx.

Each transport exposes ``enabled`` and a ``send`` that either returns or raises
TransportFailure, classified as retryable (timeouts, 5xx, rate limits) or terminal
(expired endpoint, rejected recipient). A transport without credentials is disabled and
the dispatcher skips its channel instead of failing it.
"""
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, List, Optional

import requests
import telnyx
from telnyx.error import TelnyxError
from pywebpush import WebPushException, webpush

from .config import settings as default_settings, ReminderSettings
from .errors import TransportFailure
from .models import Channel

logger = logging.getLogger(__name__)

# Push service answers meaning the subscription is gone for good
EXPIRED_ENDPOINT_STATUSES = (404, 410)


def _is_retryable_status(status: Optional[int]) -> bool:
    if status is None:
        return True
    return status >= 500 or status in (408, 429)


class WebPushTransport:
    channel = Channel.PUSH

    def __init__(self, settings: ReminderSettings = default_settings):
        self.public_key = settings.VAPID_PUBLIC_KEY
        self.private_key = settings.VAPID_PRIVATE_KEY
        self.subject = settings.VAPID_SUBJECT
        self.timeout = settings.PUSH_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.private_key)

    def send(self, endpoint: str, keys: Dict[str, Any], payload: Dict[str, Any]) -> None:
        if not self.enabled:
            raise TransportFailure(self.channel, "VAPID keys not configured", retryable=False)
        subject = self.subject if self.subject.startswith(("mailto:", "https:")) else f"mailto:{self.subject}"
        # Reminders are time critical; ask push services to wake the device
        headers = {"Urgency": "high", "Topic": "reminder"}
        try:
            webpush(
                subscription_info={"endpoint": endpoint, "keys": keys or {}},
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": subject},
                headers=headers,
                timeout=self.timeout,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise TransportFailure(
                self.channel,
                f"push service returned {status}: {exc.message}" if status else str(exc),
                retryable=_is_retryable_status(status) and status not in EXPIRED_ENDPOINT_STATUSES,
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise TransportFailure(self.channel, f"push request failed: {exc}", retryable=True) from exc


class SmtpEmailTransport:
    channel = Channel.EMAIL

    def __init__(self, settings: ReminderSettings = default_settings):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = int(settings.SMTP_PORT)
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL or settings.SMTP_USERNAME
        self.timeout = settings.SMTP_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_server and self.from_email)

    def send(self, address: str, subject: str, body: str) -> None:
        if not self.enabled:
            raise TransportFailure(self.channel, "SMTP not configured", retryable=False)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = address
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(self._render_html(subject, body), "html"))

        try:
            context = ssl.create_default_context()
            if self.smtp_port == 465:
                with smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, context=context, timeout=self.timeout) as server:
                    self._deliver(server, msg)
            else:
                with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._deliver(server, msg)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as exc:
            raise TransportFailure(self.channel, f"recipient rejected: {exc}", retryable=False) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportFailure(self.channel, f"SMTP error: {exc}", retryable=True) from exc

    def _deliver(self, server: smtplib.SMTP, msg: MIMEMultipart) -> None:
        if self.smtp_username and self.smtp_password:
            server.login(self.smtp_username, self.smtp_password)
        server.send_message(msg)

    @staticmethod
    def _render_html(subject: str, body: str) -> str:
        paragraphs = "".join(f"<p>{escape(line)}</p>" for line in body.splitlines() if line.strip())
        return f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="utf-8"><title>{escape(subject)}</title></head>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>{escape(subject)}</h2>
            {paragraphs}
        </body>
        </html>
        """


class TelnyxSmsTransport:
    channel = Channel.SMS

    def __init__(self, settings: ReminderSettings = default_settings):
        self.api_key = settings.TELNYX_API_KEY
        self.from_number = settings.TELNYX_FROM_NUMBER
        if self.api_key:
            telnyx.api_key = self.api_key

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.from_number)

    def send(self, phone_number: str, body: str) -> None:
        if not self.enabled:
            raise TransportFailure(self.channel, "Telnyx not configured", retryable=False)
        try:
            telnyx.Message.create(from_=self.from_number, to=phone_number, text=body)
        except TelnyxError as exc:
            status = getattr(exc, "http_status", None)
            raise TransportFailure(self.channel, f"Telnyx error {status}: {exc}", retryable=_is_retryable_status(status)) from exc


@dataclass
class ChannelTransports:
    """The set of transports one dispatcher instance sends through"""
    push: Optional[WebPushTransport] = None
    email: Optional[SmtpEmailTransport] = None
    sms: Optional[TelnyxSmsTransport] = None

    @classmethod
    def from_settings(cls, settings: ReminderSettings = default_settings) -> "ChannelTransports":
        transports = cls(
            push=WebPushTransport(settings),
            email=SmtpEmailTransport(settings),
            sms=TelnyxSmsTransport(settings),
        )
        logger.info(f"[Channels] Enabled transports: {transports.enabled_channels() or 'none'}")
        return transports

    def get(self, channel: str):
        transport = getattr(self, channel, None) if channel in Channel.ALL else None
        if transport is None or not transport.enabled:
            return None
        return transport

    def enabled_channels(self) -> List[str]:
        return [channel for channel in Channel.ALL if self.get(channel) is not None]
