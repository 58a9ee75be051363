import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Literal, Protocol

from tradiedesk.core.config import settings

EmailDeliveryStatus = Literal["sent", "not_configured", "failed"]


@dataclass(frozen=True)
class EmailSendRequest:
    to: str
    subject: str
    text: str
    html: str | None = None


@dataclass(frozen=True)
class EmailDeliveryResult:
    status: EmailDeliveryStatus
    detail: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "sent"


class EmailSender(Protocol):
    def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        ...


def _smtp_configured() -> bool:
    return bool(settings.smtp_host and settings.smtp_sender_email)


def build_email_message(request: EmailSendRequest) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = request.subject
    if settings.smtp_sender_name:
        message["From"] = formataddr((settings.smtp_sender_name, settings.smtp_sender_email or ""))
    else:
        message["From"] = settings.smtp_sender_email
    message["To"] = request.to
    if settings.smtp_reply_to_email:
        message["Reply-To"] = settings.smtp_reply_to_email
    message.set_content(request.text)
    if request.html:
        message.add_alternative(request.html, subtype="html")
    return message


class SmtpEmailSender:
    def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        if not _smtp_configured():
            return EmailDeliveryResult(status="not_configured", detail="SMTP not configured")

        message = build_email_message(request)
        try:
            if settings.smtp_use_ssl:
                with smtplib.SMTP_SSL(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                ) as server:
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                ) as server:
                    if settings.smtp_use_starttls:
                        server.starttls()
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
        except Exception as exc:  # noqa: BLE001 - expose short status back to caller
            return EmailDeliveryResult(status="failed", detail=str(exc))

        return EmailDeliveryResult(status="sent", detail=None)


def get_email_sender() -> EmailSender:
    return SmtpEmailSender()
