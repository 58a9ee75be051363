import uuid
from dataclasses import dataclass
from typing import Protocol

from tradiedesk.core.observability import log_automation_event


@dataclass(frozen=True)
class SmsSendRequest:
    user_id: str
    recipient: str
    content: str


@dataclass(frozen=True)
class SmsSendResult:
    provider: str
    message_id: str
    status: str


class SmsProvider(Protocol):
    name: str

    def send_sms(self, request: SmsSendRequest) -> SmsSendResult:
        ...


class LogOnlySmsProvider:
    """Records the send intent; delivery belongs to the notification service."""

    name = "sms_log"

    def send_sms(self, request: SmsSendRequest) -> SmsSendResult:
        message_id = f"sms-{uuid.uuid4().hex[:14]}"
        log_automation_event(
            "automation.sms.queued",
            provider=self.name,
            message_id=message_id,
            user_id=request.user_id,
            recipient=request.recipient,
            content=request.content,
        )
        return SmsSendResult(provider=self.name, message_id=message_id, status="queued")


_SMS_PROVIDERS: dict[str, SmsProvider] = {
    "sms_log": LogOnlySmsProvider(),
}


def get_sms_provider(name: str) -> SmsProvider:
    normalized = (name or "").strip().lower()
    provider = _SMS_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_SMS_PROVIDERS))
        raise ValueError(f"Unknown SMS provider '{name}'. Available: {available}")
    return provider
