import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from journey_engine.core.config import settings


@dataclass(frozen=True)
class TemplatedMessageRequest:
    to: str
    template: str
    language: str = "en"
    components: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class MessageSendResult:
    success: bool
    provider: str
    message_id: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "provider": self.provider,
            "message_id": self.message_id,
            "error": self.error,
        }


class MessagingProvider(Protocol):
    name: str

    def send_templated_message(self, request: TemplatedMessageRequest) -> MessageSendResult:
        ...


class StubWhatsAppProvider:
    name = "whatsapp_stub"

    def send_templated_message(self, request: TemplatedMessageRequest) -> MessageSendResult:
        return MessageSendResult(
            success=True,
            provider=self.name,
            message_id=f"wamid-{uuid.uuid4().hex[:14]}",
        )


_MESSAGING_PROVIDERS: dict[str, MessagingProvider] = {
    "whatsapp_stub": StubWhatsAppProvider(),
}


def get_messaging_provider(name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = _MESSAGING_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider


def missing_whatsapp_credentials() -> list[str]:
    missing: list[str] = []
    if not settings.whatsapp_access_token:
        missing.append("WHATSAPP_ACCESS_TOKEN")
    if not settings.whatsapp_phone_number_id:
        missing.append("WHATSAPP_PHONE_NUMBER_ID")
    return missing
