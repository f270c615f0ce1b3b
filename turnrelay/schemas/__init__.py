from turnrelay.schemas.webhook import InboundEvent, MessageKind, MessageRole, WebhookResponse

__all__ = ["InboundEvent", "MessageKind", "MessageRole", "WebhookResponse"]
