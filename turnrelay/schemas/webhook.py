from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class GatewayMessage(BaseModel):
    """One chat message as the gateway reports it, across its field-name variants."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    messageType: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageType", "type"))
    content: Any = Field(default=None, validation_alias=AliasChoices("content", "text", "body"))
    sender: Optional[str] = None
    senderName: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderName", "pushName"))
    chatid: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatid", "chatId", "remoteJid"))
    messageid: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageid", "messageId"))
    id: Optional[str] = None
    buttonOrListid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("buttonOrListid", "buttonOrListId"),
    )
    fromMe: bool = False
    wasSentByApi: bool = False

    @field_validator("fromMe", "wasSentByApi", mode="before")
    @classmethod
    def null_flag_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    def message_id(self) -> Optional[str]:
        if self.messageid:
            return self.messageid
        if self.id:
            # "owner:MSGID" form keeps the part after the first colon
            head, sep, tail = self.id.partition(":")
            return tail if sep and tail else self.id
        return None

    def has_identity(self) -> bool:
        return bool((self.chatid or "").strip() or (self.sender or "").strip())


class ChatInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    wa_chatid: Optional[str] = None
    wa_lastMessageSender: Optional[str] = None


class EnvelopeBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    BaseUrl: Optional[str] = None
    EventType: Optional[str] = None
    chat: ChatInfo
    message: GatewayMessage = Field(default_factory=GatewayMessage)
    owner: Optional[str] = None
    token: Optional[str] = None


class EventEnvelope(BaseModel):
    """{"body": {"chat": {...}, "message": {...}, "EventType": ...}}"""

    model_config = ConfigDict(extra="ignore")

    body: EnvelopeBody


class MessageWrapper(BaseModel):
    """{"message": {...}}"""

    model_config = ConfigDict(extra="ignore")

    message: GatewayMessage


class BodyWrapper(BaseModel):
    """{"body": {"message": {...}}}"""

    model_config = ConfigDict(extra="ignore")

    body: MessageWrapper


class MessageKey(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    remoteJid: Optional[str] = None
    participant: Optional[str] = None
    fromMe: bool = False
    id: Optional[str] = None

    @field_validator("fromMe", mode="before")
    @classmethod
    def null_flag_is_false(cls, value: Any) -> Any:
        return False if value is None else value


class KeyedEvent(BaseModel):
    """Identity nested under a key structure: {"key": {"remoteJid": ..., "fromMe": ...}, ...}"""

    model_config = ConfigDict(extra="ignore")

    key: MessageKey
    pushName: Optional[str] = None
    messageType: Optional[str] = None
    message: Any = None


class InboundEvent(BaseModel):
    """Canonical inbound chat event; immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    sender_id: str
    sender_name: Optional[str] = None
    kind: MessageKind = MessageKind.TEXT
    raw_type: str = ""
    raw_content: Optional[str] = None
    button_id: Optional[str] = None
    external_message_id: Optional[str] = None
    chat_address: Optional[str] = None
    is_echo: bool = False


class WebhookResponse(BaseModel):
    ok: bool = True
    ignored: Optional[str] = None
