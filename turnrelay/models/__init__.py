from turnrelay.models.message import Message
from turnrelay.models.sender import Sender

__all__ = [
    "Sender",
    "Message",
]
