from sqlalchemy import BigInteger, Column, ForeignKey, Index, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from turnrelay.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("idx_messages_sender_time", "sender_id", "created_at"),)

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    sender_id = Column(BigInteger, ForeignKey("senders.id", ondelete="CASCADE"), nullable=False)
    role = Column(Text, nullable=False)  # user, assistant, system
    kind = Column(Text, nullable=False)  # text, audio, image, document
    content = Column(Text, nullable=False)
    ext_id = Column(Text)  # gateway message id
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    sender = relationship("Sender", back_populates="messages")
