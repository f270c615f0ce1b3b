from sqlalchemy import BigInteger, Column, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from turnrelay.database import Base


class Sender(Base):
    __tablename__ = "senders"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    phone = Column(Text, nullable=False, unique=True, index=True)
    name = Column(Text)
    thread_id = Column(Text)  # conversation handle issued by the engine, set once
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    messages = relationship("Message", back_populates="sender", passive_deletes=True)
