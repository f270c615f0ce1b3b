from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from turnrelay.config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create the senders/messages tables if they do not exist yet."""
    import turnrelay.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
