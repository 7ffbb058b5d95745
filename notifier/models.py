# notifier/models.py
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String

from notifier.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, index=True)
    # Either URL identifies the same detection; duplicates become updates
    audio_url = Column(String, unique=True)
    image_url = Column(String, unique=True)
    timestamp = Column(String)
    status = Column(String)
    payload = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Event id={self.id} type={self.event_type!r}>"
