"""
Database models for the outbound mutation queue
SQLAlchemy ORM models for writes that could not reach the backend
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, LargeBinary, DateTime, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class QueuedMutation(Base):
    """
    QueuedMutation entity - one non-GET request waiting to be replayed
    Immutable once written; deleted after a successful replay
    """
    __tablename__ = "queued_mutations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    method = Column(String, nullable=False)
    url = Column(String, nullable=False)
    headers = Column(Text, nullable=False, default="{}")  # JSON object
    body = Column(LargeBinary, nullable=True)
    enqueued_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Drains replay in enqueue order
    __table_args__ = (
        Index("idx_queued_mutations_order", "enqueued_at", "id"),
    )

    @property
    def header_dict(self) -> dict:
        return json.loads(self.headers or "{}")

    def __repr__(self):
        return f"<QueuedMutation(id={self.id}, method='{self.method}', url='{self.url}')>"
