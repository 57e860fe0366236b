"""
Consumer cursor model.

Each downstream consumer of the audit log keeps its own read
position. Entries at or below the cursor are already applied.
"""

from datetime import datetime

from sqlalchemy import String, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from audit_engine.models.base import Base, utcnow


class ConsumerCursor(Base):
    __tablename__ = "consumer_cursors"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_sequence_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<ConsumerCursor {self.name} @{self.last_sequence_id}>"
