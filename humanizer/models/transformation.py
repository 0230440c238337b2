from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from .base import Base


class Transformation(Base):
    """Append-only log of completed text transformations."""

    __tablename__ = "humanizations"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    input_text = Column(Text, nullable=False)
    output_text = Column(Text, nullable=False)
    words_used = Column(Integer, nullable=False)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


__all__ = ["Transformation"]
