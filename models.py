from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class SessionKey(str, Enum):
    access_token = "access_token"
    refresh_token = "refresh_token"
    user = "user"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SessionEntry(Base, TimestampMixin):
    """One persisted session value (token or serialized user profile)."""

    __tablename__ = "session_entries"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text)
