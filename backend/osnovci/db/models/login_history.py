from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from osnovci.db.base import Base

LOGIN_RESULT_SUCCESS = "success"
LOGIN_RESULT_INVALID = "invalid_credentials"
LOGIN_RESULT_LOCKED = "locked"
LOGIN_RESULT_LOCKED_NOW = "locked_now"


class LoginHistory(Base):
    """One row per login outcome, kept for admins reviewing a lockout."""

    __tablename__ = "login_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(320), index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result: Mapped[str] = mapped_column(String(40), index=True)
    # Failed attempts left before the lock; null once locked or on success.
    attempts_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
