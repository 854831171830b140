from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from osnovci.db.base import Base


class ConsentAuditLog(Base):
    __tablename__ = "consent_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    student_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    guardian_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    link_request_id: Mapped[int | None] = mapped_column(ForeignKey("link_requests.id"), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    meta_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
