from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from osnovci.db.base import Base

LINK_STATUS_INITIATED = "INITIATED"
LINK_STATUS_CHILD_APPROVED = "CHILD_APPROVED"
LINK_STATUS_GUARDIAN_VERIFIED = "GUARDIAN_VERIFIED"
LINK_STATUS_REJECTED = "REJECTED"
LINK_STATUS_EXPIRED = "EXPIRED"

OPEN_LINK_STATUSES = (LINK_STATUS_INITIATED, LINK_STATUS_CHILD_APPROVED)


class LinkRequest(Base):
    __tablename__ = "link_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    link_code: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    guardian_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=LINK_STATUS_INITIATED, index=True)
    relation: Mapped[str] = mapped_column(String(20), default="OTHER")
    permissions: Mapped[list] = mapped_column(JSON, default=list)
    email_code_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verify_attempts: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    child_decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LINK_STATUSES
