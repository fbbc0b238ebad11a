from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    TRAINEE = 'TRAINEE'
    TRAINER = 'TRAINER'
    MANAGER = 'MANAGER'
    ADMIN = 'ADMIN'


class ChecklistType(str, Enum):
    OPENING = 'OPENING'
    SHIFT_CHANGE = 'SHIFT_CHANGE'
    CLOSING = 'CLOSING'
    WEEKLY = 'WEEKLY'
    MONTHLY = 'MONTHLY'


class SubmissionStatus(str, Enum):
    DRAFT = 'DRAFT'
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'

    @property
    def is_final(self) -> bool:
        return self != SubmissionStatus.DRAFT


class AuditState(str, Enum):
    UNAUDITED = 'UNAUDITED'
    AUDIT_PENDING = 'AUDIT_PENDING'
    FLAGGED = 'FLAGGED'
    CLEAR = 'CLEAR'
    OVERRIDDEN = 'OVERRIDDEN'


class DocumentKey(str, Enum):
    SUBMISSIONS = 'submissions'
    TEMPLATES = 'templates'


# Reopen never goes through here: it deletes the record instead.
SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.DRAFT: frozenset({SubmissionStatus.PENDING}),
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}),
    SubmissionStatus.APPROVED: frozenset({SubmissionStatus.REJECTED}),
    SubmissionStatus.REJECTED: frozenset({SubmissionStatus.APPROVED}),
}

AUDIT_TRANSITIONS: dict[AuditState, frozenset[AuditState]] = {
    AuditState.UNAUDITED: frozenset({AuditState.AUDIT_PENDING}),
    AuditState.AUDIT_PENDING: frozenset({AuditState.FLAGGED, AuditState.CLEAR}),
    AuditState.CLEAR: frozenset({AuditState.AUDIT_PENDING}),
    AuditState.FLAGGED: frozenset({AuditState.OVERRIDDEN}),
    AuditState.OVERRIDDEN: frozenset({AuditState.AUDIT_PENDING}),
}


class StoreDocument(Base):
    __tablename__ = 'store_documents'
    __table_args__ = (UniqueConstraint('store_id', 'doc_key', name='uq_store_documents_store_key'),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    store_id: Mapped[str] = mapped_column(Text, nullable=False)
    doc_key: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    actor_principal_id: Mapped[str | None] = mapped_column(Text)
    store_id: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
