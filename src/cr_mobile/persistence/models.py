"""
Modelos SQLAlchemy para el store local de reportes de fallos
Los reportes sobreviven reinicios del proceso (SQLite en disco)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid() -> str:
    """Generar UUID v4 como string"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Instante actual en UTC, sin tzinfo (SQLite guarda DateTime naive)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReportState(str, Enum):
    """Estados de un reporte dentro del pipeline"""

    PENDING = "pending"
    AWAITING_CONSENT = "awaiting_consent"
    APPROVED = "approved"
    DISCARDED = "discarded"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class ErrorReport(Base):
    """Fallo capturado pendiente de entrega"""

    __tablename__ = "error_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    session_id = Column(String(36), nullable=False)  # sesión de captura (un proceso)
    sequence = Column(Integer, nullable=False)
    payload = Column(Text, nullable=False)  # JSON, write-once
    content_hash = Column(String(64), nullable=False)

    state = Column(String(20), nullable=False, default=ReportState.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    gave_up = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_error_reports_state_created", "state", "created_at", "sequence"),
        Index("ix_error_reports_content_hash", "content_hash"),
    )

    def __repr__(self) -> str:
        return f"<ErrorReport id={self.id} state={self.state} attempts={self.attempts}>"


class ReporterState(Base):
    """Estado del reporter (key-value store)"""

    __tablename__ = "reporter_state"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<ReporterState {self.key}={self.value}>"
