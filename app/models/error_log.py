from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
)

from app.db.base import Base


class ErrorLog(Base):
    """
    Operator follow-up queue: failures that were swallowed on purpose
    (gateway callbacks, audit writes) land here instead of disappearing.
    """
    __tablename__ = "error_logs"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)

    # backend / gateway / audit
    error_source = Column(String(50), nullable=False, default="backend")

    # quick summary
    description = Column(String(1000), nullable=True)

    # where it happened
    endpoint = Column(String(255), nullable=True)  # e.g. "POST /api/mpesa/push-callback"
    module = Column(String(255), nullable=True)
    function = Column(String(255), nullable=True)

    http_status = Column(Integer, nullable=True)

    # raw payloads
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)

    # exception / stack
    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
