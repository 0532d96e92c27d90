from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
)

from app.db.base import Base


class AuditLog(Base):
    """
    Ledger audit trail.
    Every invoice / payment / allocation change and every gateway callback
    writes here.
    """
    __tablename__ = "audit_logs"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(String(64), nullable=True)  # SYSTEM for gateway-driven work
    # CREATE / UPDATE / PAYMENT / ALLOCATE / MPESA_CALLBACK
    action = Column(String(20), nullable=False)

    table_name = Column(String(255), nullable=False)
    record_id = Column(String(100),
                       nullable=False)  # generic pk, stored as string

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    ip_address = Column(String(45), nullable=True)  # IPv4/IPv6
    user_agent = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
