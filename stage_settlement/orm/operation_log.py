"""
stage_settlement/orm/operation_log.py
Persistent audit log of operator actions
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime

from stage_settlement.core.db_types import UniversalJSON
from stage_settlement.orm.base import Base


class OperationLog(Base):
    __tablename__ = "operation_logs"

    log_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=True, index=True)
    user_email = Column(String(255), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    level = Column(String(10), nullable=False, default="info")
    details = Column(UniversalJSON, nullable=True)
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)
