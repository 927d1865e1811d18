from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from guildmaster.database import Base
import uuid

class AuditLog(Base):
    __tablename__ = "guild_audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    guild_id = Column(String(36), nullable=False, index=True)
    actor_id = Column(String(128), nullable=False)
    actor_display_name = Column(String(255), nullable=True)
    action = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
