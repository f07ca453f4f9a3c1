from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from floodwatch.database import Base


class PolicySnapshot(Base):
    """Exported alert policy document (JSON text) for one location."""
    __tablename__ = "policy_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(String(40), nullable=False, index=True)
    saved_at = Column(DateTime, nullable=False)
    state_count = Column(Integer, default=0)
    document = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
