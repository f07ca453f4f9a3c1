from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, JSON
from sqlalchemy.sql import func

from floodwatch.database import Base


class AssessmentRecord(Base):
    """Append-only: one row per location per assessment cycle."""
    __tablename__ = "risk_assessments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(String(40), nullable=False, index=True)
    assessed_at = Column(DateTime, nullable=False)

    score = Column(Float)  # 0-100
    level = Column(String(20))  # none, low, moderate, high, extreme
    confidence = Column(Float)
    time_to_impact_minutes = Column(Float)
    evacuation_recommended = Column(Boolean, default=False)

    recommended_action = Column(String(20))
    action_confidence = Column(Float)
    mdp_state = Column(JSON)  # {"water_level": .., "rate_of_change": .., ...}

    factors = Column(JSON)
    alerts = Column(JSON)
    recommendations = Column(JSON)

    created_at = Column(DateTime, server_default=func.now())


class OutcomeRecord(Base):
    """Ground-truth feedback applied to a location's alert policy."""
    __tablename__ = "alert_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(String(40), nullable=False, index=True)
    recorded_at = Column(DateTime, nullable=False)
    action = Column(String(20), nullable=False)
    actual_water_state = Column(String(20), nullable=False)
    reward = Column(Float)
    time_to_impact_minutes = Column(Float)
    created_at = Column(DateTime, server_default=func.now())
