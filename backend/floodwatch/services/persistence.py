"""Database sink for assessments, outcomes, and policy snapshots.

Failures are logged and rolled back; they never propagate into the
assessment path.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from floodwatch.database import SessionLocal
from floodwatch.models.assessment import AssessmentRecord, OutcomeRecord
from floodwatch.models.policy import PolicySnapshot
from floodwatch.schemas.policy import OutcomeResult
from floodwatch.schemas.risk import RiskAssessment
from floodwatch.services import policy_io

logger = logging.getLogger(__name__)


def persist_assessment(location_id: str, result: RiskAssessment) -> None:
    db: Session = SessionLocal()
    try:
        db.add(AssessmentRecord(
            location_id=location_id,
            assessed_at=datetime.now(timezone.utc),
            score=result.score,
            level=result.level.value,
            confidence=result.confidence,
            time_to_impact_minutes=result.time_to_impact_minutes,
            evacuation_recommended=result.evacuation_recommended,
            recommended_action=result.recommended_action.value if result.recommended_action else None,
            action_confidence=result.action_confidence,
            mdp_state=result.mdp_state.model_dump(mode="json") if result.mdp_state else None,
            factors=result.factors.model_dump(),
            alerts=result.alerts,
            recommendations=result.recommendations,
        ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("Failed to persist assessment for %s: %s", location_id, e)
    finally:
        db.close()


def persist_outcome(result: OutcomeResult, time_to_impact_minutes: float | None = None) -> None:
    db: Session = SessionLocal()
    try:
        db.add(OutcomeRecord(
            location_id=result.location_id,
            recorded_at=datetime.now(timezone.utc),
            action=result.action.value,
            actual_water_state=result.actual_water_state.value,
            reward=result.reward,
            time_to_impact_minutes=time_to_impact_minutes,
        ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("Failed to persist outcome for %s: %s", result.location_id, e)
    finally:
        db.close()


def save_policy_snapshot(location_id: str, document: dict) -> None:
    db: Session = SessionLocal()
    try:
        db.add(PolicySnapshot(
            location_id=location_id,
            saved_at=datetime.now(timezone.utc),
            state_count=len(document.get("q_table", {})),
            document=policy_io.dumps(document),
        ))
        db.commit()
        logger.info("Saved policy snapshot for %s", location_id)
    except Exception as e:
        db.rollback()
        logger.warning("Failed to save policy snapshot for %s: %s", location_id, e)
    finally:
        db.close()


def load_latest_policy(location_id: str) -> str | None:
    db: Session = SessionLocal()
    try:
        row = (
            db.query(PolicySnapshot)
            .filter(PolicySnapshot.location_id == location_id)
            .order_by(PolicySnapshot.saved_at.desc(), PolicySnapshot.id.desc())
            .first()
        )
        return row.document if row else None
    except Exception as e:
        logger.warning("Failed to load policy snapshot for %s: %s", location_id, e)
        return None
    finally:
        db.close()
