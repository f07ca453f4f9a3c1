"""Per-location ownership of alert policies and accuracy logs.

Each location gets one slot; every operation that reads or mutates the
slot's policy runs under the slot lock, so updates for a location apply in
arrival order. Different locations never share state.
"""

import logging
import threading
from dataclasses import dataclass, field

from floodwatch.config import settings
from floodwatch.schemas.policy import (
    AlertAction,
    LabeledState,
    MDPState,
    OutcomeRequest,
    OutcomeResult,
    PolicyEvaluation,
)
from floodwatch.schemas.risk import RiskAssessment
from floodwatch.schemas.telemetry import LocationMetadata, Reading
from floodwatch.services import assessment
from floodwatch.services.estimators import EstimatorEnsemble
from floodwatch.services.mdp_policy import MDPAlertPolicy, classify_water_state
from floodwatch.services.risk_scoring import AccuracyLog

logger = logging.getLogger(__name__)


@dataclass
class PolicySlot:
    location_id: str
    policy: MDPAlertPolicy
    accuracy_log: AccuracyLog = field(default_factory=AccuracyLog)
    lock: threading.RLock = field(default_factory=threading.RLock)
    last_action: AlertAction = AlertAction.NONE
    last_state: MDPState | None = None
    version: int = 0  # bumped on every Q-table mutation from live feedback


class PolicyRegistry:
    def __init__(self, policy_factory=None, estimators: EstimatorEnsemble | None = None):
        self._policy_factory = policy_factory or MDPAlertPolicy
        self._slots: dict[str, PolicySlot] = {}
        self._lock = threading.Lock()
        self.estimators = estimators
        self.cancel_event = threading.Event()

    def slot(self, location_id: str) -> PolicySlot:
        with self._lock:
            slot = self._slots.get(location_id)
            if slot is None:
                slot = PolicySlot(location_id=location_id, policy=self._policy_factory())
                self._slots[location_id] = slot
            return slot

    def locations(self) -> list[str]:
        with self._lock:
            return list(self._slots)

    def __contains__(self, location_id: str) -> bool:
        with self._lock:
            return location_id in self._slots

    def assess(
        self,
        location_id: str,
        readings: list[Reading],
        forecast=None,
        metadata: LocationMetadata | None = None,
        critical_level: float | None = None,
        timezone: str | None = None,
    ) -> RiskAssessment:
        slot = self.slot(location_id)
        with slot.lock:
            result = assessment.assess(
                readings,
                forecast,
                metadata,
                slot.accuracy_log,
                policy=slot.policy,
                previous_action=slot.last_action,
                estimators=self.estimators,
                critical_level=critical_level,
                tz=timezone,
            )
            if result.recommended_action is not None:
                slot.last_action = result.recommended_action
            slot.last_state = result.mdp_state
        return result

    def record_outcome(self, location_id: str, outcome: OutcomeRequest) -> OutcomeResult:
        slot = self.slot(location_id)
        with slot.lock:
            prev_state = outcome.prev_state or slot.last_state
            if prev_state is None:
                raise ValueError(f"No previous state known for {location_id}")
            action = outcome.action or slot.last_action

            actual = outcome.actual_water_state
            if actual is None:
                if outcome.observed_level_ft is None:
                    raise ValueError("Either actual_water_state or observed_level_ft is required")
                actual = classify_water_state(outcome.observed_level_ft, outcome.observed_rate_ft_hr)

            reward = slot.policy.record_outcome(
                prev_state, action, actual,
                outcome.time_to_impact_minutes,
                next_state=outcome.next_state,
            )
            slot.version += 1

            if outcome.predicted_level is not None and outcome.actual_level is not None:
                slot.accuracy_log.record(outcome.predicted_level, outcome.actual_level)

        logger.info("Outcome for %s: %s vs %s -> reward %.1f", location_id, action.value, actual.value, reward)
        return OutcomeResult(location_id=location_id, action=action, actual_water_state=actual, reward=reward)

    def export_policy(self, location_id: str) -> dict:
        slot = self.slot(location_id)
        with slot.lock:
            return slot.policy.export_policy()

    def import_policy(self, location_id: str, document: dict | str) -> None:
        slot = self.slot(location_id)
        with slot.lock:
            slot.policy.import_policy(document)
            slot.version += 1

    def run_monte_carlo(self, location_id: str, episodes: int | None = None) -> None:
        """Train the live policy in place; blocks the location for the duration."""
        slot = self.slot(location_id)
        with slot.lock:
            slot.policy.run_monte_carlo(episodes, cancel_event=self.cancel_event)
            slot.version += 1

    def evaluate(self, location_id: str, test_set: list[LabeledState] | None = None) -> PolicyEvaluation:
        slot = self.slot(location_id)
        with slot.lock:
            if test_set is None:
                test_set = slot.policy.sample_states(settings.evaluation_sample_size)
            return slot.policy.evaluate(test_set)

    def improve_policy(self, location_id: str, episodes: int | None = None) -> bool:
        """Train a copy off-lock and promote it if it passes the regression gate.

        Returns True when the candidate replaced the live policy.
        """
        slot = self.slot(location_id)
        with slot.lock:
            document = slot.policy.export_policy()
            version = slot.version
            holdout = slot.policy.sample_states(settings.evaluation_sample_size)
            policy_cls = type(slot.policy)

        candidate = policy_cls.from_document(document)
        baseline = policy_cls.from_document(document).evaluate(holdout)
        candidate.run_monte_carlo(episodes, cancel_event=self.cancel_event)
        if self.cancel_event.is_set():
            return False

        result = candidate.evaluate(holdout)
        if not passes_gate(baseline, result):
            logger.info(
                "Policy for %s not promoted: accuracy %.3f -> %.3f, FNR %.3f -> %.3f",
                location_id, baseline.accuracy, result.accuracy,
                baseline.false_negative_rate, result.false_negative_rate,
            )
            return False

        with slot.lock:
            if slot.version != version:
                logger.info("Policy for %s changed during training, discarding candidate", location_id)
                return False
            slot.policy.import_policy(candidate.export_policy())
            slot.version += 1

        logger.info(
            "Promoted policy for %s: accuracy %.3f, FPR %.3f, FNR %.3f",
            location_id, result.accuracy, result.false_positive_rate, result.false_negative_rate,
        )
        return True

    def improve_all(self, episodes: int | None = None) -> int:
        promoted = 0
        for location_id in self.locations():
            if self.cancel_event.is_set():
                break
            try:
                if self.improve_policy(location_id, episodes):
                    promoted += 1
            except Exception as e:
                logger.error("Policy improvement failed for %s: %s", location_id, e)
        return promoted


def passes_gate(baseline: PolicyEvaluation, candidate: PolicyEvaluation) -> bool:
    return (
        candidate.accuracy >= baseline.accuracy
        and candidate.false_negative_rate <= baseline.false_negative_rate
    )
