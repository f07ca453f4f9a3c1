"""Tabular Q-learning alert policy.

States are bucketed (level to 5 ft, rate to 0.5 ft/hr, precipitation to
10 mm) and combined with day/night and the previously issued alert. The
Q-table grows lazily: a state gets small random values for every action the
first time it is seen.

Instances are not thread-safe. Callers serialize access per location (see
policy_registry).
"""

import logging
import math
import random
import threading
from dataclasses import dataclass

from floodwatch.config import settings
from floodwatch.schemas.policy import (
    ALERT_ACTIONS,
    WATER_STATES,
    ActionDecision,
    AlertAction,
    LabeledState,
    MDPState,
    PolicyEvaluation,
    TimeOfDay,
    WaterState,
)
from floodwatch.services import policy_io

logger = logging.getLogger(__name__)

LEVEL_BUCKET_FT = 5
RATE_BUCKET_FT_HR = 0.5
PRECIP_BUCKET_MM = 10

INITIAL_Q_SCALE = 0.01


@dataclass(frozen=True)
class StateKey:
    water_bucket: int
    rate_bucket: float
    precip_bucket: int
    time_of_day: TimeOfDay
    previous_alert: AlertAction

    @classmethod
    def from_state(cls, state: MDPState) -> "StateKey":
        return cls(
            water_bucket=int(math.floor(_finite(state.water_level) / LEVEL_BUCKET_FT) * LEVEL_BUCKET_FT),
            rate_bucket=math.floor(_finite(state.rate_of_change) / RATE_BUCKET_FT_HR) * RATE_BUCKET_FT_HR,
            precip_bucket=int(math.floor(_finite(state.precipitation) / PRECIP_BUCKET_MM) * PRECIP_BUCKET_MM),
            time_of_day=state.time_of_day,
            previous_alert=state.previous_alert,
        )

    @property
    def token(self) -> str:
        return "|".join((
            str(self.water_bucket),
            repr(float(self.rate_bucket)),
            str(self.precip_bucket),
            self.time_of_day.value,
            self.previous_alert.value,
        ))

    @classmethod
    def parse(cls, token: str) -> "StateKey":
        parts = token.split("|")
        if len(parts) != 5:
            raise ValueError(f"expected 5 fields, got {len(parts)}")
        level, rate, precip, tod, previous = parts
        key = cls(
            water_bucket=int(level),
            rate_bucket=float(rate),
            precip_bucket=int(precip),
            time_of_day=TimeOfDay(tod),
            previous_alert=AlertAction(previous),
        )
        if (
            key.token != token
            or key.water_bucket % LEVEL_BUCKET_FT
            or key.precip_bucket % PRECIP_BUCKET_MM
            or not math.isfinite(key.rate_bucket)
            # -0.0 would alias the 0.0 bucket
            or (key.rate_bucket == 0 and math.copysign(1.0, key.rate_bucket) < 0)
            or (key.rate_bucket / RATE_BUCKET_FT_HR) != math.floor(key.rate_bucket / RATE_BUCKET_FT_HR)
        ):
            raise ValueError(f"not a canonical state key: {token!r}")
        return key


def encode_state(state: MDPState) -> StateKey:
    return StateKey.from_state(state)


def classify_water_state(water_level: float, rate_of_change: float) -> WaterState:
    if water_level >= 15:
        return WaterState.CRITICAL
    if water_level >= 10:
        return WaterState.HIGH
    if water_level >= 5 or rate_of_change > 1:
        return WaterState.RISING
    return WaterState.NORMAL


# The action each water state calls for; over-alerting is measured against it.
TARGET_ACTION: dict[WaterState, AlertAction] = {
    WaterState.NORMAL: AlertAction.NONE,
    WaterState.RISING: AlertAction.WATCH,
    WaterState.HIGH: AlertAction.WARNING,
    WaterState.CRITICAL: AlertAction.EVACUATE,
}

APPROPRIATE_ACTIONS: dict[WaterState, frozenset[AlertAction]] = {
    WaterState.NORMAL: frozenset({AlertAction.NONE}),
    WaterState.RISING: frozenset({AlertAction.NONE, AlertAction.WATCH}),
    WaterState.HIGH: frozenset({AlertAction.WATCH, AlertAction.WARNING, AlertAction.HIGH}),
    WaterState.CRITICAL: frozenset({AlertAction.HIGH, AlertAction.EVACUATE}),
}


def is_action_appropriate(action: AlertAction, water_state: WaterState) -> bool:
    return action in APPROPRIATE_ACTIONS[water_state]


def is_over_alert(action: AlertAction, water_state: WaterState) -> bool:
    """More than one escalation step above what the water state calls for."""
    return action.rank > TARGET_ACTION[water_state].rank + 1


# Rows: action issued; columns: observed water state.
# Missing a critical event is catastrophic; evacuating ahead of one is the
# single best outcome. Over-alerting costs grow with the size of the overshoot.
DEFAULT_REWARD_MATRIX: dict[AlertAction, dict[WaterState, float]] = {
    AlertAction.NONE: {
        WaterState.NORMAL: 10.0,
        WaterState.RISING: -2.0,
        WaterState.HIGH: -20.0,
        WaterState.CRITICAL: -1000.0,
    },
    AlertAction.WATCH: {
        WaterState.NORMAL: -2.5,
        WaterState.RISING: 10.0,
        WaterState.HIGH: -2.0,
        WaterState.CRITICAL: -100.0,
    },
    AlertAction.WARNING: {
        WaterState.NORMAL: -5.0,
        WaterState.RISING: -2.0,
        WaterState.HIGH: 10.0,
        WaterState.CRITICAL: -5.0,
    },
    AlertAction.HIGH: {
        WaterState.NORMAL: -7.5,
        WaterState.RISING: -5.0,
        WaterState.HIGH: 5.0,
        WaterState.CRITICAL: 10.0,
    },
    AlertAction.EVACUATE: {
        WaterState.NORMAL: -10.0,
        WaterState.RISING: -5.0,
        WaterState.HIGH: -2.0,
        WaterState.CRITICAL: 100.0,
    },
}

DEFAULT_TIMING_BONUS = 5.0
DEFAULT_TIMING_LEAD_MINUTES = 60.0

# Row-stochastic: P(next water state | current water state)
TRANSITION_PROBABILITIES: dict[WaterState, dict[WaterState, float]] = {
    WaterState.NORMAL: {
        WaterState.NORMAL: 0.70, WaterState.RISING: 0.25, WaterState.HIGH: 0.04, WaterState.CRITICAL: 0.01,
    },
    WaterState.RISING: {
        WaterState.NORMAL: 0.10, WaterState.RISING: 0.50, WaterState.HIGH: 0.35, WaterState.CRITICAL: 0.05,
    },
    WaterState.HIGH: {
        WaterState.NORMAL: 0.05, WaterState.RISING: 0.15, WaterState.HIGH: 0.50, WaterState.CRITICAL: 0.30,
    },
    WaterState.CRITICAL: {
        WaterState.NORMAL: 0.01, WaterState.RISING: 0.04, WaterState.HIGH: 0.25, WaterState.CRITICAL: 0.70,
    },
}

# Representative (level ft, rate ft/hr) per water state
STATE_PROTOTYPES: dict[WaterState, tuple[float, float]] = {
    WaterState.NORMAL: (2.0, 0.0),
    WaterState.RISING: (7.0, 1.5),
    WaterState.HIGH: (12.0, 2.0),
    WaterState.CRITICAL: (18.0, 3.0),
}


@dataclass
class RewardTable:
    matrix: dict[AlertAction, dict[WaterState, float]]
    timing_bonus: float = DEFAULT_TIMING_BONUS
    timing_lead_minutes: float = DEFAULT_TIMING_LEAD_MINUTES

    @classmethod
    def default(cls) -> "RewardTable":
        return cls(matrix={a: dict(row) for a, row in DEFAULT_REWARD_MATRIX.items()})

    def reward(
        self,
        action: AlertAction,
        actual: WaterState,
        time_to_impact_minutes: float | None = None,
    ) -> float:
        reward = self.matrix[action][actual]
        if (
            time_to_impact_minutes is not None
            and time_to_impact_minutes > self.timing_lead_minutes
            and action != AlertAction.NONE
            and actual in (WaterState.HIGH, WaterState.CRITICAL)
        ):
            reward += self.timing_bonus
        return reward


def prototype_state(water_state: WaterState, like: MDPState, previous_alert: AlertAction) -> MDPState:
    level, rate = STATE_PROTOTYPES[water_state]
    return MDPState(
        water_level=level,
        rate_of_change=rate,
        precipitation=like.precipitation,
        time_of_day=like.time_of_day,
        previous_alert=previous_alert,
    )


class MDPAlertPolicy:
    def __init__(
        self,
        learning_rate: float | None = None,
        discount_factor: float | None = None,
        exploration_rate: float | None = None,
        rewards: RewardTable | None = None,
        seed: int | None = None,
    ):
        self.learning_rate = learning_rate if learning_rate is not None else settings.mdp_learning_rate
        self.discount_factor = discount_factor if discount_factor is not None else settings.mdp_discount_factor
        self.exploration_rate = exploration_rate if exploration_rate is not None else settings.mdp_exploration_rate
        self.rewards = rewards or RewardTable.default()
        self._rng = random.Random(seed if seed is not None else settings.mdp_seed)
        self._q: dict[StateKey, dict[AlertAction, float]] = {}

    def __len__(self) -> int:
        return len(self._q)

    def __contains__(self, state: MDPState) -> bool:
        return encode_state(state) in self._q

    @property
    def states(self) -> list[StateKey]:
        return list(self._q)

    def q_values(self, state: MDPState) -> dict[AlertAction, float]:
        """Copy of the Q-row for a state, materializing it if unseen."""
        return dict(self._row(encode_state(state)))

    def _row(self, key: StateKey) -> dict[AlertAction, float]:
        row = self._q.get(key)
        if row is None:
            row = {action: self._rng.random() * INITIAL_Q_SCALE for action in ALERT_ACTIONS}
            self._q[key] = row
        return row

    # --- action selection ---

    def select_action(
        self,
        state: MDPState,
        explore: bool = True,
        materialize: bool = True,
    ) -> ActionDecision:
        """Epsilon-greedy action for a state.

        With `explore=False` the greedy action is always returned. With
        `materialize=False` an unseen state is treated as an all-zero row and
        the table is left untouched.
        """
        key = encode_state(state)
        if materialize:
            row = self._row(key)
        else:
            row = self._q.get(key) or {action: 0.0 for action in ALERT_ACTIONS}

        if explore and self._rng.random() < self.exploration_rate:
            return ActionDecision(action=self._rng.choice(ALERT_ACTIONS), confidence=0.5, explored=True)

        best_action = ALERT_ACTIONS[0]
        best_q = row[best_action]
        for action in ALERT_ACTIONS[1:]:
            if row[action] > best_q:
                best_action, best_q = action, row[action]

        return ActionDecision(action=best_action, confidence=_q_confidence(row, best_q))

    # --- learning ---

    def update(self, state: MDPState, action: AlertAction, reward: float, next_state: MDPState) -> float:
        """One-step Q-learning update; returns the new Q(state, action)."""
        row = self._row(encode_state(state))
        next_row = self._row(encode_state(next_state))

        current = row[action]
        target = reward + self.discount_factor * max(next_row.values())
        row[action] = current + self.learning_rate * (target - current)
        return row[action]

    def calculate_reward(
        self,
        action: AlertAction,
        actual: WaterState,
        time_to_impact_minutes: float | None = None,
    ) -> float:
        return self.rewards.reward(action, actual, time_to_impact_minutes)

    def record_outcome(
        self,
        prev_state: MDPState,
        action: AlertAction,
        actual: WaterState,
        time_to_impact_minutes: float | None = None,
        next_state: MDPState | None = None,
    ) -> float:
        """Score a past decision against ground truth and learn from it.

        Without an explicit successor the prototype state of the observed
        water state is used, carrying the issued action forward.
        """
        reward = self.calculate_reward(action, actual, time_to_impact_minutes)
        if next_state is None:
            next_state = prototype_state(actual, prev_state, action)
        self.update(prev_state, action, reward, next_state)
        return reward

    # --- simulation ---

    def random_state(self, previous_alert: AlertAction = AlertAction.NONE) -> MDPState:
        return MDPState(
            water_level=self._rng.random() * 20,
            rate_of_change=self._rng.random() * 5 - 1,
            precipitation=self._rng.random() * 50,
            time_of_day=TimeOfDay.DAY if self._rng.random() > 0.5 else TimeOfDay.NIGHT,
            previous_alert=previous_alert,
        )

    def simulate_transition(self, state: MDPState, action: AlertAction) -> MDPState:
        current = classify_water_state(state.water_level, state.rate_of_change)
        draw = self._rng.random()
        cumulative = 0.0
        next_ws = WATER_STATES[-1]
        for candidate, prob in TRANSITION_PROBABILITIES[current].items():
            cumulative += prob
            if draw < cumulative:
                next_ws = candidate
                break

        level, rate = STATE_PROTOTYPES[next_ws]
        return MDPState(
            water_level=level + (self._rng.random() - 0.5) * 3,
            rate_of_change=rate + (self._rng.random() - 0.5),
            precipitation=state.precipitation * 0.8 + self._rng.random() * 10,
            time_of_day=state.time_of_day,
            previous_alert=action,
        )

    def run_monte_carlo(
        self,
        episodes: int | None = None,
        steps: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Self-play warm-up. Stops early, between episodes, once `cancel_event` is set."""
        episodes = episodes if episodes is not None else settings.monte_carlo_episodes
        steps = steps if steps is not None else settings.monte_carlo_steps

        completed = 0
        for _ in range(episodes):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Monte Carlo cancelled after %d/%d episodes", completed, episodes)
                return

            state = self.random_state()
            trajectory = []
            for _ in range(steps):
                decision = self.select_action(state)
                next_state = self.simulate_transition(state, decision.action)
                actual = classify_water_state(next_state.water_level, next_state.rate_of_change)
                reward = self.calculate_reward(decision.action, actual)
                trajectory.append((state, decision.action, reward, next_state))
                state = next_state

            for s, a, r, s_next in trajectory:
                self.update(s, a, r, s_next)
            completed += 1

        logger.info("Monte Carlo finished %d episodes, %d states in table", completed, len(self._q))

    # --- evaluation ---

    def sample_states(self, count: int) -> list[LabeledState]:
        samples = []
        for _ in range(count):
            state = self.random_state(previous_alert=self._rng.choice(ALERT_ACTIONS))
            samples.append(LabeledState(state=state))
        return samples

    def evaluate(self, test_set: list[LabeledState | MDPState], explore: bool = False) -> PolicyEvaluation:
        correct = false_positives = false_negatives = 0
        total_confidence = 0.0

        for item in test_set:
            if isinstance(item, LabeledState):
                state, water_state = item.state, item.water_state
            else:
                state, water_state = item, None
            if water_state is None:
                water_state = classify_water_state(state.water_level, state.rate_of_change)

            decision = self.select_action(state, explore=explore, materialize=False)
            if is_action_appropriate(decision.action, water_state):
                correct += 1
            elif is_over_alert(decision.action, water_state):
                false_positives += 1
            else:
                false_negatives += 1
            total_confidence += decision.confidence

        total = len(test_set)
        if total == 0:
            return PolicyEvaluation()
        return PolicyEvaluation(
            total=total,
            accuracy=correct / total,
            false_positive_rate=false_positives / total,
            false_negative_rate=false_negatives / total,
            average_confidence=total_confidence / total,
        )

    # --- serialization ---

    def export_policy(self) -> dict:
        return policy_io.build_document(
            learning_rate=self.learning_rate,
            discount_factor=self.discount_factor,
            exploration_rate=self.exploration_rate,
            matrix=self.rewards.matrix,
            timing_bonus=self.rewards.timing_bonus,
            timing_lead_minutes=self.rewards.timing_lead_minutes,
            q_table={key.token: row for key, row in self._q.items()},
        )

    def export_json(self) -> str:
        return policy_io.dumps(self.export_policy())

    def import_policy(self, document: dict | str) -> None:
        """Replace hyperparameters, rewards and Q-table; all or nothing."""
        if isinstance(document, str):
            document = policy_io.loads(document)
        parsed = policy_io.parse_document(document, StateKey.parse)

        q_table = {StateKey.parse(token): dict(row) for token, row in parsed.q_table.items()}
        rewards = RewardTable(
            matrix={a: dict(row) for a, row in parsed.matrix.items()},
            timing_bonus=parsed.timing_bonus,
            timing_lead_minutes=parsed.timing_lead_minutes,
        )

        self.learning_rate = parsed.learning_rate
        self.discount_factor = parsed.discount_factor
        self.exploration_rate = parsed.exploration_rate
        self.rewards = rewards
        self._q = q_table
        logger.info("Imported alert policy with %d states", len(q_table))

    @classmethod
    def from_document(cls, document: dict | str, seed: int | None = None) -> "MDPAlertPolicy":
        policy = cls(seed=seed)
        policy.import_policy(document)
        return policy

    def clone(self, seed: int | None = None) -> "MDPAlertPolicy":
        return type(self).from_document(self.export_policy(), seed=seed)


def _q_confidence(row: dict[AlertAction, float], best_q: float) -> float:
    """Blend of Q-value spread (clearer winner) and magnitude of the chosen value."""
    values = list(row.values())
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    spread = min(1.0, variance / 10)
    magnitude = min(1.0, abs(best_q) / 20)
    return (spread + magnitude) / 2


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0
