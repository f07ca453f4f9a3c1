"""Flat JSON document format for alert policies.

Layout (keys sorted on output so two exports diff cleanly):

    {
      "parameters": {"discount_factor": .., "exploration_rate": .., "learning_rate": ..},
      "q_table": {"<level>|<rate>|<precip>|<day|night>|<previous>": {"<action>": q, ...}},
      "rewards": {"matrix": {"<action>": {"<water state>": r}}, "timing_bonus": ..,
                  "timing_lead_minutes": ..},
      "version": 1
    }

Validation is all-or-nothing: `parse_document` either returns fully typed
contents or raises PolicyImportError.
"""

import json
import math
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, ValidationError

from floodwatch.schemas.policy import ALERT_ACTIONS, WATER_STATES, AlertAction, WaterState
from floodwatch.services.errors import PolicyImportError

DOCUMENT_VERSION = 1

# Guard against absurd reward tables; the default matrix tops out at 1000.
MAX_ABS_REWARD = 1_000_000.0


class _Parameters(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    learning_rate: float
    discount_factor: float
    exploration_rate: float


class _Rewards(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    matrix: dict[str, dict[str, float]]
    timing_bonus: float
    timing_lead_minutes: float


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    version: int
    parameters: _Parameters
    rewards: _Rewards
    q_table: dict[str, dict[str, float]]


@dataclass(frozen=True)
class ParsedPolicy:
    learning_rate: float
    discount_factor: float
    exploration_rate: float
    matrix: dict[AlertAction, dict[WaterState, float]]
    timing_bonus: float
    timing_lead_minutes: float
    q_table: dict[str, dict[AlertAction, float]]


def build_document(
    learning_rate: float,
    discount_factor: float,
    exploration_rate: float,
    matrix: dict[AlertAction, dict[WaterState, float]],
    timing_bonus: float,
    timing_lead_minutes: float,
    q_table: dict[str, dict[AlertAction, float]],
) -> dict:
    return {
        "version": DOCUMENT_VERSION,
        "parameters": {
            "learning_rate": learning_rate,
            "discount_factor": discount_factor,
            "exploration_rate": exploration_rate,
        },
        "rewards": {
            "matrix": {
                action.value: {ws.value: matrix[action][ws] for ws in WATER_STATES}
                for action in ALERT_ACTIONS
            },
            "timing_bonus": timing_bonus,
            "timing_lead_minutes": timing_lead_minutes,
        },
        "q_table": {
            token: {action.value: values[action] for action in ALERT_ACTIONS}
            for token, values in sorted(q_table.items())
        },
    }


def dumps(document: dict) -> str:
    return json.dumps(document, indent=2, sort_keys=True, allow_nan=False)


def loads(text: str) -> dict:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise PolicyImportError(f"Policy is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise PolicyImportError("Policy document must be a JSON object")
    return document


def parse_document(document: dict, parse_token) -> ParsedPolicy:
    """Validate a policy document; `parse_token` maps a q-table key to a state key or raises ValueError."""
    try:
        doc = _Document.model_validate(document)
    except ValidationError as e:
        raise PolicyImportError(f"Malformed policy document: {e.error_count()} error(s)") from e

    if doc.version != DOCUMENT_VERSION:
        raise PolicyImportError(f"Unsupported policy version {doc.version}")

    params = doc.parameters
    if not 0 < params.learning_rate <= 1:
        raise PolicyImportError(f"learning_rate out of range: {params.learning_rate}")
    if not 0 <= params.discount_factor < 1:
        raise PolicyImportError(f"discount_factor out of range: {params.discount_factor}")
    if not 0 <= params.exploration_rate <= 1:
        raise PolicyImportError(f"exploration_rate out of range: {params.exploration_rate}")

    matrix = _parse_matrix(doc.rewards.matrix)
    bonus = doc.rewards.timing_bonus
    lead = doc.rewards.timing_lead_minutes
    if not math.isfinite(bonus) or abs(bonus) > MAX_ABS_REWARD:
        raise PolicyImportError(f"timing_bonus out of range: {bonus}")
    if not math.isfinite(lead) or lead < 0:
        raise PolicyImportError(f"timing_lead_minutes out of range: {lead}")

    # No sequence of updates starting from [0, 0.01) can leave this band.
    max_reward = max(abs(r) for row in matrix.values() for r in row.values()) + abs(bonus)
    q_bound = max_reward / (1 - params.discount_factor) + 0.01

    q_table: dict[str, dict[AlertAction, float]] = {}
    seen = set()
    for token, row in doc.q_table.items():
        try:
            key = parse_token(token)
        except ValueError as e:
            raise PolicyImportError(f"Unknown state key {token!r}") from e
        if key in seen:
            raise PolicyImportError(f"Duplicate state key {token!r}")
        seen.add(key)
        values = _parse_action_row(row, f"q_table[{token!r}]")
        for action, q in values.items():
            if abs(q) > q_bound:
                raise PolicyImportError(f"Q({token!r}, {action.value}) = {q} exceeds bound {q_bound:.2f}")
        q_table[token] = values

    return ParsedPolicy(
        learning_rate=params.learning_rate,
        discount_factor=params.discount_factor,
        exploration_rate=params.exploration_rate,
        matrix=matrix,
        timing_bonus=bonus,
        timing_lead_minutes=lead,
        q_table=q_table,
    )


def _parse_matrix(raw: dict[str, dict[str, float]]) -> dict[AlertAction, dict[WaterState, float]]:
    expected = {a.value for a in ALERT_ACTIONS}
    if set(raw) != expected:
        raise PolicyImportError(f"Reward matrix actions {sorted(raw)} != {sorted(expected)}")

    matrix: dict[AlertAction, dict[WaterState, float]] = {}
    for action in ALERT_ACTIONS:
        row = raw[action.value]
        states = {ws.value for ws in WATER_STATES}
        if set(row) != states:
            raise PolicyImportError(f"Reward row {action.value!r} has states {sorted(row)}")
        parsed = {}
        for ws in WATER_STATES:
            r = row[ws.value]
            if not math.isfinite(r) or abs(r) > MAX_ABS_REWARD:
                raise PolicyImportError(f"Reward ({action.value}, {ws.value}) out of range: {r}")
            parsed[ws] = r
        matrix[action] = parsed
    return matrix


def _parse_action_row(row: dict[str, float], where: str) -> dict[AlertAction, float]:
    expected = {a.value for a in ALERT_ACTIONS}
    if set(row) != expected:
        raise PolicyImportError(f"{where} has actions {sorted(row)}, expected {sorted(expected)}")
    values = {}
    for action in ALERT_ACTIONS:
        q = row[action.value]
        if not math.isfinite(q):
            raise PolicyImportError(f"{where}[{action.value!r}] is not finite")
        values[action] = q
    return values
