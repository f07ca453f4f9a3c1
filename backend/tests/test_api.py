import math
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from floodwatch.database import SessionLocal
from floodwatch.main import app
from floodwatch.models.assessment import AssessmentRecord, OutcomeRecord
from floodwatch.models.policy import PolicySnapshot
from floodwatch.services.estimators import EstimatorEnsemble


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def fresh_estimators(monkeypatch):
    ensemble = EstimatorEnsemble()
    monkeypatch.setattr(app.state.registry, "estimators", ensemble)
    yield ensemble
    ensemble.shutdown()


def _readings_payload(levels, span_hours):
    end = datetime.now(timezone.utc)
    step = timedelta(hours=span_hours) / (len(levels) - 1)
    return [
        {"timestamp": (end - step * (len(levels) - 1 - i)).isoformat(), "water_level_ft": level}
        for i, level in enumerate(levels)
    ]


def _count(model, location_id):
    db = SessionLocal()
    try:
        return db.query(model).filter(model.location_id == location_id).count()
    finally:
        db.close()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_locations_list(client):
    resp = await client.get("/api/v1/locations/")
    assert resp.status_code == 200
    locations = resp.json()
    ids = {loc["location_id"] for loc in locations}
    assert {"TX-BEXAR", "TX-KERR", "TX-HARRIS"} <= ids
    kerr = next(loc for loc in locations if loc["location_id"] == "TX-KERR")
    assert kerr["critical_level_ft"] == 14.0


@pytest.mark.asyncio
async def test_location_detail(client):
    resp = await client.get("/api/v1/locations/TX-DALLAS")
    assert resp.status_code == 200
    assert resp.json()["county"] == "Dallas"
    resp = await client.get("/api/v1/locations/TX-NOWHERE")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_assess_rapid_rise(client):
    before = _count(AssessmentRecord, "TX-TRAVIS")
    resp = await client.post("/api/v1/assess/TX-TRAVIS", json={
        "readings": _readings_payload([5.0, 8.0, 11.0], span_hours=2),
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["level"] in ("high", "extreme")
    assert data["evacuation_recommended"] is True
    assert round(data["time_to_impact_minutes"]) == 80
    assert data["recommended_action"] in ("none", "watch", "warning", "high", "evacuate")
    assert data["mdp_state"]["rate_of_change"] == pytest.approx(3.0)
    # catalogue metadata is used when the caller sends none
    assert data["factors"]["urban_density"] > 0
    assert _count(AssessmentRecord, "TX-TRAVIS") == before + 1


@pytest.mark.asyncio
async def test_assess_with_forecast(client):
    now = datetime.now(timezone.utc)
    resp = await client.post("/api/v1/assess/TX-BEXAR", json={
        "readings": _readings_payload([3.0, 3.5], span_hours=1),
        "forecast": {
            "kind": "nowcast",
            "hourly": [
                {"time": (now + timedelta(hours=h)).isoformat(), "precipitation_mm": 25.0}
                for h in range(1, 7)
            ],
        },
    })
    assert resp.status_code == 200
    assert resp.json()["factors"]["rainfall_nowcast"] > 5.0
    assert "HEAVY_RAIN_EXPECTED" in resp.json()["alerts"]


@pytest.mark.asyncio
async def test_assess_malformed_forecast_is_ignored(client):
    resp = await client.post("/api/v1/assess/TX-BEXAR", json={
        "readings": _readings_payload([3.0, 3.0], span_hours=1),
        "forecast": {"kind": "radar", "frames": [1, 2, 3]},
    })
    assert resp.status_code == 200
    assert resp.json()["factors"]["rainfall_nowcast"] == 0.0


@pytest.mark.asyncio
async def test_assess_empty_readings(client):
    resp = await client.post("/api/v1/assess/TX-DALLAS", json={})
    assert resp.status_code == 200
    data = resp.json()
    assert data["level"] == "none"
    assert data["confidence"] <= 0.6


@pytest.mark.asyncio
async def test_assess_unknown_location(client):
    resp = await client.post("/api/v1/assess/TX-NOWHERE", json={"readings": []})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_outcome_after_assessment(client):
    await client.post("/api/v1/assess/TX-HARRIS", json={
        "readings": _readings_payload([10.0, 12.0, 14.0], span_hours=2),
    })
    before = _count(OutcomeRecord, "TX-HARRIS")
    resp = await client.post("/api/v1/outcomes/TX-HARRIS", json={
        "observed_level_ft": 16.0,
        "time_to_impact_minutes": 90,
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["location_id"] == "TX-HARRIS"
    assert data["actual_water_state"] == "critical"
    assert _count(OutcomeRecord, "TX-HARRIS") == before + 1


@pytest.mark.asyncio
async def test_outcome_missing_ground_truth(client):
    resp = await client.post("/api/v1/outcomes/TX-KERR", json={
        "prev_state": {"water_level": 4.0},
        "action": "watch",
    })
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_policy_export_import(client):
    await client.post("/api/v1/outcomes/TX-KERR", json={
        "prev_state": {"water_level": 16.0, "rate_of_change": 2.0},
        "action": "none",
        "actual_water_state": "critical",
    })
    resp = await client.get("/api/v1/policy/TX-KERR")
    assert resp.status_code == 200
    document = resp.json()
    assert document["q_table"]

    before = _count(PolicySnapshot, "TX-BEXAR")
    resp = await client.put("/api/v1/policy/TX-BEXAR", json=document)
    assert resp.status_code == 200
    assert resp.json()["states"] == len(document["q_table"])
    assert _count(PolicySnapshot, "TX-BEXAR") == before + 1

    resp = await client.get("/api/v1/policy/TX-BEXAR")
    assert resp.json() == document


@pytest.mark.asyncio
async def test_policy_import_rejects_corrupt_document(client):
    original = (await client.get("/api/v1/policy/TX-DALLAS")).json()
    corrupt = dict(original, parameters={"learning_rate": 5.0, "discount_factor": 0.95, "exploration_rate": 0.1})
    resp = await client.put("/api/v1/policy/TX-DALLAS", json=corrupt)
    assert resp.status_code == 400
    assert (await client.get("/api/v1/policy/TX-DALLAS")).json() == original


@pytest.mark.asyncio
async def test_policy_simulate_and_evaluate(client):
    resp = await client.post("/api/v1/policy/TX-TRAVIS/simulate", json={"episodes": 20})
    assert resp.status_code == 200
    assert resp.json()["states"] > 0

    resp = await client.post("/api/v1/policy/TX-TRAVIS/evaluate", json={
        "test_set": [
            {"state": {"water_level": 2.0}},
            {"state": {"water_level": 18.0}, "water_state": "critical"},
        ],
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert data["accuracy"] + data["false_positive_rate"] + data["false_negative_rate"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_policy_unknown_location(client):
    resp = await client.get("/api/v1/policy/TX-NOWHERE")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_simulate_episode_bounds(client):
    resp = await client.post("/api/v1/policy/TX-TRAVIS/simulate", json={"episodes": 0})
    assert resp.status_code == 422
    resp = await client.post("/api/v1/policy/TX-TRAVIS/simulate", json={"episodes": 10**9})
    assert resp.status_code == 422


def _history_payload(hours):
    start = datetime.now(timezone.utc) - timedelta(hours=hours)
    return [
        {
            "timestamp": (start + timedelta(hours=i)).isoformat(),
            "water_level_ft": 3.0 + 4.0 * math.sin(i / 6.0) + (i % 24) / 8.0,
            "flow_rate_cfs": 200.0 + 10 * i,
            "rainfall_in": 0.1 if i % 5 == 0 else 0.0,
        }
        for i in range(hours)
    ]


@pytest.mark.asyncio
async def test_trained_estimators_feed_assessments(client, fresh_estimators):
    readings = _readings_payload([4.0, 5.0, 6.5], span_hours=2)
    before = (await client.post("/api/v1/assess/TX-TRAVIS", json={"readings": readings})).json()
    assert before["model_risk_level"] is None
    assert before["predicted_level_ft"] is None

    resp = await client.post("/api/v1/estimators/train", json={"readings": _history_payload(72)})
    assert resp.status_code == 200
    report = resp.json()
    assert report["readings"] == 72
    assert report["predictor_trained"] is True
    assert report["classifier_trained"] is True
    assert math.isfinite(report["predictor_loss"])

    after = (await client.post("/api/v1/assess/TX-TRAVIS", json={"readings": readings})).json()
    assert after["model_risk_level"] in ("low", "moderate", "high", "extreme")
    assert after["predicted_level_ft"] is not None


@pytest.mark.asyncio
async def test_train_requires_readings(client, fresh_estimators):
    resp = await client.post("/api/v1/estimators/train", json={"readings": []})
    assert resp.status_code == 422
    assert not fresh_estimators.predictor.trained
