import os

import pytest

import inspection_dashboard as app_module
from inspection_dashboard import create_app

TARGET_BODY = {
    "year": 2025,
    "combinedTarget": 8.2,
    "productionTarget": 7.5,
    "dpdiTarget": 0.7,
    "allocationStrategy": "manual",
    "baseline": {"month": "Dec-24", "combinedDpu": 8.0, "productionDpu": 8.0, "dpdiDpu": 0.0},
    "stageTargets": [
        {"stageName": "SIP6", "targetDpu": 1.2, "isManual": True},
        {"stageName": "CFC", "targetDpu": 7.0, "isManual": True},
    ],
}

@pytest.fixture
def app_instance(monkeypatch, fake_supabase):
    monkeypatch.setattr(app_module, "create_client", lambda url, key: fake_supabase)
    os.environ.setdefault("SECRET_KEY", "test")
    os.environ.setdefault("SUPABASE_URL", "http://localhost")
    os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")
    app = create_app()
    return app

def _client(app, username="ADMIN"):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["username"] = username
    return client

@pytest.fixture
def baseline(store, make_month):
    dec = make_month("Dec-24", {"SIP6": (100, 200), "CFC": (100, 600)})
    store.save_inspections([dec])
    return dec

def test_save_and_fetch_year_target(app_instance):
    client = _client(app_instance)

    response = client.post("/api/targets", json=TARGET_BODY)
    assert response.status_code == 201
    created = response.get_json()["data"]
    assert created["combinedTarget"] == 8.2
    assert created["createdAt"] == created["updatedAt"]

    response = client.post("/api/targets", json={**TARGET_BODY, "combinedTarget": 8.0})
    assert response.status_code == 200
    assert response.get_json()["data"]["createdAt"] == created["createdAt"]

    response = client.get("/api/targets?year=2025")
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["combinedTarget"] == 8.0
    assert [target["stageName"] for target in data["stageTargets"]] == ["SIP6", "CFC"]

    response = client.get("/api/targets")
    assert [target["year"] for target in response.get_json()["data"]] == [2025]

def test_save_target_validation(app_instance):
    client = _client(app_instance)
    response = client.post("/api/targets", json={"year": 2025})
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Missing required fields")

    response = client.post(
        "/api/targets", json={**TARGET_BODY, "allocationStrategy": "random"}
    )
    assert response.status_code == 400

def test_fetch_missing_target(app_instance):
    client = _client(app_instance, "USER")
    assert client.get("/api/targets?year=2030").status_code == 404

def test_delete_target(app_instance):
    client = _client(app_instance)
    client.post("/api/targets", json=TARGET_BODY)

    assert client.delete("/api/targets").status_code == 400
    assert client.delete("/api/targets?year=2025").status_code == 200
    assert client.delete("/api/targets?year=2025").status_code == 404

def test_allocate_from_stored_baseline(app_instance, baseline, store):
    client = _client(app_instance)
    response = client.post(
        "/api/targets/allocate",
        json={"baselineMonthId": "dec-24", "combinedTarget": 4.0},
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["valid"] is True
    data = payload["data"]
    assert data["year"] == 2025
    assert data["baseline"]["month"] == "Dec-24"
    assert [(t["stageName"], t["targetDpu"]) for t in data["stageTargets"]] == [
        ("SIP6", 1.0),
        ("CFC", 3.0),
    ]

    target, _ = store.fetch_year_target(2025)
    assert target is None

def test_allocate_and_save(app_instance, baseline, store):
    client = _client(app_instance)
    response = client.post(
        "/api/targets/allocate",
        json={
            "baselineMonthId": "dec-24",
            "year": 2025,
            "combinedTarget": 4.0,
            "allocationStrategy": "hybrid",
            "save": True,
        },
    )
    assert response.status_code == 200
    target, _ = store.fetch_year_target(2025)
    assert target.allocation_strategy == "hybrid"
    assert len(target.stage_targets) == 2

def test_allocate_errors(app_instance, baseline):
    client = _client(app_instance)
    assert client.post("/api/targets/allocate", json={}).status_code == 400
    assert client.post(
        "/api/targets/allocate", json={"baselineMonthId": "jan-30", "combinedTarget": 4.0}
    ).status_code == 404
    assert client.post(
        "/api/targets/allocate",
        json={"baselineMonthId": "dec-24", "combinedTarget": 4.0, "filterType": "paint"},
    ).status_code == 400
    assert client.post(
        "/api/targets/allocate",
        json={"baselineMonthId": "dec-24", "combinedTarget": 4.0, "allocationStrategy": "guess"},
    ).status_code == 400

def test_allocate_is_admin_only(app_instance, baseline):
    client = _client(app_instance, "USER")
    response = client.post(
        "/api/targets/allocate", json={"baselineMonthId": "dec-24", "combinedTarget": 4.0}
    )
    assert response.status_code == 403

def test_save_intervention_plan(app_instance, store, jan_25):
    store.save_inspections([jan_25])
    client = _client(app_instance, "USER")

    response = client.post(
        "/api/interventions",
        json={
            "stageName": "SIP6",
            "year": 2025,
            "interventions": [
                {
                    "title": "New sealing jig",
                    "type": "Tooling",
                    "estimatedDpuReduction": -0.5,
                    "confidenceLevel": "High",
                }
            ],
        },
    )
    assert response.status_code == 201
    plan = response.get_json()["data"]
    assert plan["stageId"] == "sip6"
    assert plan["createdBy"] == "USER"
    assert plan["currentState"]["currentDpu"] == 2.58
    assert plan["currentState"]["targetDpu"] == 1.29
    assert plan["projections"]["totalExpectedImpact"] == -0.27
    assert plan["projections"]["confidenceScore"] == 90

    response = client.post(
        "/api/interventions", json={"stageName": "SIP6", "year": 2025, "interventions": []}
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["createdAt"] == plan["createdAt"]

def test_fetch_intervention_plans(app_instance, store, jan_25):
    store.save_inspections([jan_25])
    client = _client(app_instance, "USER")
    client.post("/api/interventions", json={"stageName": "SIP6", "year": 2025})

    response = client.get("/api/interventions?year=2025")
    assert [plan["stageName"] for plan in response.get_json()["data"]] == ["SIP6"]

    assert client.get("/api/interventions?year=2025&stageName=SIP6").status_code == 200
    assert client.get("/api/interventions?year=2025&stageName=CFC").status_code == 404

def test_intervention_plan_validation(app_instance):
    client = _client(app_instance, "USER")
    assert client.post("/api/interventions", json={"year": 2025}).status_code == 400
    response = client.post(
        "/api/interventions",
        json={"stageName": "SIP6", "year": 2025, "interventions": [{"title": "X", "type": "Magic"}]},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Unknown intervention type: Magic"

def test_delete_intervention_plan(app_instance, store, jan_25):
    store.save_inspections([jan_25])
    user = _client(app_instance, "USER")
    user.post("/api/interventions", json={"stageName": "SIP6", "year": 2025})
    assert user.delete("/api/interventions?stageName=SIP6&year=2025").status_code == 403

    admin = _client(app_instance)
    assert admin.delete("/api/interventions?stageName=SIP6").status_code == 400
    assert admin.delete("/api/interventions?stageName=SIP6&year=2025").status_code == 200
    assert admin.delete("/api/interventions?stageName=SIP6&year=2025").status_code == 404

def test_glide_path_endpoint(app_instance):
    client = _client(app_instance, "USER")
    response = client.get("/api/glide-path?currentDpu=12&targetDpu=8.2&month=5&year=2025")
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["monthsRemaining"] == 6
    assert data["requiredMonthlyReduction"] == 0.63
    assert data["monthlyTargets"][0]["month"] == "Jul-25"

def test_glide_path_uses_configured_target(app_instance):
    app_instance.config["DPU_YEAR_END_TARGET"] = 6.0
    client = _client(app_instance, "USER")
    response = client.get("/api/glide-path?currentDpu=12&month=5&year=2025")
    data = response.get_json()["data"]
    assert data["requiredMonthlyReduction"] == 1.0
    assert data["monthlyTargets"][-1]["targetDpu"] == 6.0

def test_glide_path_validation(app_instance):
    client = _client(app_instance, "USER")
    response = client.get("/api/glide-path")
    assert response.status_code == 400
    assert response.get_json()["error"] == "currentDpu is required"
    assert client.get("/api/glide-path?currentDpu=abc").status_code == 400
    assert client.get("/api/glide-path?currentDpu=12&month=12").status_code == 400
