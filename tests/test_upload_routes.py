import io
import json
import os

import pytest
from openpyxl import Workbook

import inspection_dashboard as app_module
from inspection_dashboard import create_app
from inspection_dashboard.export import export_backup_csv, export_json_backup
from inspection_dashboard.reconcile import MISSING_DATE_COLUMN

WIDE_CSV = (
    "DATE,BOOMS INSPECTED,BOOMS FAULTS,BOOMS DPU,CFC INSPECTED,CFC FAULTS,CFC DPU,COMBINED DPU\n"
    "Jan-25,1446,1018,0.70,1384,12630,9.13,9.83\n"
    "Feb-25,1500,750,0.50,1400,1400,1.00,1.50\n"
)

@pytest.fixture
def app_instance(monkeypatch, fake_supabase):
    monkeypatch.setattr(app_module, "create_client", lambda url, key: fake_supabase)
    os.environ.setdefault("SECRET_KEY", "test")
    os.environ.setdefault("SUPABASE_URL", "http://localhost")
    os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")
    app = create_app()
    return app

@pytest.fixture
def admin_client(app_instance):
    client = app_instance.test_client()
    with client.session_transaction() as sess:
        sess["username"] = "ADMIN"
    return client

@pytest.fixture
def existing(store, make_month):
    old = make_month("Dec-24", {"BOOMS": (10, 5), "OLD STAGE": (10, 1)})
    store.save_inspections([old])
    return store

def _upload(client, url, body, filename):
    return client.post(
        url,
        data={"file": (io.BytesIO(body), filename)},
        content_type="multipart/form-data",
    )

def test_csv_upload_replaces_all_months(admin_client, existing, fake_supabase):
    response = _upload(admin_client, "/api/upload-csv", WIDE_CSV.encode("utf-8"), "dpu.csv")
    assert response.status_code == 200
    summary = response.get_json()
    assert summary["success"] is True
    assert summary["monthsProcessed"] == 2
    assert summary["monthsUpdated"] == ["Jan-25", "Feb-25"]
    assert summary["newStagesAdded"] == ["CFC"]
    assert summary["errors"] == []

    months, _ = existing.fetch_inspections()
    assert [month.id for month in months] == ["jan-25", "feb-25"]
    assert months[0].total_dpu == 9.83
    assert ("replace_inspections", "rpc", []) in fake_supabase.calls

def test_csv_upload_with_byte_order_mark(admin_client, store):
    body = "\ufeff".encode("utf-8") + WIDE_CSV.encode("utf-8")
    response = _upload(admin_client, "/api/upload-csv", body, "DPU.CSV")
    assert response.status_code == 200
    assert response.get_json()["monthsProcessed"] == 2

def test_rejected_upload_leaves_data_untouched(admin_client, existing, fake_supabase):
    body = b"MONTH,BOOMS INSPECTED,BOOMS FAULTS,BOOMS DPU\nJan-25,1,0,0\n"
    response = _upload(admin_client, "/api/upload-csv", body, "dpu.csv")
    assert response.status_code == 400
    summary = response.get_json()
    assert summary["success"] is False
    assert summary["errors"] == [MISSING_DATE_COLUMN]

    months, _ = existing.fetch_inspections()
    assert [month.id for month in months] == ["dec-24"]
    assert all(call[1] != "rpc" for call in fake_supabase.calls)

def test_workbook_upload(admin_client, store):
    wb = Workbook()
    ws = wb.active
    ws.append(["DATE", "SIP6 INSPECTED", "SIP6 FAULTS", "SIP6 DPU"])
    ws.append(["Mar-25", 1394, 3591, 2.58])
    buffer = io.BytesIO()
    wb.save(buffer)

    response = _upload(admin_client, "/api/upload-csv", buffer.getvalue(), "dpu.xlsx")
    assert response.status_code == 200
    months, _ = store.fetch_inspections()
    assert months[0].date == "Mar-25"
    assert months[0].stage("sip6").dpu == 2.58

def test_upload_requires_a_supported_file(admin_client):
    response = admin_client.post("/api/upload-csv", data={}, content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No file provided"

    response = _upload(admin_client, "/api/upload-csv", b"hello", "notes.txt")
    assert response.status_code == 400

def test_upload_is_admin_only(app_instance):
    client = app_instance.test_client()
    with client.session_transaction() as sess:
        sess["username"] = "USER"
    response = _upload(client, "/api/upload-csv", WIDE_CSV.encode("utf-8"), "dpu.csv")
    assert response.status_code == 403

def test_failed_replace_reports_error(admin_client, existing, fake_supabase):
    fake_supabase.fail = "timeout"
    response = _upload(admin_client, "/api/upload-csv", WIDE_CSV.encode("utf-8"), "dpu.csv")
    assert response.status_code == 500
    summary = response.get_json()
    assert summary["success"] is False
    assert summary["errors"] == ["Failed to replace inspections: timeout"]

    fake_supabase.fail = None
    months, _ = existing.fetch_inspections()
    assert [month.id for month in months] == ["dec-24"]

def test_restore_sectioned_csv(admin_client, store, jan_25, make_month):
    backup = export_backup_csv([jan_25, make_month("Feb-25", {"BOOMS": (10, 1)})])

    response = _upload(admin_client, "/api/restore-csv", backup.encode("utf-8"), "backup.csv")
    assert response.status_code == 200
    assert response.get_json()["monthsUpdated"] == ["Jan-25", "Feb-25"]

    months, _ = store.fetch_inspections()
    assert [month.id for month in months] == ["month-Jan-25", "month-Feb-25"]
    assert months[0].total_dpu == 20.17

def test_restore_sectioned_csv_from_body(admin_client, jan_25):
    backup = export_backup_csv([jan_25])
    response = admin_client.post("/api/restore-csv", data=backup, content_type="text/csv")
    assert response.status_code == 200

    response = admin_client.post("/api/restore-csv", data="", content_type="text/csv")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No backup data provided"

def test_restore_json_envelope(admin_client, store, jan_25):
    backup = export_json_backup([jan_25])
    response = admin_client.post("/api/restore-data", json=backup)
    assert response.status_code == 200
    months, _ = store.fetch_inspections()
    assert months[0].id == "jan-25"
    assert months[0].total_faults == 28460

def test_restore_json_file_and_errors(admin_client, jan_25):
    body = json.dumps(export_json_backup([jan_25])).encode("utf-8")
    response = _upload(admin_client, "/api/restore-data", body, "backup.json")
    assert response.status_code == 200

    response = _upload(admin_client, "/api/restore-data", b"{broken", "backup.json")
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Invalid JSON backup")

    response = admin_client.post("/api/restore-data", json={"months": []})
    assert response.status_code == 400
    assert response.get_json()["success"] is False

def test_export_formats(app_instance, existing):
    client = app_instance.test_client()
    with client.session_transaction() as sess:
        sess["username"] = "USER"

    response = client.get("/api/export?format=csv")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "dpu_data_" in response.headers["Content-Disposition"]
    assert response.data.decode().startswith("DATE,BOOMS INSPECTED")

    response = client.get("/api/export?format=backup-csv")
    assert "_backup.csv" in response.headers["Content-Disposition"]
    assert "DETAILED STAGE DATA" in response.data.decode()

    response = client.get("/api/export?format=json")
    assert response.mimetype == "application/json"
    assert json.loads(response.data)["metadata"]["totalMonths"] == 1

    assert client.get("/api/export?format=xml").status_code == 400
