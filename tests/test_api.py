"""
Integration tests for the upload HTTP endpoints.
"""
import json
import pathlib

from app.config import settings

FIXTURES = pathlib.Path(__file__).resolve().parent.parent / "fixtures"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _sse_events(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


class TestService:
    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestSpreadsheetUpload:
    def test_sync_upload(self, client, make_xlsx, sales_sheet):
        resp = client.post(
            "/api/upload?sync=true",
            files={"file": ("sales.xlsx", make_xlsx(sales_sheet), XLSX_MIME)},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["job"]["status"] == "completed"
        assert body["job"]["file_name"] == "sales.xlsx"
        assert [e["bill_no"] for e in body["ledger"]["created"]] == ["CS/1001"]

    def test_async_upload(self, client, orchestrator, make_xlsx, sales_sheet):
        resp = client.post(
            "/api/upload",
            files={"file": ("sales.xlsx", make_xlsx(sales_sheet), XLSX_MIME)},
        )
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]
        assert resp.json()["status"] in ("running", "completed")

        orchestrator.wait(job_id, timeout=10)
        status = client.get(f"/api/upload/status/{job_id}")
        assert status.status_code == 200
        assert status.json()["status"] == "completed"
        assert status.json()["progress_percent"] == 100.0
        assert status.json()["stats"]["bills_created"] == 1

    def test_legacy_xls_rejected(self, client, make_xlsx):
        resp = client.post(
            "/api/upload",
            files={"file": ("sales.xls", make_xlsx([["x"]]), "application/vnd.ms-excel")},
        )
        assert resp.status_code == 400
        assert client.get("/api/upload/history").json() == []

    def test_not_a_workbook(self, client):
        resp = client.post("/api/upload", files={"file": ("sales.xlsx", b"not a zip", XLSX_MIME)})
        assert resp.status_code == 400

    def test_oversize_upload_rejected(self, client, make_xlsx, sales_sheet, monkeypatch):
        monkeypatch.setattr(settings, "MAX_UPLOAD_BYTES", 1024)
        resp = client.post(
            "/api/upload",
            files={"file": ("sales.xlsx", make_xlsx(sales_sheet), XLSX_MIME)},
        )
        assert resp.status_code == 400
        # only one byte past the limit is ever read
        assert resp.json()["detail"].startswith("Payload of 1025 bytes")
        assert client.get("/api/upload/history").json() == []


class TestDailyBill:
    def test_sync_bill(self, client):
        text = (FIXTURES / "sample_receipt.txt").read_text()
        resp = client.post("/api/upload/daily/bill", json={"bill": text})
        assert resp.status_code == 200
        body = resp.json()
        assert body["job"]["source_kind"] == "text"
        assert body["job"]["stats"]["bills_created"] == 1

    def test_background_bill(self, client, orchestrator):
        text = (FIXTURES / "sample_multi.txt").read_text()
        resp = client.post("/api/upload/daily/bill?background=true", json={"bill": text})
        assert resp.status_code == 202
        job = orchestrator.wait(resp.json()["job_id"], timeout=10)
        assert job.stats["bills_created"] == 2

    def test_empty_bill(self, client):
        resp = client.post("/api/upload/daily/bill", json={"bill": ""})
        assert resp.status_code == 400


class TestJobs:
    def test_status_not_found(self, client):
        assert client.get("/api/upload/status/nonexistent").status_code == 404

    def test_history_newest_first(self, client):
        text = (FIXTURES / "sample_receipt.txt").read_text()
        first = client.post("/api/upload/daily/bill", json={"bill": text}).json()["job"]["job_id"]
        second = client.post("/api/upload/daily/bill", json={"bill": text}).json()["job"]["job_id"]
        history = client.get("/api/upload/history").json()
        assert [j["job_id"] for j in history] == [second, first]

    def test_logs_for_finished_job(self, client):
        text = (FIXTURES / "sample_receipt.txt").read_text()
        job_id = client.post("/api/upload/daily/bill", json={"bill": text}).json()["job"]["job_id"]
        resp = client.get(f"/api/upload/logs/{job_id}")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        (event,) = _sse_events(resp.text)
        assert event["progress"] == 100.0
        assert event["status"] == "completed"

    def test_logs_for_running_job(self, client, make_xlsx, sales_sheet):
        resp = client.post(
            "/api/upload",
            files={"file": ("sales.xlsx", make_xlsx(sales_sheet), XLSX_MIME)},
        )
        job_id = resp.json()["job_id"]
        events = _sse_events(client.get(f"/api/upload/logs/{job_id}").text)
        assert events[-1]["status"] == "completed"
        progress = [e["progress"] for e in events]
        assert progress == sorted(progress)

    def test_logs_not_found(self, client):
        assert client.get("/api/upload/logs/nonexistent").status_code == 404

    def test_delete_job(self, client):
        text = (FIXTURES / "sample_receipt.txt").read_text()
        job_id = client.post("/api/upload/daily/bill", json={"bill": text}).json()["job"]["job_id"]
        assert client.delete(f"/api/upload/history/{job_id}").status_code == 200
        assert client.get(f"/api/upload/status/{job_id}").status_code == 404
        assert client.delete(f"/api/upload/history/{job_id}").status_code == 404

    def test_delete_all(self, client):
        text = (FIXTURES / "sample_receipt.txt").read_text()
        client.post("/api/upload/daily/bill", json={"bill": text})
        client.post("/api/upload/daily/bill", json={"bill": text})
        assert client.delete("/api/upload/history").json() == {"deleted": 2}
        assert client.get("/api/upload/history").json() == []
