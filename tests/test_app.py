import io
import json
import zipfile

import pytest

import app as ecg_app


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(ecg_app, "SIM_REALTIME", False)
    ecg_app.app.config["TESTING"] = True
    with ecg_app.app.test_client() as client:
        client.post("/reset")
        yield client
        client.post("/reset")


def record_simulated(client, duration=10):
    resp = client.post("/session/start", json={"mode": "simulated", "duration": duration, "heart_rate": 72})
    assert resp.status_code == 201
    ecg_app.CURRENT["worker"].wait(10)
    return client.post("/session/stop")


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["state"] == "idle"
    assert body["samples"] == 0


def test_simulated_recording_reports(client):
    resp = record_simulated(client)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["summary"]["samples"] == 2500
    assert body["hrv"]["status"] == "ok"
    assert 60 <= body["hrv"]["avg_hr"] <= 85
    assert body["thresholds"]["sample_rate"] == 250

    data = client.get("/data").get_json()
    assert data["state"] == "reported"
    assert len(data["ecg"]) == ecg_app.LIVE_WINDOW
    assert data["bpm"] > 0


def test_report_downloads(client):
    record_simulated(client, duration=8)

    report = client.get("/report.json")
    assert report.status_code == 200
    assert report.get_json()["summary"]["samples"] == 2000

    pdf = client.get("/report.pdf")
    assert pdf.status_code == 200
    assert pdf.data.startswith(b"%PDF")

    bundle = client.get("/report")
    assert bundle.status_code == 200
    with zipfile.ZipFile(io.BytesIO(bundle.data)) as zf:
        names = set(zf.namelist())
        assert {"ecg_recording.csv", "rr_intervals.csv", "ecg_snapshot.png", "report.json", "report.pdf"} <= names
        payload = json.loads(zf.read("report.json"))
        assert payload["summary"]["samples"] == 2000

    snapshot = client.get("/snapshot")
    assert snapshot.status_code == 200
    assert snapshot.data.startswith(b"\x89PNG")


def test_invalid_config_is_rejected(client):
    resp = client.post("/session/start", json={"mode": "simulated", "config": {"sample_rate": 0}})
    assert resp.status_code == 400
    assert "sample_rate" in resp.get_json()["error"]

    resp = client.post("/session/start", json={"mode": "serial"})
    assert resp.status_code == 400


def test_stop_without_recording(client):
    resp = client.post("/session/stop")
    assert resp.status_code == 409


def test_reports_missing_before_analysis(client):
    assert client.get("/report").status_code == 404
    assert client.get("/report.pdf").status_code == 404
    assert client.get("/report.json").status_code == 404
    assert client.get("/snapshot").status_code == 404


def test_device_packets_flow_into_session(client):
    resp = client.post("/session/start", json={"mode": "device", "patient": {"name": "Test Patient"}})
    assert resp.status_code == 201

    assert client.post("/device/heart_rate", json={"data": "0048"}).status_code == 204
    assert client.post("/device/packet", json={"data": "0004" * 30}).status_code == 204
    assert client.post(
        "/device/packet", data=b"\x00\x04" * 10, content_type="application/octet-stream"
    ).status_code == 204
    assert client.post("/device/packet", json={"data": "zz"}).status_code == 400

    body = client.post("/session/stop").get_json()
    assert body["summary"]["samples"] == 40
    assert body["patient"] == {"name": "Test Patient"}
    assert ecg_app.CURRENT["session"].recording[0].sample.source_heart_rate == 72


def test_device_recording_ends_after_duration(client):
    resp = client.post("/session/start", json={"mode": "device", "duration": 1.0})
    assert resp.status_code == 201
    assert resp.get_json()["duration_sec"] == 1.0
    assert client.post("/device/packet", json={"data": "0004" * 30}).status_code == 204

    ecg_app.CURRENT["worker"].wait(5)
    assert client.get("/health").get_json()["state"] == "reported"
    assert client.get("/report.json").get_json()["summary"]["samples"] == 30


@pytest.mark.parametrize(
    "payload",
    [
        {"mode": "simulated", "duration": "ten"},
        {"mode": "simulated", "heart_rate": "fast"},
        {"mode": "device", "duration": -5},
    ],
)
def test_start_rejects_bad_numbers(client, payload):
    resp = client.post("/session/start", json=payload)
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False
    assert ecg_app.CURRENT["worker"] is None


def test_device_routes_need_device_recording(client):
    assert client.post("/device/packet", json={"data": "0004"}).status_code == 409
    assert client.post("/device/heart_rate", json={"data": "0048"}).status_code == 409


def test_second_start_conflicts(client):
    resp = client.post("/session/start", json={"mode": "device"})
    assert resp.status_code == 201
    resp = client.post("/session/start", json={"mode": "simulated"})
    assert resp.status_code == 409


def test_email_requires_valid_address(client):
    resp = client.post("/send_report_email", json={"email": "not-an-email"})
    assert resp.status_code == 400


def test_email_requires_mailgun(client, monkeypatch):
    monkeypatch.setattr(ecg_app, "MAILGUN_API_KEY", "")
    resp = client.post("/send_report_email", json={"email": "doc@example.com"})
    assert resp.status_code == 500


def test_email_sends_pdf(client, monkeypatch):
    monkeypatch.setattr(ecg_app, "MAILGUN_API_KEY", "key-test")
    monkeypatch.setattr(ecg_app, "MAILGUN_DOMAIN", "mg.example.com")
    sent = {}

    class FakeResponse:
        status_code = 200

    def fake_post(url, **kwargs):
        sent["url"] = url
        sent.update(kwargs)
        return FakeResponse()

    monkeypatch.setattr(ecg_app.requests, "post", fake_post)

    assert client.post("/send_report_email", json={"email": "doc@example.com"}).status_code == 404

    record_simulated(client, duration=6)
    resp = client.post("/send_report_email", json={"email": "doc@example.com", "message": "Please review."})
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True
    assert sent["url"] == "https://api.mailgun.net/v3/mg.example.com/messages"
    assert sent["data"]["to"] == "doc@example.com"
    assert sent["data"]["text"].startswith("Please review.")
    assert sent["files"][0][1][1].startswith(b"%PDF")
