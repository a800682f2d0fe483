import io
import os
import csv
import json
import time
import zipfile
import logging
import threading
import dataclasses
import re
from collections import deque

from flask import Flask, jsonify, send_file, request
import requests

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.pagesizes import letter

from ecg_core import ECGConfig, ConfigurationError, InsufficientData
from ecg_session import AnalysisSession, SessionState, SessionStateError, StreamWorker
from ecg_sources import SimulatedSource, DeviceSource

logger = logging.getLogger(__name__)

SAMPLE_WINDOW = 5
LIVE_WINDOW = 1200
# the simulator emits a millivolt-scale waveform; lift it to the detector's floor
SIM_DETECTOR_GAIN = 40.0
SIMULATE = os.getenv("ECG_SIMULATE", "1") == "1"
SIM_REALTIME = os.getenv("ECG_SIM_REALTIME", "1") == "1"
CONTROL_LOCK = threading.Lock()

MAILGUN_API_KEY = os.getenv("MAILGUN_API_KEY", "")
MAILGUN_DOMAIN = os.getenv("MAILGUN_DOMAIN", "")
MAILGUN_FROM = os.getenv("MAILGUN_FROM", "")

app = Flask(__name__)


class LiveView:
    """Rolling buffers for the live monitor, fed as a session subscriber."""

    def __init__(self, maxlen: int = LIVE_WINDOW) -> None:
        self.lock = threading.Lock()
        self.raw = deque(maxlen=maxlen)
        self.filtered = deque(maxlen=maxlen)
        self.peaks = deque(maxlen=maxlen)
        self.bpm = 0
        self.bpm_history = deque(maxlen=300)

    def __call__(self, processed) -> None:
        with self.lock:
            self.raw.append(processed.sample.value)
            self.filtered.append(processed.conditioned)
            self.peaks.append(processed.is_r_peak)
            if processed.bpm is not None:
                self.bpm = processed.bpm
                self.bpm_history.append(processed.bpm)

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "raw": list(self.raw),
                "filtered": list(self.filtered),
                "r_peaks": [i for i, p in enumerate(self.peaks) if p],
                "bpm": self.bpm,
                "bpm_history": list(self.bpm_history),
            }


CURRENT = {
    "session": AnalysisSession(ECGConfig()),
    "worker": None,
    "device": None,
    "live": LiveView(),
    "mode": None,
    "patient": {},
}
CURRENT["session"].subscribe(CURRENT["live"])


# ================= HELPERS =================

def smooth_series(values: list[float], window: int) -> list[float]:
    if not values:
        return []
    smoothed = []
    running = 0.0
    for i, v in enumerate(values):
        running += v
        if i >= window:
            running -= values[i - window]
            smoothed.append(running / window)
        else:
            smoothed.append(running / (i + 1))
    return smoothed


def build_config(mode: str, overrides: dict) -> ECGConfig:
    config = ECGConfig()
    if mode == "simulated" and "ECG_DETECTOR_GAIN" not in os.environ:
        config = config.with_overrides(detector_gain=SIM_DETECTOR_GAIN)
    return config.with_overrides(**overrides)


def result_payload(result) -> dict:
    if result is None:
        return {"status": "unavailable"}
    payload = dataclasses.asdict(result)
    if isinstance(result, InsufficientData):
        payload["status"] = "insufficient_data"
    else:
        payload["status"] = "ok"
    return payload


def summary_payload(summary, config: ECGConfig, patient: dict | None = None) -> dict:
    clinical = result_payload(summary.clinical)
    clinical.pop("beats", None)
    return {
        "patient": patient or {},
        "summary": {
            "started_at": summary.started_at,
            "stopped_at": summary.stopped_at,
            "samples": summary.samples,
            "duration_sec": summary.duration_sec,
            "beats": summary.beats,
            "bpm_avg": summary.bpm_avg,
            "bpm_min": summary.bpm_min,
            "bpm_max": summary.bpm_max,
            "discarded_intervals": summary.discarded_intervals,
            "signal_quality": summary.signal_quality,
        },
        "hrv": result_payload(summary.hrv),
        "clinical": clinical,
        "rr_intervals": list(summary.rr_intervals),
        "thresholds": {
            "sample_rate": config.sample_rate,
            "refractory_ms": config.refractory_ms,
            "threshold_ratio": config.threshold_ratio,
            "threshold_floor": config.threshold_floor,
            "irregularity_ratio": config.irregularity_ratio,
            "qtc_medium_ms": config.qtc_medium_ms,
            "qtc_high_ms": config.qtc_high_ms,
            "st_medium_mv": config.st_medium_mv,
            "st_high_mv": config.st_high_mv,
        },
        "findings": [
            {
                "name": name,
                "explanation": explain_finding(name, config),
                "logic": finding_logic(name, config),
            }
            for name in summary.findings
        ],
    }


def explain_finding(name: str, cfg: ECGConfig) -> str:
    explanations = {
        "Bradycardia": (
            f"Average heart rate was below {cfg.brady_bpm} BPM, indicating an unusually slow rhythm."
        ),
        "Tachycardia": (
            f"Average heart rate exceeded {cfg.tachy_bpm} BPM, indicating a faster than normal rhythm."
        ),
        "Irregular Rhythm": (
            "Beat-to-beat RR intervals varied widely or jumped repeatedly, suggesting a possible atrial fibrillation."
        ),
        "Long QT (possible)": (
            f"Rate-corrected QT exceeded {cfg.qtc_medium_ms:.0f} ms, indicating prolonged repolarization."
        ),
        "ST Elevation (possible)": (
            f"The ST segment sat more than {cfg.st_medium_mv} mV above the isoelectric baseline."
        ),
        "ST Depression (possible)": (
            f"The ST segment sat more than {cfg.st_medium_mv} mV below the isoelectric baseline."
        ),
        "First-Degree AV Block (possible)": (
            f"PR interval exceeded {cfg.pr_max_ms:.0f} ms, suggesting delayed atrioventricular conduction."
        ),
        "Bundle Branch Block (possible)": (
            f"QRS duration exceeded {cfg.qrs_max_ms:.0f} ms, indicating widened ventricular depolarization."
        ),
    }
    return explanations.get(name, "No explanation available for this finding.")


def finding_logic(name: str, cfg: ECGConfig) -> str:
    logic = {
        "Bradycardia": f"Avg HR < {cfg.brady_bpm}",
        "Tachycardia": f"Avg HR > {cfg.tachy_bpm}",
        "Irregular Rhythm": f"SDNN > {cfg.irregular_sdnn_ms:.0f} ms or arrhythmia risk HIGH",
        "Long QT (possible)": f"QTc (Bazett) > {cfg.qtc_medium_ms:.0f} ms",
        "ST Elevation (possible)": f"ST deviation > +{cfg.st_medium_mv} mV",
        "ST Depression (possible)": f"ST deviation < -{cfg.st_medium_mv} mV",
        "First-Degree AV Block (possible)": f"PR > {cfg.pr_max_ms:.0f} ms",
        "Bundle Branch Block (possible)": f"QRS > {cfg.qrs_max_ms:.0f} ms",
    }
    return logic.get(name, "Heuristic detection rule.")


def _fmt(value, unit: str = "", digits: int = 0) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{digits}f}{unit}"


def plot_recording(session: AnalysisSession, seconds: float = 10.0, figsize=(6, 2.5)) -> io.BytesIO | None:
    with session.lock:
        recording = list(session.recording)
    if not recording:
        return None
    window = int(session.config.sample_rate * seconds)
    recording = recording[-window:]
    t0 = recording[0].sample.timestamp
    xs = [(p.sample.timestamp - t0) / 1000.0 for p in recording]
    ys = [p.sample.value for p in recording]
    peaks = [(x, y) for x, y, p in zip(xs, ys, recording) if p.is_r_peak]

    plt.figure(figsize=figsize)
    plt.plot(xs, ys, linewidth=0.8)
    if peaks:
        plt.scatter([p[0] for p in peaks], [p[1] for p in peaks], color="red", s=10, zorder=3)
    plt.title("ECG Snapshot")
    plt.xlabel("Seconds")
    plt.ylabel("mV")
    plt.tight_layout()
    buf = io.BytesIO()
    plt.savefig(buf, format="png")
    plt.close()
    buf.seek(0)
    return buf


def plot_bpm(bpm_history: list[int]) -> io.BytesIO | None:
    if not bpm_history:
        return None
    plt.figure(figsize=(6, 2))
    plt.plot(bpm_history)
    plt.title("BPM Over Time")
    plt.tight_layout()
    buf = io.BytesIO()
    plt.savefig(buf, format="png")
    plt.close()
    buf.seek(0)
    return buf


def build_report_pdf(session: AnalysisSession, patient: dict | None = None) -> bytes:
    summary = session.summary
    config = session.config
    with session.lock:
        bpm_history = list(session.tracker.bpm_history)
    payload = summary_payload(summary, config, patient)
    info = payload["summary"]
    hrv = summary.hrv
    clinical = summary.clinical

    pdf_buf = io.BytesIO()
    doc = SimpleDocTemplate(pdf_buf, pagesize=letter)
    styles = getSampleStyleSheet()
    elements = []

    elements.append(Paragraph("ECG Test Report", styles["Title"]))
    elements.append(Spacer(1, 10))
    elements.append(
        Paragraph(
            "Measurements are heuristic and for educational use only. "
            "This device is not certified and the report is not a clinical diagnosis.",
            styles["Italic"],
        )
    )
    elements.append(Spacer(1, 10))

    if patient:
        elements.append(Paragraph("Patient", styles["Heading2"]))
        details = ", ".join(f"{k.replace('_', ' ').title()}: {v}" for k, v in patient.items() if v)
        elements.append(Paragraph(details or "n/a", styles["Normal"]))
        elements.append(Spacer(1, 8))

    elements.append(Paragraph("Session Summary", styles["Heading2"]))
    elements.append(
        Paragraph(
            f"Duration: {info['duration_sec']}s. Samples: {info['samples']}. Beats: {info['beats']}. "
            f"Avg BPM: {info['bpm_avg'] or 'n/a'}, "
            f"Min BPM: {info['bpm_min'] or 'n/a'}, "
            f"Max BPM: {info['bpm_max'] or 'n/a'}. "
            f"Signal quality: {info['signal_quality']}%.",
            styles["Normal"],
        )
    )
    elements.append(Spacer(1, 8))

    elements.append(Paragraph("Heart Rate Variability", styles["Heading2"]))
    if isinstance(hrv, InsufficientData):
        elements.append(
            Paragraph(f"Not available: {hrv.reason} ({hrv.available}/{hrv.required}).", styles["Normal"])
        )
    else:
        elements.append(
            Paragraph(
                f"Average HR: {hrv.avg_hr} BPM. Mean RR: {hrv.mean_rr:.0f} ms. "
                f"SDNN: {hrv.sdnn:.0f} ms. RMSSD: {hrv.rmssd:.0f} ms. "
                f"Irregular beats: {hrv.irregular_beat_count}. Arrhythmia risk: {hrv.arrhythmia_risk}.",
                styles["Normal"],
            )
        )
    elements.append(Spacer(1, 8))

    elements.append(Paragraph("Clinical Intervals", styles["Heading2"]))
    if isinstance(clinical, InsufficientData):
        elements.append(
            Paragraph(
                f"Not available: {clinical.reason} ({clinical.available}/{clinical.required}).",
                styles["Normal"],
            )
        )
    else:
        elements.append(
            Paragraph(
                f"PR: {_fmt(clinical.pr_interval_ms, ' ms')}. "
                f"QRS: {_fmt(clinical.qrs_duration_ms, ' ms')}. "
                f"QT: {_fmt(clinical.qt_ms, ' ms')}. "
                f"QTc: {_fmt(clinical.qtc_ms, ' ms')} ({clinical.qtc_risk or 'n/a'}). "
                f"ST deviation: {_fmt(clinical.st_elevation_mv, ' mV', 3)} ({clinical.st_risk or 'n/a'}).",
                styles["Normal"],
            )
        )
    elements.append(Spacer(1, 8))

    ecg_buf = plot_recording(session)
    if ecg_buf is not None:
        elements.append(Paragraph("ECG Snapshot (most recent window)", styles["Heading2"]))
        elements.append(Image(ecg_buf, width=420, height=180))
        elements.append(Spacer(1, 8))

    bpm_buf = plot_bpm(bpm_history)
    if bpm_buf is not None:
        elements.append(Paragraph("Heart Rate Trend (BPM)", styles["Heading2"]))
        elements.append(Image(bpm_buf, width=420, height=150))
        elements.append(Spacer(1, 8))

    elements.append(Paragraph("Rhythm Findings", styles["Heading2"]))
    if not payload["findings"]:
        elements.append(Paragraph("No rhythm or interval flags detected.", styles["Normal"]))
    for finding in payload["findings"]:
        elements.append(Paragraph(finding["name"], styles["Normal"]))
        elements.append(
            Paragraph(
                f"Explanation: {finding['explanation']} How detected: {finding['logic']}.",
                styles["Italic"],
            )
        )
        elements.append(Spacer(1, 6))

    elements.append(Spacer(1, 8))
    elements.append(Paragraph("What To Do Next", styles["Heading2"]))
    elements.append(
        Paragraph(
            "If symptoms such as chest pain, shortness of breath, dizziness, or fainting are present, "
            "seek medical attention. For persistent or concerning trends, consider sharing this report "
            "with a healthcare professional. This report is not a medical diagnosis.",
            styles["Normal"],
        )
    )

    doc.build(elements)
    pdf_buf.seek(0)
    return pdf_buf.read()


def build_report_zip(session: AnalysisSession, patient: dict | None = None) -> bytes:
    with session.lock:
        recording = list(session.recording)
    summary = session.summary

    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, "w", zipfile.ZIP_DEFLATED) as zipf:
        ecg_csv = io.StringIO()
        writer = csv.writer(ecg_csv)
        writer.writerow(["timestamp", "value", "conditioned", "r_peak", "bpm"])
        for p in recording:
            writer.writerow([p.sample.timestamp, p.sample.value, p.conditioned, int(p.is_r_peak), p.bpm or ""])
        zipf.writestr("ecg_recording.csv", ecg_csv.getvalue())

        rr_csv = io.StringIO()
        writer = csv.writer(rr_csv)
        writer.writerow(["index", "rr_ms"])
        for i, rr in enumerate(summary.rr_intervals):
            writer.writerow([i, rr])
        zipf.writestr("rr_intervals.csv", rr_csv.getvalue())

        ecg_buf = plot_recording(session, seconds=30.0, figsize=(14, 3.2))
        if ecg_buf is not None:
            zipf.writestr("ecg_snapshot.png", ecg_buf.read())

        payload = summary_payload(summary, session.config, patient)
        zipf.writestr("report.json", json.dumps(payload, indent=2))
        zipf.writestr("report.pdf", build_report_pdf(session, patient))

    zip_buffer.seek(0)
    return zip_buffer.read()


def reported_session() -> AnalysisSession | None:
    session = CURRENT["session"]
    if session.state is not SessionState.REPORTED or session.summary is None:
        return None
    return session


def stop_worker() -> None:
    worker = CURRENT["worker"]
    if worker is not None:
        worker.stop()
    CURRENT["worker"] = None
    CURRENT["device"] = None


# ================= ROUTES =================

@app.route("/health")
def health():
    session = CURRENT["session"]
    with session.lock:
        return jsonify({
            "ok": True,
            "simulate": SIMULATE,
            "mode": CURRENT["mode"],
            "state": session.state.value,
            "bpm": session.current_bpm,
            "samples": len(session.recording),
        })


@app.route("/data")
def data():
    session = CURRENT["session"]
    live = CURRENT["live"].snapshot()
    return jsonify({
        "state": session.state.value,
        "ecg": smooth_series(live["raw"], SAMPLE_WINDOW),
        "signal": {"filtered": live["filtered"], "r_peaks": live["r_peaks"]},
        "bpm": live["bpm"],
        "bpm_history": live["bpm_history"],
        "rr_intervals": session.rr_intervals,
    })


@app.route("/session/start", methods=["POST"])
def session_start():
    payload = request.get_json(silent=True) or {}
    mode = payload.get("mode") or ("simulated" if SIMULATE else "device")
    if mode not in ("simulated", "device"):
        return jsonify({"ok": False, "error": f"Unknown mode: {mode}"}), 400
    try:
        duration = float(payload["duration"]) if payload.get("duration") else None
        heart_rate = int(payload.get("heart_rate") or 72)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "duration and heart_rate must be numbers."}), 400
    if duration is not None and duration <= 0:
        return jsonify({"ok": False, "error": "duration must be positive."}), 400

    with CONTROL_LOCK:
        worker = CURRENT["worker"]
        if worker is not None and worker.running:
            return jsonify({"ok": False, "error": "A recording is already in progress."}), 409
        try:
            config = build_config(mode, payload.get("config") or {})
        except ConfigurationError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 400

        duration = duration or config.test_duration_sec
        if mode == "simulated":
            source = SimulatedSource(
                heart_rate=heart_rate,
                sample_rate=config.sample_rate,
                duration_sec=duration,
                realtime=SIM_REALTIME,
            )
            CURRENT["device"] = None
        else:
            source = DeviceSource(sample_rate=config.sample_rate, duration_sec=duration)
            CURRENT["device"] = source

        session = AnalysisSession(config)
        live = LiveView()
        session.subscribe(live)
        worker = StreamWorker(session, source)
        CURRENT.update(session=session, worker=worker, live=live, mode=mode, patient=payload.get("patient") or {})
        worker.start()

    logger.info("started %s recording for %.0fs", mode, duration)
    return jsonify({"ok": True, "mode": mode, "state": session.state.value, "duration_sec": duration}), 201


@app.route("/session/stop", methods=["POST"])
def session_stop():
    with CONTROL_LOCK:
        session = CURRENT["session"]
        if session.state is SessionState.IDLE:
            return jsonify({"ok": False, "error": "No recording in progress."}), 409
        worker = CURRENT["worker"]
        if worker is not None:
            worker.stop()
        if session.summary is None:
            return jsonify({"ok": False, "error": "Analysis did not complete."}), 500
        return jsonify({"ok": True, **summary_payload(session.summary, session.config, CURRENT["patient"])})


@app.route("/reset", methods=["POST"])
def reset():
    with CONTROL_LOCK:
        stop_worker()
        try:
            CURRENT["session"].reset()
        except SessionStateError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 409
        CURRENT["live"] = LiveView()
        CURRENT["session"].subscribe(CURRENT["live"])
        CURRENT["mode"] = None
        CURRENT["patient"] = {}
    return ("", 204)


@app.route("/device/packet", methods=["POST"])
def device_packet():
    device = CURRENT["device"]
    if device is None:
        return jsonify({"ok": False, "error": "No device recording in progress."}), 409
    packet = _read_packet()
    if packet is None:
        return jsonify({"ok": False, "error": "Invalid packet."}), 400
    device.handle_notification(None, packet)
    return ("", 204)


@app.route("/device/heart_rate", methods=["POST"])
def device_heart_rate():
    device = CURRENT["device"]
    if device is None:
        return jsonify({"ok": False, "error": "No device recording in progress."}), 409
    packet = _read_packet()
    if packet is None:
        return jsonify({"ok": False, "error": "Invalid packet."}), 400
    device.handle_heart_rate(None, packet)
    return ("", 204)


def _read_packet() -> bytes | None:
    if request.mimetype == "application/octet-stream":
        return request.get_data()
    payload = request.get_json(silent=True) or {}
    try:
        return bytes.fromhex(payload.get("data", ""))
    except (TypeError, ValueError):
        return None


@app.route("/snapshot")
def snapshot():
    buf = plot_recording(CURRENT["session"], seconds=30.0, figsize=(14, 3.2))
    if buf is None:
        return ("No data", 404)
    return send_file(buf, download_name="ecg_snapshot_30s.png", as_attachment=True)


@app.route("/report")
def report():
    session = reported_session()
    if session is None:
        return ("No report available", 404)
    payload = build_report_zip(session, CURRENT["patient"])
    return send_file(io.BytesIO(payload), download_name="ecg_report_bundle.zip", as_attachment=True)


@app.route("/report.pdf")
def report_pdf():
    session = reported_session()
    if session is None:
        return ("No report available", 404)
    pdf = build_report_pdf(session, CURRENT["patient"])
    return send_file(io.BytesIO(pdf), mimetype="application/pdf", download_name="ecg_report.pdf", as_attachment=True)


@app.route("/report.json")
def report_json():
    session = reported_session()
    if session is None:
        return jsonify({"ok": False, "error": "No report available"}), 404
    return jsonify(summary_payload(session.summary, session.config, CURRENT["patient"]))


@app.route("/send_report_email", methods=["POST"])
def send_report_email():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip()
    if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email):
        return jsonify({"ok": False, "error": "Invalid email address."}), 400

    api_key = MAILGUN_API_KEY
    domain = MAILGUN_DOMAIN
    from_addr = MAILGUN_FROM or (f"ECG Monitor <postmaster@{domain}>" if domain else None)
    if not api_key or not domain:
        return jsonify({"ok": False, "error": "Mailgun is not configured."}), 500

    session = reported_session()
    if session is None:
        return jsonify({"ok": False, "error": "No report available."}), 404

    report_bytes = build_report_pdf(session, CURRENT["patient"])
    message = (payload.get("message") or "").strip()
    text = "Attached is the latest ECG report PDF."
    if message:
        text = f"{message}\n\n{text}"

    try:
        resp = requests.post(
            f"https://api.mailgun.net/v3/{domain}/messages",
            auth=("api", api_key),
            files=[("attachment", ("ecg_report.pdf", report_bytes, "application/pdf"))],
            data={
                "from": from_addr,
                "to": email,
                "subject": "ECG Report (PDF)",
                "text": text,
            },
            timeout=10,
        )
    except requests.RequestException as exc:
        logger.warning("report email failed: %s", exc)
        return jsonify({"ok": False, "error": "Failed to send email."}), 502

    if resp.status_code >= 400:
        logger.warning("mailgun rejected report email: HTTP %d", resp.status_code)
        return jsonify({"ok": False, "error": "Failed to send email."}), 502

    return jsonify({"ok": True, "sent_at": int(time.time())})


# ================= START =================

if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("ECG_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(host="0.0.0.0", port=int(os.getenv("ECG_PORT", "5000")))
