#!/usr/bin/env python3
"""
Crime report web server - report intake, map/dashboard API and live updates
"""
import json
import logging
import queue
import signal
import sys
import threading
import time
from base64 import b64decode
from datetime import timedelta
from functools import wraps
from typing import Dict, List, Optional

from flask import Flask, Response, jsonify, request, send_file, stream_with_context
from flask_cors import CORS

from ai_extraction import LLMClient, SummaryWorker, extract_report_fields, generate_summary
from app_config import load_settings
from change_feed import ChangeFeed
from dashboard_stats import MapBounds, compute_dashboard_stats, plottable, with_coordinates, within_bounds
from errors import ReportInputError, StoreError, UpstreamServiceError
from field_mapping import supported_fields
from identity import resolve_identity, system_identity
from postcode_geocoder import PostcodeGeocoder, normalize_postcode
from realtime_sync import RealtimeSync
from report_pipeline import PhotoUpload, ReportPipeline
from report_store import MediaStorage, ReportStore
from transcription import transcribe_audio

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

settings = load_settings()

app = Flask(__name__)
CORS(app)  # The map/dashboard frontend is served from a different origin
API_TOKEN = settings.api_token
DASHBOARD_USER = settings.dashboard_user
DASHBOARD_PASS = settings.dashboard_pass
DASHBOARD_PIN = settings.dashboard_pin

AUTH_WINDOW_SECONDS = 300
AUTH_MAX_FAILURES = 8
AUTH_LOCKOUT_SECONDS = 600
auth_lock = threading.Lock()
auth_failures: Dict[str, List[float]] = {}
auth_locked_until: Dict[str, float] = {}

STREAM_KEEPALIVE_SECONDS = 15
START_TIME = time.time()


def require_dashboard_auth(handler):
    """Optional HTTP Basic Auth for the dashboard and read APIs."""

    @wraps(handler)
    def wrapper(*args, **kwargs):
        pin_mode = bool(DASHBOARD_PIN)
        userpass_mode = bool(DASHBOARD_USER and DASHBOARD_PASS)
        if not (pin_mode or userpass_mode):
            return handler(*args, **kwargs)

        client_ip = request.remote_addr or "unknown"
        now = time.time()

        with auth_lock:
            locked_until = auth_locked_until.get(client_ip, 0)
            if now < locked_until:
                retry_after = max(1, int(locked_until - now))
                return Response(
                    "Too Many Requests",
                    429,
                    {"Retry-After": str(retry_after)},
                )

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Basic "):
            try:
                decoded = b64decode(auth.split(" ", 1)[1]).decode("utf-8")
                username, password = decoded.split(":", 1)
            except ValueError:
                username, password = "", ""
            if (pin_mode and password == DASHBOARD_PIN) or (
                userpass_mode and username == DASHBOARD_USER and password == DASHBOARD_PASS
            ):
                with auth_lock:
                    auth_failures.pop(client_ip, None)
                    auth_locked_until.pop(client_ip, None)
                return handler(*args, **kwargs)

        # Track failures and lock out obvious brute-force attempts.
        with auth_lock:
            failures = auth_failures.get(client_ip, [])
            failures = [t for t in failures if now - t <= AUTH_WINDOW_SECONDS]
            failures.append(now)
            auth_failures[client_ip] = failures
            if len(failures) >= AUTH_MAX_FAILURES:
                auth_failures.pop(client_ip, None)
                auth_locked_until[client_ip] = now + AUTH_LOCKOUT_SECONDS

        return Response(
            "Unauthorized",
            401,
            {"WWW-Authenticate": 'Basic realm="CrimeReports"'},
        )
    return wrapper


def has_api_token() -> bool:
    if not API_TOKEN:
        return False
    auth_header = request.headers.get("Authorization", "")
    api_key_header = request.headers.get("X-API-Key", "")
    return auth_header == f"Bearer {API_TOKEN}" or api_key_header == API_TOKEN


def require_api_token(handler):
    """Bearer / X-API-Key check for partner endpoints (no-op when API_TOKEN is unset)."""

    @wraps(handler)
    def wrapper(*args, **kwargs):
        if API_TOKEN and not has_api_token():
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return handler(*args, **kwargs)
    return wrapper


def error_response(message: str, status: int, details=None):
    body = {"success": False, "error": message}
    if details:
        body["details"] = details
    return jsonify(body), status


@app.errorhandler(ReportInputError)
def handle_input_error(e: ReportInputError):
    return error_response(str(e), 400, e.details or None)


@app.errorhandler(UpstreamServiceError)
def handle_upstream_error(e: UpstreamServiceError):
    logger.error(f"Upstream service error: {e}")
    return error_response("Upstream service failed", 502, str(e))


@app.errorhandler(StoreError)
def handle_store_error(e: StoreError):
    logger.error(f"Store error: {e}")
    return error_response("Failed to save report", 500, str(e))


# Persistence, adapters and background workers
feed = ChangeFeed()
media = MediaStorage(settings.media_dir, settings.media_base_url)
store = ReportStore(settings.database_path, media, feed)
geocoder = PostcodeGeocoder(
    base_url=settings.postcode_api_url,
    timeout=settings.geocoder_timeout_seconds,
    user_agent=settings.geocoder_user_agent,
    max_entries=settings.geocode_cache_max_entries,
    ttl_seconds=settings.geocode_cache_ttl_seconds,
    place_search_url=settings.place_search_url,
)
llm_client = LLMClient(settings.openai_api_key, settings.openai_base_url, timeout=settings.ai_timeout_seconds)


def summarize_report(report: Dict) -> str:
    return generate_summary(llm_client, report, model=settings.summary_model)


summary_worker = SummaryWorker(store, summarize_report)
if settings.enable_summaries:
    summary_worker.start()

pipeline = ReportPipeline(
    store,
    geocoder,
    summary_worker=summary_worker if settings.enable_summaries else None,
    unresolved_policy=settings.unresolved_postcode_policy,
)
logger.info(f"Using SQLite database at: {settings.database_path}")
logger.info(f"Unresolved postcode policy: {settings.unresolved_postcode_policy}")


def request_identity():
    return resolve_identity(request.headers, settings.reporter_user_id, authenticated=has_api_token())


def uploaded_photos() -> List[PhotoUpload]:
    photos = []
    for f in request.files.getlist("photos"):
        if not f or not f.filename:
            continue
        photos.append(PhotoUpload(filename=f.filename, data=f.read(), content_type=f.mimetype or ""))
    return photos


def submission_form() -> Dict:
    """Report fields from either a JSON body or a multipart form."""
    if request.files or request.form:
        raw = request.form.get("report")
        if raw:
            try:
                data = json.loads(raw)
            except ValueError:
                raise ReportInputError("Invalid 'report' field: expected JSON")
        else:
            data = request.form.to_dict()
    else:
        data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        raise ReportInputError("No data provided")
    return data


def report_view(report: Dict, photos: Optional[List[Dict]] = None) -> Dict:
    view = {**report, "photos": photos if photos is not None else report.get("photos", [])}
    coords = geocoder.coordinates_for(report)
    view["coordinates"] = list(coords) if coords else None
    return view


@app.route('/')
def root():
    return jsonify({"message": "Community crime reporting API", "endpoints": "/api"})


@app.route('/media/<path:path>')
def media_file(path: str):
    try:
        target = store.media_file(path)
    except StoreError:
        target = None
    if target is None:
        return error_response("Not found", 404)
    return send_file(target)


def map_bounds_arg() -> Optional[MapBounds]:
    """south/north/west/east query params; all four or none."""
    names = ("south", "north", "west", "east")
    given = {name: request.args.get(name) for name in names if request.args.get(name) not in (None, "")}
    if not given:
        return None
    if len(given) != len(names):
        raise ReportInputError("Map bounds need south, north, west and east")
    try:
        bounds = MapBounds(**{name: float(value) for name, value in given.items()})
    except ValueError:
        raise ReportInputError("Map bounds must be numbers")
    if bounds.south > bounds.north or bounds.west > bounds.east:
        raise ReportInputError("Map bounds are inverted")
    return bounds


@app.route('/api/reports', methods=['GET'])
@require_dashboard_auth
def get_reports():
    """All reports newest first, with photos and map coordinates"""
    limit = request.args.get("limit")
    try:
        limit_n = int(limit) if limit else None
    except ValueError:
        return error_response("Invalid 'limit'", 400)
    if limit_n is not None and limit_n < 0:
        return error_response("Invalid 'limit'", 400)
    bounds = map_bounds_arg()
    only_plottable = request.args.get("plottable") in ("1", "true")

    reports = store.list_reports_with_photos()
    filtered = only_plottable or bounds is not None
    if limit_n is not None and not filtered:
        reports = reports[:limit_n]
    reports = with_coordinates(reports, geocoder)
    if bounds is not None:
        reports = within_bounds(reports, bounds)
    elif only_plottable:
        reports = plottable(reports)
    if limit_n is not None:
        reports = reports[:limit_n]
    return jsonify({"reports": reports, "count": len(reports)})


@app.route('/api/reports/<report_id>', methods=['GET'])
@require_dashboard_auth
def get_report(report_id: str):
    report = store.get_report(report_id)
    if not report:
        return error_response("Report not found", 404)
    return jsonify(report_view(report, store.list_photos(report_id)))


@app.route('/api/reports', methods=['POST'])
def create_report():
    """Submit a report from the typed form or from reviewed audio extraction"""
    data = submission_form()
    photos = uploaded_photos()
    identity = request_identity()

    mode = str(data.get("inputMode") or "text").lower()
    if mode == "audio":
        parsed = data.get("parsedData")
        if not isinstance(parsed, dict):
            raise ReportInputError("Please record and process your audio report first")
        result = pipeline.submit_extracted(parsed, identity, photos)
    else:
        result = pipeline.submit_form(data, identity, photos)

    logger.info(f"Report {result.report['id']} submitted via {mode} ({len(result.photos)} photo(s))")
    return jsonify(result.to_dict()), 201


@app.route('/api/reports/audio', methods=['POST'])
def create_audio_report():
    """One-shot audio report: transcribe, extract fields, submit"""
    audio = request.files.get("audio")
    transcript = transcribe_audio(
        audio.read() if audio else None,
        filename=audio.filename if audio else "recording.webm",
        content_type=(audio.mimetype if audio else "") or "audio/webm",
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.transcription_model,
        language=settings.transcription_language,
        timeout=settings.transcription_timeout_seconds,
    )
    extraction = extract_report_fields(llm_client, transcript["transcript"], model=settings.extraction_model)
    result = pipeline.submit_extracted(extraction.fields, request_identity(), uploaded_photos())
    body = result.to_dict()
    body["transcript"] = transcript["transcript"]
    body["extractedFields"] = extraction.fields
    return jsonify(body), 201


@app.route('/api/reports/<report_id>/photos', methods=['POST'])
@require_api_token
def add_report_photo(report_id: str):
    """Attach a photo to an existing report"""
    if not store.get_report(report_id):
        return error_response("Report not found", 404)
    upload = request.files.get("photo")
    if not upload or not upload.filename:
        raise ReportInputError("Photo file is required")
    if not (upload.mimetype or "").startswith("image/"):
        raise ReportInputError(f"{upload.filename} is not an image file")

    result = store.upload_photo(report_id, upload.read(), upload.filename)
    if result.warning:
        return jsonify({"success": True, "url": result.url, "photo": None, "warnings": [result.warning]}), 200
    return jsonify({"success": True, "url": result.url, "photo": result.photo, "warnings": []}), 201


@app.route('/api/transcribe-audio', methods=['POST'])
def transcribe():
    """Speech-to-text for a recorded report"""
    audio = request.files.get("audio")
    result = transcribe_audio(
        audio.read() if audio else None,
        filename=audio.filename if audio else "recording.webm",
        content_type=(audio.mimetype if audio else "") or "audio/webm",
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.transcription_model,
        language=settings.transcription_language,
        timeout=settings.transcription_timeout_seconds,
    )
    return jsonify({"success": True, **result})


@app.route('/api/transcribe-audio', methods=['GET'])
def transcribe_health():
    return jsonify({
        "status": "ok",
        "endpoint": "transcribe-audio",
        "model": settings.transcription_model,
        "openai_configured": llm_client.configured,
    })


@app.route('/api/parse-transcript', methods=['POST'])
def parse_transcript():
    """Extract structured report fields from a transcript"""
    data = request.get_json(silent=True) or {}
    result = extract_report_fields(llm_client, data.get("transcript"), model=settings.extraction_model)
    return jsonify(result.to_dict())


@app.route('/api/parse-transcript', methods=['GET'])
def parse_transcript_health():
    return jsonify({
        "status": "ok",
        "endpoint": "parse-transcript",
        "model": settings.extraction_model,
        "openai_configured": llm_client.configured,
    })


@app.route('/api/generate-summary', methods=['POST'])
def create_summary():
    """Generate a one-line summary for report fields (not persisted)"""
    data = request.get_json(silent=True) or {}
    summary = generate_summary(llm_client, data.get("report"), model=settings.summary_model)
    return jsonify({"success": True, "summary": summary})


@app.route('/api/crimestoppers', methods=['POST'])
@require_api_token
def crimestoppers_webhook():
    """Receive a partner form submission"""
    try:
        payload = request.get_json(silent=True)
        result = pipeline.submit_webhook(payload, system_identity(settings.system_user_id))
        logger.info(f"Successfully created report from crimestoppers: {result.report['id']}")
        return jsonify({
            "success": True,
            "reportId": result.report["id"],
            "validation": result.validation.summary() if result.validation else None,
        })
    except ReportInputError as e:
        logger.warning(f"Crimestoppers payload rejected: {e} {e.details}")
        return error_response(str(e), 400, e.details or None)
    except StoreError as e:
        logger.error(f"Database error: {e}")
        return error_response("Failed to save report", 500, str(e))
    except Exception as e:
        logger.error(f"Crimestoppers webhook error: {e}", exc_info=True)
        return error_response("Internal server error", 500)


@app.route('/api/crimestoppers', methods=['GET'])
def crimestoppers_health():
    return jsonify({
        "status": "ok",
        "endpoint": "crimestoppers",
        "supportedFields": supported_fields(),
    })


@app.route('/api/places')
def search_places():
    """Free-text place search for the report form"""
    results = geocoder.search_places(request.args.get("q", ""))
    return jsonify({"results": results, "count": len(results)})


@app.route('/api/postcodes/<postcode>')
def lookup_postcode(postcode: str):
    coords = geocoder.lookup(postcode)
    if coords is None:
        return jsonify({"postcode": normalize_postcode(postcode), "found": False, "coordinates": None}), 404
    return jsonify({"postcode": normalize_postcode(postcode), "found": True, "coordinates": list(coords)})


@app.route('/api/stats')
@require_dashboard_auth
def get_stats():
    """Dashboard statistics"""
    stats = compute_dashboard_stats(store.list_reports_with_photos())
    uptime = time.time() - START_TIME
    return jsonify({
        **stats,
        "uptime_seconds": uptime,
        "uptime_formatted": str(timedelta(seconds=int(uptime))),
        "realtime_subscribers": feed.subscriber_count(),
        "summary_worker": summary_worker.get_status(),
        "geocode_cache": geocoder.cache_info(),
    })


def sse_message(event: str, data: Dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@app.route('/api/stream')
@require_dashboard_auth
def stream_reports():
    """Server-sent events: new reports, photo updates and summary back-fills"""
    updates: "queue.Queue[str]" = queue.Queue(maxsize=200)

    def push(message: str) -> None:
        try:
            updates.put_nowait(message)
        except queue.Full:
            logger.warning("Stream client is not keeping up; dropping update")

    sync = RealtimeSync(
        feed,
        store,
        on_new_report=lambda report, photos: push(sse_message("new_report", report_view(report, photos))),
        on_photos_updated=lambda report_id, photos: push(
            sse_message("photos_updated", {"report_id": report_id, "photos": photos})
        ),
        on_report_updated=lambda report: push(sse_message("report_updated", report)),
        name=f"stream-{request.remote_addr or 'client'}",
    )
    if not sync.subscribe():
        return error_response("Realtime updates unavailable", 503, sync.last_error)

    def generate():
        try:
            yield sse_message("ready", {"status": sync.status})
            while True:
                try:
                    yield updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
        finally:
            sync.disconnect()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.route('/api/health')
def health():
    """Health check"""
    return jsonify({"status": "healthy", "timestamp": time.time()})


def signal_handler(sig, frame):
    """Handle shutdown signals"""
    logger.info("Shutting down web server...")
    summary_worker.stop(timeout=2)
    feed.close()
    try:
        store.close()
    except Exception as e:
        logger.warning(f"Error closing database: {e}")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = settings.web_host
    port = settings.web_port

    logger.info(f"Starting crime report web server on {host}:{port}")
    logger.info(f"API available at: http://{host}:{port}/api/reports")
    if API_TOKEN:
        logger.info("API token protection enabled for partner endpoints")

    app.run(host=host, port=port, debug=False, threaded=True)
