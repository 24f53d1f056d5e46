from flask import Flask, request, jsonify, Response, has_request_context
from flask_cors import CORS
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime

from app_settings import load_app_settings
from logger_config import configure_logging, get_logger, setup_logger
from job_board import BoardRegistry, FILTER_MODES, today_iso
from job_status import PROFILE_ACTIVE, PROFILE_ROLES, PROFILE_STATUSES, ROLE_ADMIN
from status_reconciler import (
    APPLIED, ASSIGNMENT_FAILED, CONFLICT, NEEDS_CONFIRMATION, REFETCHED, StatusReconciler,
)
from distance_annotator import build_distance_annotator
from task_queue import BackgroundTaskQueue
from realtime_sync import ChangeFeed, RealtimeSyncAdapter
from ai_extractor import ExtractionError, build_job_extractor, spreadsheet_to_text
from job_importer import ImportSessionRegistry
from assignments import list_saved_jobs, sync_assignments, unassign_all_for_date
from dashboard_stats import calculate_employee_stats, load_employee_stats
from push_sender import PushConfigurationError, PushSender, register_subscription
from repositories.job_repo import BackendRequestError, NotFoundError
from repositories.repo_factory import build_job_repo, build_service_repo

logger = get_logger("server")

STATE_KEY = "fm_logistics"
SSE_WAIT_SECONDS = 15
DEFAULT_SHARE_HOURS = 24

OUTCOME_HTTP_STATUS = {
    APPLIED: 200,
    CONFLICT: 409,
    NEEDS_CONFIRMATION: 428,
    ASSIGNMENT_FAILED: 502,
    REFETCHED: 502,
}

_UNSET = object()


@dataclass
class RequestUser:
    user_id: str
    profile: dict
    repo: object
    token: str

    @property
    def is_admin(self):
        return self.profile.get("role") == ROLE_ADMIN


class ServerState:
    """Everything the routes share: repositories, per-user boards and workers."""

    def __init__(self, app_settings, repo, service_repo, annotator, extractor, push_sender):
        self.app_settings = app_settings
        self.repo = repo
        self.service_repo = service_repo
        self.annotator = annotator
        self.extractor = extractor
        self.push_sender = push_sender
        self.registry = BoardRegistry()
        self.reconciler = StatusReconciler()
        self.feed = ChangeFeed()
        self.realtime = RealtimeSyncAdapter(self.registry, self.feed)
        self.imports = ImportSessionRegistry()
        self.usage_lock = threading.Lock()
        self.tasks = BackgroundTaskQueue(self.run_distance_pass)

    @property
    def log_dir(self):
        return self.app_settings.log_dir

    def run_distance_pass(self, task_id, payload, emit):
        board = self.registry.get(payload["user_id"])
        if board is None:
            return {"success": False, "message": "No board loaded for this user."}

        cache = board.distance_cache
        jobs = board.snapshot()
        origin = tuple(payload["origin"])
        run_logger, log_path = setup_logger(task_id[:8], self.log_dir)
        run_logger.info(f"[DISTANCE] Pass for user={payload['user_id']} origin={origin} jobs={len(jobs)} force={payload['force']}")
        emit(task_id, "started", f"Calculating distances for {len(jobs)} job(s)", {"total": len(jobs)})

        def on_result(job_id, distance):
            if board.distance_cache is cache:
                board.apply_distances({job_id: distance})
            emit(task_id, "distance", f"{job_id}: {distance}", {"job_id": job_id, "distance": distance})

        try:
            results = self.annotator.annotate(
                jobs, origin, cache, force=payload["force"], on_result=on_result, run_logger=run_logger
            )
        finally:
            for handler in list(run_logger.handlers):
                handler.close()
                run_logger.removeHandler(handler)

        stale = board.distance_cache is not cache
        if not stale:
            board.apply_distances(results)
        return {
            "success": True,
            "message": f"Distances ready for {len(results)} job(s)",
            "distances": results,
            "stale": stale,
            "log_file": log_path,
        }


def _error(message, status_code, **extra):
    return jsonify({"success": False, "message": message, **extra}), status_code


def _sse(payload):
    return f"data: {json.dumps(payload)}\n\n"


def _bearer_token():
    auth = request.headers.get("Authorization", "").strip()
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    # EventSource cannot send headers.
    return request.args.get("access_token", "").strip()


def _json_body():
    return request.get_json(silent=True) or {}


def _parse_coordinate(value, name, low, high):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")
    if not low <= number <= high:
        raise ValueError(f"{name} must be between {low} and {high}")
    return number


def create_app(app_settings=None, repo=None, service_repo=_UNSET, annotator=None, extractor=None, push_sender=_UNSET):
    app_settings = app_settings or load_app_settings()
    repo = repo or build_job_repo(app_settings)
    if service_repo is _UNSET:
        service_repo = build_service_repo(app_settings, repo)
    if push_sender is _UNSET:
        push_sender = PushSender(service_repo, app_settings.vapid_private_key, app_settings.vapid_mailto)

    state = ServerState(
        app_settings=app_settings,
        repo=repo,
        service_repo=service_repo,
        annotator=annotator or build_distance_annotator(app_settings),
        extractor=extractor or build_job_extractor(app_settings),
        push_sender=push_sender,
    )

    app = Flask(__name__)
    CORS(app)
    app.extensions[STATE_KEY] = state

    # --- Auth helpers ---

    def _authenticate(admin=False, allow_pending=False):
        token = _bearer_token()
        if not token:
            return None, _error("Not authenticated.", 401)
        user = state.repo.get_user_for_token(token)
        if not user or not user.get("id"):
            return None, _error("Invalid or expired session.", 401)
        user_repo = state.repo.for_user(token)
        profile = user_repo.get_profile(user["id"]) or {}
        if not allow_pending and profile.get("status") != PROFILE_ACTIVE:
            return None, _error("Account is pending approval.", 403)
        ctx = RequestUser(user_id=user["id"], profile=profile, repo=user_repo, token=token)
        if admin and not ctx.is_admin:
            return None, _error("Insufficient permissions.", 403)
        return ctx, None

    def _usage_log_path():
        os.makedirs(state.log_dir, exist_ok=True)
        return os.path.join(state.log_dir, "usage_audit.jsonl")

    def _log_usage(ctx, action, summary="", extra=None):
        row = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "user_id": ctx.user_id if ctx else "anonymous",
            "role": ctx.profile.get("role", "") if ctx else "anonymous",
            "action": str(action or "").strip(),
            "summary": str(summary or "").strip(),
            "endpoint": request.path if has_request_context() else "",
            "method": request.method if has_request_context() else "",
            "remote_addr": request.remote_addr if has_request_context() else "",
            "extra": extra or {},
        }
        try:
            with state.usage_lock, open(_usage_log_path(), "a", encoding="utf-8") as fh:
                fh.write(json.dumps(row) + "\n")
        except OSError as exc:
            logger.warning(f"[AUDIT] Could not write usage log: {exc}")

    def _board_for(ctx):
        board = state.registry.get_or_create(ctx.user_id, ctx.repo)
        if not board.jobs:
            board.refresh()
        return board

    def _start_distance_pass(board, force):
        payload = {
            "user_id": board.user_id,
            "origin": (board.location["lat"], board.location["lng"]),
            "force": force,
        }
        task_id = state.tasks.submit(payload, owner=board.user_id)
        logger.info(f"[DISTANCE] Queued pass {task_id} for user={board.user_id} force={force}")
        return task_id

    # --- Error mapping ---

    @app.errorhandler(ValueError)
    def handle_validation_error(exc):
        return _error(str(exc), 400)

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc):
        return _error(str(exc), 404)

    @app.errorhandler(BackendRequestError)
    def handle_backend_error(exc):
        logger.error(f"[BACKEND] {exc}")
        return _error(str(exc), 502)

    @app.errorhandler(ExtractionError)
    def handle_extraction_error(exc):
        logger.error(f"[EXTRACT] {exc}")
        return _error(str(exc), 502)

    @app.errorhandler(PushConfigurationError)
    def handle_push_configuration_error(exc):
        return _error(str(exc), 500)

    @app.errorhandler(405)
    def handle_method_not_allowed(_exc):
        return _error("Method Not Allowed", 405)

    # --- Routes ---

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({
            "success": True,
            "status": "ok",
            "repo_backend": type(state.repo).__name__,
            "boards": len(state.registry.all()),
        })

    @app.route('/api/jobs/active', methods=['GET'])
    def active_jobs():
        ctx, err = _authenticate()
        if err:
            return err
        mode = request.args.get('mode', '').strip().lower() or None
        if mode and mode not in FILTER_MODES:
            raise ValueError(f"mode must be one of {list(FILTER_MODES)}")
        date_filter = request.args.get('date')
        if date_filter is not None:
            date_filter = date_filter.strip()

        board = state.registry.get_or_create(ctx.user_id, ctx.repo)
        board.set_filters(filter_mode=mode, date_filter=date_filter)
        jobs = board.refresh()

        task_id = None
        cache = board.distance_cache
        if board.location and not cache.in_progress and any(j["id"] not in cache for j in jobs):
            task_id = _start_distance_pass(board, force=False)

        return jsonify({
            "success": True,
            "jobs": board.snapshot(),
            "filter_mode": board.filter_mode,
            "date": board.date_filter,
            "distance_task_id": task_id,
            "distances_in_progress": bool(task_id) or cache.in_progress,
            "conflict": board.conflict.to_dict() if board.conflict else None,
        })

    @app.route('/api/jobs/<job_id>/status', methods=['POST'])
    def update_job_status(job_id):
        ctx, err = _authenticate()
        if err:
            return err
        data = _json_body()
        board = _board_for(ctx)
        result = state.reconciler.set_status(
            board, job_id, data.get('status'), confirm_unassigned=bool(data.get('confirm'))
        )
        if result.outcome == APPLIED:
            _log_usage(ctx, "update_status", f"{job_id} -> {result.status}")
        return jsonify({
            "success": result.ok,
            **result.to_dict(),
            "jobs": board.snapshot(),
        }), OUTCOME_HTTP_STATUS[result.outcome]

    @app.route('/api/jobs/conflict/resolve', methods=['POST'])
    def resolve_status_conflict():
        ctx, err = _authenticate()
        if err:
            return err
        board = _board_for(ctx)
        result = state.reconciler.resolve_conflict(board, _json_body().get('action'))
        return jsonify({
            "success": result.ok,
            **result.to_dict(),
            "jobs": board.snapshot(),
        }), OUTCOME_HTTP_STATUS[result.outcome]

    @app.route('/api/jobs/conflict', methods=['DELETE'])
    def cancel_status_conflict():
        ctx, err = _authenticate()
        if err:
            return err
        board = state.registry.get_or_create(ctx.user_id, ctx.repo)
        cancelled = state.reconciler.cancel_conflict(board)
        return jsonify({"success": True, "cancelled": cancelled})

    @app.route('/api/location', methods=['POST'])
    def submit_location():
        ctx, err = _authenticate()
        if err:
            return err
        data = _json_body()
        lat = _parse_coordinate(data.get('lat'), "lat", -90.0, 90.0)
        lng = _parse_coordinate(data.get('lng'), "lng", -180.0, 180.0)
        accuracy = data.get('accuracy')

        board = _board_for(ctx)
        with board.lock:
            board.location = {"lat": lat, "lng": lng, "accuracy": accuracy}
        task_id = _start_distance_pass(board, force=True)
        return jsonify({"success": True, "task_id": task_id, "location": board.location}), 202

    def _owned_task(ctx, task_id):
        task = state.tasks.get_task(task_id)
        if not task or task.get("owner") != ctx.user_id:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    @app.route('/api/location/tasks/<task_id>', methods=['GET'])
    def distance_task_status(task_id):
        ctx, err = _authenticate()
        if err:
            return err
        task = _owned_task(ctx, task_id)
        return jsonify({"success": True, "task": task, "events": state.tasks.get_events_since(task_id, 0)})

    @app.route('/api/location/tasks/<task_id>/stream', methods=['GET'])
    def distance_task_stream(task_id):
        """Stream distance pass progress using Server-Sent Events."""
        ctx, err = _authenticate()
        if err:
            return err
        _owned_task(ctx, task_id)
        last_seq = request.args.get('last_seq', 0, type=int)

        def generate():
            seq = last_seq
            while True:
                events = state.tasks.wait_for_events(task_id, seq, timeout=SSE_WAIT_SECONDS)
                if not events:
                    if not state.tasks.get_task(task_id):
                        yield _sse({"type": "error", "message": "Task expired"})
                        return
                    yield ": keepalive\n\n"
                    continue
                for event in events:
                    seq = event["seq"]
                    yield _sse(event)
                    if event["type"] in {"complete", "error"}:
                        return

        return Response(generate(), mimetype='text/event-stream')

    @app.route('/api/realtime/jobs', methods=['POST'])
    def ingest_job_change():
        expected = state.app_settings.webhook_secret
        if expected:
            provided = request.headers.get("X-Webhook-Secret", "").strip() or _bearer_token()
            if provided != expected:
                return _error("Unauthorized webhook secret.", 401)
        summary = state.realtime.handle(request.get_json(silent=True))
        return jsonify({"success": True, **summary})

    @app.route('/api/jobs/changes/stream', methods=['GET'])
    def job_changes_stream():
        _ctx, err = _authenticate()
        if err:
            return err
        last_seq = request.args.get('last_seq', state.feed.last_seq, type=int)

        def generate():
            seq = last_seq
            while True:
                events = state.feed.wait_for_events(seq, timeout=SSE_WAIT_SECONDS)
                if not events:
                    yield ": keepalive\n\n"
                    continue
                for event in events:
                    seq = event["seq"]
                    yield _sse(event)

        return Response(generate(), mimetype='text/event-stream')

    # --- Import ---

    @app.route('/api/import/extract', methods=['POST'])
    def import_extract():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        upload = request.files.get('file')
        if upload is not None and upload.filename:
            raw_text = spreadsheet_to_text(upload.read(), upload.filename)
            source_type = "spreadsheet"
        else:
            raw_text = str(_json_body().get('text', ''))
            source_type = "text"

        extracted = state.extractor.extract(raw_text)
        session_ = state.imports.get(ctx.user_id)
        drafts = session_.load_extracted(extracted)
        batch_id = None
        if state.app_settings.feature_flags.record_import_batches:
            batch_id = session_.record_batch(ctx.repo, source_type, raw_text, extracted)
        _log_usage(ctx, "import_extract", f"{len(drafts)} draft(s) from {source_type}")
        return jsonify({"success": True, "drafts": drafts, "batch_id": batch_id})

    @app.route('/api/import/drafts', methods=['GET'])
    def import_drafts():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        return jsonify({"success": True, "drafts": state.imports.get(ctx.user_id).list_drafts()})

    @app.route('/api/import/drafts/<temp_id>/approve', methods=['POST'])
    def import_approve(temp_id):
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        session_ = state.imports.get(ctx.user_id)
        job = session_.approve(temp_id, ctx.repo)
        _log_usage(ctx, "import_approve", f"Draft {temp_id} saved", {"job_id": job.get("id")})
        return jsonify({"success": True, "job": job, "drafts": session_.list_drafts()})

    @app.route('/api/import/drafts/<temp_id>/reject', methods=['POST'])
    def import_reject(temp_id):
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        session_ = state.imports.get(ctx.user_id)
        if not session_.reject(temp_id):
            raise NotFoundError(f"Draft {temp_id} not found")
        return jsonify({"success": True, "drafts": session_.list_drafts()})

    @app.route('/api/import/drafts/approve_all', methods=['POST'])
    def import_approve_all():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        result = state.imports.get(ctx.user_id).approve_all(ctx.repo)
        _log_usage(ctx, "import_approve_all", f"saved={len(result['saved'])} failed={len(result['failures'])}")
        return jsonify({"success": not result["failures"], **result})

    # --- Admin: jobs, assignments, dashboard ---

    @app.route('/api/jobs', methods=['GET'])
    def saved_jobs():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        return jsonify({"success": True, "jobs": list_saved_jobs(ctx.repo, request.args.get('date', '').strip())})

    @app.route('/api/jobs/<job_id>/assignments', methods=['PUT'])
    def put_assignments(job_id):
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        user_ids = _json_body().get('user_ids')
        if not isinstance(user_ids, list):
            raise ValueError("user_ids must be a list")
        result = sync_assignments(ctx.repo, job_id, user_ids, state.push_sender)
        _log_usage(ctx, "sync_assignments", f"job={job_id}", {"added": result["added"], "removed": result["removed"]})
        return jsonify({"success": True, **result})

    @app.route('/api/assignments', methods=['DELETE'])
    def delete_assignments_for_date():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        job_date = request.args.get('date', '').strip()
        cleared = unassign_all_for_date(ctx.repo, job_date)
        _log_usage(ctx, "unassign_all", f"date={job_date}", {"jobs": cleared})
        return jsonify({"success": True, "jobs_cleared": cleared})

    @app.route('/api/dashboard/stats', methods=['GET'])
    def dashboard_stats():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        job_date = request.args.get('date', today_iso()).strip()
        return jsonify({"success": True, "date": job_date, "stats": load_employee_stats(ctx.repo, job_date)})

    @app.route('/api/dashboard/share', methods=['POST'])
    def create_share():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        data = _json_body()
        name = str(data.get('name') or '').strip() or 'Untitled Share'
        try:
            hours = int(data.get('expiration_hours', DEFAULT_SHARE_HOURS))
        except (TypeError, ValueError):
            raise ValueError("expiration_hours must be a whole number")
        if hours <= 0:
            raise ValueError("expiration_hours must be positive")
        token = ctx.repo.create_dashboard_share(name, hours)
        _log_usage(ctx, "create_share", name, {"expiration_hours": hours})
        return jsonify({"success": True, "token": token, "share_path": f"/shared/{token}"})

    @app.route('/api/shared/<token>', methods=['GET'])
    def shared_dashboard(token):
        job_date = request.args.get('date', today_iso()).strip()
        try:
            jobs = state.repo.get_shared_dashboard_data(token, job_date or None)
        except BackendRequestError as exc:
            if exc.status_code and 400 <= exc.status_code < 500:
                return _error("Invalid or expired share link.", 404)
            raise
        return jsonify({"success": True, "date": job_date, "jobs": jobs, "stats": calculate_employee_stats(jobs)})

    # --- Push ---

    @app.route('/api/send-push', methods=['POST'])
    def send_push():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        data = _json_body()
        title = str(data.get('title') or '').strip()
        body = str(data.get('body') or '').strip()
        if not title or not body:
            return _error("Missing title or body", 400)
        if state.push_sender is None:
            raise PushConfigurationError("Server Configuration Error")
        target = data.get('target_user_id') or data.get('targetUserId')
        result = state.push_sender.send(title, body, data.get('url'), target_user_id=target)
        _log_usage(ctx, "send_push", title, {"sent": result["sent"], "total": result["total"]})
        return jsonify(result)

    @app.route('/api/push/subscriptions', methods=['POST'])
    def push_subscribe():
        ctx, err = _authenticate(allow_pending=True)
        if err:
            return err
        data = _json_body()
        row = register_subscription(
            ctx.repo, ctx.user_id, data.get('subscription'),
            user_agent=data.get('user_agent') or request.headers.get('User-Agent', ''),
        )
        return jsonify({"success": True, "subscription": row})

    @app.route('/api/push/public-key', methods=['GET'])
    def push_public_key():
        key = state.app_settings.vapid_public_key
        if not key:
            raise PushConfigurationError("Push Configuration Error")
        return jsonify({"success": True, "public_key": key})

    # --- Users ---

    @app.route('/api/users', methods=['GET'])
    def list_users():
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        status = request.args.get('status', '').strip() or None
        role = request.args.get('role', '').strip() or None
        return jsonify({"success": True, "users": ctx.repo.list_profiles(status=status, role=role)})

    @app.route('/api/users/<user_id>', methods=['PATCH'])
    def update_user(user_id):
        ctx, err = _authenticate(admin=True)
        if err:
            return err
        data = _json_body()
        updates = {}
        if 'role' in data:
            role = str(data['role'] or '').strip().lower()
            if role not in PROFILE_ROLES:
                raise ValueError(f"role must be one of {list(PROFILE_ROLES)}")
            updates['role'] = role
        if 'status' in data:
            status = str(data['status'] or '').strip().lower()
            if status not in PROFILE_STATUSES:
                raise ValueError(f"status must be one of {list(PROFILE_STATUSES)}")
            updates['status'] = status
        if not updates:
            raise ValueError("Nothing to update. Provide role and/or status.")
        if ctx.repo.get_profile(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        ctx.repo.update_profile(user_id, updates)
        _log_usage(ctx, "update_user", f"user={user_id}", updates)
        return jsonify({"success": True, "user": ctx.repo.get_profile(user_id)})

    @app.route('/api/profile', methods=['PATCH'])
    def update_own_profile():
        ctx, err = _authenticate(allow_pending=True)
        if err:
            return err
        full_name = str(_json_body().get('full_name') or '').strip()
        if not full_name:
            raise ValueError("full_name is required")
        ctx.repo.update_profile(ctx.user_id, {"full_name": full_name})
        return jsonify({"success": True, "profile": ctx.repo.get_profile(ctx.user_id)})

    return app


if __name__ == '__main__':
    settings_ = load_app_settings()
    _root_logger, log_path = configure_logging(settings_.log_dir, logging.INFO)
    server_port = int(os.getenv("FMLOGISTICS_PORT", "5000"))
    server_host = os.getenv("FMLOGISTICS_HOST", "127.0.0.1")

    print("\n" + "=" * 70)
    print("FM Logistics Backend Server")
    print("=" * 70)
    print(f"\n   http://{server_host}:{server_port}")
    print(f"   Log file: {log_path}")
    print("\n" + "=" * 70 + "\n")

    create_app(settings_).run(host=server_host, port=server_port, debug=False, threaded=True)
