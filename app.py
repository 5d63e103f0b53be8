"""
Habit Lab - Flask Application
A small web API for running time-boxed habit experiments and reviewing them.
"""

import os
from datetime import datetime
from functools import wraps

import click
import structlog
from flask import Flask, Response, jsonify, request, session

import db
import export
import lifecycle
import notifications
import records
import results
from errors import HabitLabError, NotFoundError, StoreUnavailableError
from logging_config import setup_logging

setup_logging()
logger = structlog.get_logger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get(
    "HABITLAB_SECRET_KEY", "dev-secret-key-change-in-production"
)

# Initialize database on startup
with app.app_context():
    db.init_db()

# Signed-in sessions, keyed by user ID
SESSIONS = {}


def get_session_context():
    """The SessionContext for the signed-in user, creating it if needed."""
    user_id = session.get("user_id")
    if not user_id:
        return None
    ctx = SESSIONS.get(user_id)
    if ctx is None:
        ctx = SESSIONS[user_id] = lifecycle.SessionContext(user_id)
    return ctx


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        ctx = get_session_context()
        if ctx is None:
            return jsonify({"success": False, "error": "Not signed in"}), 401
        return view(ctx, *args, **kwargs)

    return wrapped


def json_body():
    """The request's JSON object, or {} for a missing or non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def is_confirmed(data):
    return data.get("confirmed") is True


# Session


@app.route("/api/session", methods=["POST"])
def api_sign_in():
    """Sign in with a user ID from the auth provider."""
    data = json_body()
    user_id = str(data.get("user_id") or "").strip()
    if not user_id:
        return jsonify({"success": False, "error": "user_id required"}), 400

    session["user_id"] = user_id
    ctx = SESSIONS[user_id] = lifecycle.SessionContext(user_id)
    logger.info("signed_in", user_id=user_id)
    return jsonify({"success": True, "view": lifecycle.view_state(ctx)})


@app.route("/api/session", methods=["DELETE"])
def api_sign_out():
    """Sign out and drop the session's cached state."""
    user_id = session.pop("user_id", None)
    ctx = SESSIONS.pop(user_id, None)
    if ctx is not None:
        ctx.clear()
    return jsonify({"success": True})


@app.route("/api/state")
@login_required
def api_state(ctx):
    """Which forms are unlocked, plus the active experiment and today's record."""
    return jsonify({"view": lifecycle.view_state(ctx)})


# Experiment settings


@app.route("/api/experiment", methods=["POST"])
@login_required
def api_create_experiment(ctx):
    """Start a new experiment from the settings form."""
    data = json_body()
    experiment = lifecycle.save_settings(ctx, data, confirmed=is_confirmed(data))
    return jsonify(
        {
            "success": True,
            "experiment": experiment.to_dict(),
            "view": lifecycle.view_state(ctx),
        }
    )


@app.route("/api/experiment/end", methods=["POST"])
@login_required
def api_end_experiment(ctx):
    """End the active experiment early."""
    data = json_body()
    experiment = lifecycle.end_experiment(ctx, confirmed=is_confirmed(data))
    return jsonify(
        {
            "success": True,
            "experiment": experiment.to_dict(),
            "view": lifecycle.view_state(ctx),
        }
    )


# Daily record


@app.route("/api/record/today")
@login_required
def api_today_record(ctx):
    """Get today's record for the active experiment."""
    experiment, record = lifecycle.refresh(ctx)
    if experiment is None:
        raise NotFoundError("No active experiment")
    return jsonify({"record": record.to_json() if record else None})


@app.route("/api/record/edit", methods=["POST"])
@login_required
def api_edit_record(ctx):
    """Unlock today's saved record for editing."""
    ctx.begin_edit()
    return jsonify({"success": True, "view": lifecycle.view_state(ctx)})


@app.route("/api/record", methods=["POST"])
@login_required
def api_save_record(ctx):
    """Save today's record for the active experiment."""
    data = json_body()
    experiment, _ = lifecycle.refresh(ctx)
    if experiment is None:
        raise NotFoundError("No active experiment")

    record = records.save_today_record(
        ctx.user_id,
        experiment.id,
        data,
        confirmed=is_confirmed(data),
        cache=ctx.cache,
    )
    ctx.lock_record()
    return jsonify(
        {
            "success": True,
            "record": record.to_json(),
            "view": lifecycle.view_state(ctx),
        }
    )


# Results


@app.route("/api/experiments")
@login_required
def api_list_experiments(ctx):
    """All of the user's experiments, newest first."""
    try:
        experiments = results.list_experiments(ctx.user_id)
        current = lifecycle.resolve_active_experiment(ctx.user_id)
    except StoreUnavailableError as e:
        logger.warning("experiments_unavailable", user_id=ctx.user_id, error=str(e))
        return jsonify(
            {"available": False, "experiments": [], "default_experiment_id": None}
        )
    return jsonify(
        {
            "available": True,
            "experiments": [e.to_dict() for e in experiments],
            "default_experiment_id": results.default_experiment_id(
                experiments, current
            ),
        }
    )


@app.route("/api/results/<int:experiment_id>")
@login_required
def api_results(ctx, experiment_id):
    """Summary and statistics for one experiment."""
    return jsonify(results.get_results(ctx.user_id, experiment_id, cache=ctx.cache))


@app.route("/api/results/<int:experiment_id>/export.csv")
@login_required
def api_export_csv(ctx, experiment_id):
    """Download an experiment's records as CSV."""
    csv_text = export.export_experiment_csv(ctx.user_id, experiment_id)
    filename = export.export_filename(datetime.now().date())
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Notifications


@app.route("/api/device-token", methods=["POST"])
@login_required
def api_register_token(ctx):
    """Register a push token for the signed-in user."""
    data = json_body()
    token = data.get("token")
    if not isinstance(token, str) or not token.strip():
        return jsonify({"success": False, "error": "Token required"}), 400
    notifications.register_device_token(ctx.user_id, token)
    return jsonify({"success": True})


@app.route("/api/notifications/test", methods=["POST"])
@login_required
def api_test_notification(ctx):
    """Send a test reminder to the signed-in user's devices."""
    result = notifications.send_test_notification(
        notifications.WebhookSender(), ctx.user_id
    )
    return jsonify(result)


# CLI


@app.cli.command("init-db")
def init_db_command():
    """Create the database tables."""
    db.init_db()
    click.echo(f"Initialized database at {db.get_db_path()}")


@app.cli.command("send-notifications")
@click.option("--url", default=None, help="Push gateway URL (default: HABITLAB_PUSH_URL).")
def send_notifications_command(url):
    """Send this hour's reminders. Run once an hour from a scheduler."""
    count = notifications.send_scheduled_notifications(
        notifications.WebhookSender(url)
    )
    click.echo(f"Notified {count} user(s)")


# Error handlers


@app.errorhandler(HabitLabError)
def handle_app_error(e):
    body = {"success": False, "error": e.message or type(e).__name__}
    errors = getattr(e, "errors", None)
    if errors:
        body["errors"] = errors
    if e.status_code >= 500:
        logger.error("request_failed", error=str(e), status=e.status_code)
    return jsonify(body), e.status_code


@app.errorhandler(404)
def not_found(e):
    return jsonify({"success": False, "error": "Not found"}), 404


@app.errorhandler(500)
def server_error(e):
    return jsonify({"success": False, "error": "Server error"}), 500


if __name__ == "__main__":
    app.run(debug=True, host="127.0.0.1", port=7123)
