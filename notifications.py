"""
Daily reminder notifications.

A `send(token, message)` callable delivers one message to one device token and
raises DeliveryError on failure. WebhookSender is the production sender;
tests pass their own.
"""

import os
from datetime import datetime

import requests
import structlog

import db
from errors import DeliveryError, NotFoundError

logger = structlog.get_logger(__name__)

PUSH_URL = os.environ.get("HABITLAB_PUSH_URL", "")

NOTIFICATION_DEFAULTS = {
    "title": "Habit Lab",
    "body": "Time to log today's experiment!",
    "url": "/?view=record",
}

NOTIFICATION_TEST = {
    "title": "Habit Lab (test)",
    "body": "This is a test notification.",
    "url": "/?view=record",
}

# HTTP statuses that mean the token will never work again
PERMANENT_FAILURE_STATUSES = (404, 410)


class WebhookSender:
    """POST each message as JSON to a push gateway."""

    def __init__(self, url=None, timeout=10):
        self.url = url or PUSH_URL
        self.timeout = timeout

    def __call__(self, token, message):
        if not self.url:
            raise DeliveryError("no-push-url")
        try:
            response = requests.post(
                self.url,
                json={"token": token, "data": message},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DeliveryError(type(e).__name__) from e

        if response.status_code in PERMANENT_FAILURE_STATUSES:
            raise DeliveryError(f"http-{response.status_code}", permanent=True)
        if response.status_code >= 400:
            raise DeliveryError(f"http-{response.status_code}")
        return response.text


def register_device_token(user_id, token):
    """Store a device token so the user receives reminders."""
    token = (token or "").strip()
    if not token:
        raise ValueError("Token is required")
    db.add_device_token(user_id, token)
    logger.info("device_token_registered", user_id=user_id)


def send_to_tokens(send, tokens, notification, experiment_id=None):
    """
    Send one message to every token.
    Returns (results, invalid_tokens) where invalid tokens failed permanently.
    """
    message = dict(notification)
    if experiment_id is not None:
        message["experiment_id"] = str(experiment_id)

    results = []
    invalid_tokens = []
    for token in tokens:
        try:
            message_id = send(token, message)
        except DeliveryError as e:
            logger.error("notification_failed", code=e.code, permanent=e.permanent)
            if e.permanent:
                invalid_tokens.append(token)
            results.append({"success": False, "token": token, "error": e.code})
        else:
            logger.info("notification_sent", message_id=message_id)
            results.append({"success": True, "token": token, "message_id": message_id})
    return results, invalid_tokens


def send_scheduled_notifications(send, now=None):
    """
    Remind every user whose active experiment's reminder hour is this hour.
    Each user is reminded at most once per calendar day. Returns the number
    of users notified.
    """
    now = now or datetime.now()
    current_hour = f"{now.hour:02d}"
    today = now.date()
    notified = 0

    experiments = db.list_active_experiments(now)
    logger.info("notification_check", hour=current_hour, active=len(experiments))

    seen_users = set()
    for experiment in experiments:
        if not experiment.notification_time:
            continue
        if experiment.notification_time.split(":")[0] != current_hour:
            continue
        user_id = experiment.user_id
        if user_id in seen_users:
            continue
        seen_users.add(user_id)

        tokens = db.get_device_tokens(user_id)
        if not tokens:
            logger.warning("no_device_tokens", user_id=user_id)
            continue

        if db.get_notification_log(user_id, today):
            logger.info("already_notified_today", user_id=user_id)
            continue

        results, invalid_tokens = send_to_tokens(
            send, tokens, NOTIFICATION_DEFAULTS, experiment.id
        )
        if invalid_tokens:
            logger.info(
                "pruning_device_tokens", user_id=user_id, count=len(invalid_tokens)
            )
            db.remove_device_tokens(user_id, invalid_tokens)

        success_count = sum(1 for r in results if r["success"])
        db.create_notification_log(
            user_id,
            today,
            {
                "experiment_id": experiment.id,
                "sent_at": now,
                "success": success_count > 0,
                "device_count": len(tokens),
                "success_count": success_count,
            },
        )
        notified += 1

    logger.info("notification_check_done", notified=notified)
    return notified


def send_test_notification(send, user_id):
    """Send the test message to all of a user's devices."""
    tokens = db.get_device_tokens(user_id)
    if not tokens:
        raise NotFoundError("No device tokens found for user")

    results, _ = send_to_tokens(send, tokens, NOTIFICATION_TEST)
    success_count = sum(1 for r in results if r["success"])
    return {
        "success": success_count > 0,
        "device_count": len(tokens),
        "success_count": success_count,
        "results": results,
    }
