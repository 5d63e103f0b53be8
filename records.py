"""
Daily record rules: one record per experiment per calendar day.
"""

from datetime import datetime

import structlog

import db
from errors import ConfirmationRequired, NotFoundError, ValidationError
from models import (
    DURATION_CHOICES,
    MAX_MEMO_LENGTH,
    MAX_REASON_LENGTH,
    METRIC_KEYS,
    TIME_SLOTS,
    DailyRecord,
    day_key,
)

logger = structlog.get_logger(__name__)


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _coerce_int(value):
    if _is_int(value):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def validate_record_input(data):
    """
    Check a record form and return a cleaned copy.
    Raises ValidationError with per-field messages. Fields belonging to a
    toggle that is off are not checked (they will be dropped).
    """
    errors = {}
    cleaned = {}

    carried_out = data.get("carried_out")
    if not isinstance(carried_out, bool):
        errors["carried_out"] = "Must be true or false"
    cleaned["carried_out"] = bool(carried_out)

    memo = data.get("memo") or ""
    if not isinstance(memo, str):
        errors["memo"] = "Must be text"
    elif len(memo.strip()) > MAX_MEMO_LENGTH:
        errors["memo"] = f"Must be {MAX_MEMO_LENGTH} characters or fewer"
    else:
        cleaned["memo"] = memo.strip()

    if carried_out is True:
        if data.get("started_time") not in TIME_SLOTS:
            errors["started_time"] = "Choose a time of day"
        else:
            cleaned["started_time"] = data["started_time"]

        duration = _coerce_int(data.get("duration_time"))
        if duration not in DURATION_CHOICES:
            errors["duration_time"] = "Choose a duration"
        else:
            cleaned["duration_time"] = duration

        for key in METRIC_KEYS:
            value = _coerce_int(data.get(key))
            if value is None or not 1 <= value <= 5:
                errors[key] = "Must be a whole number from 1 to 5"
            else:
                cleaned[key] = value

        interrupted = data.get("interrupted")
        if not isinstance(interrupted, bool):
            errors["interrupted"] = "Must be true or false"
        else:
            cleaned["interrupted"] = interrupted
            if interrupted:
                reason = data.get("interruption_reason") or ""
                if not isinstance(reason, str):
                    errors["interruption_reason"] = "Must be text"
                elif len(reason.strip()) > MAX_REASON_LENGTH:
                    errors["interruption_reason"] = (
                        f"Must be {MAX_REASON_LENGTH} characters or fewer"
                    )
                else:
                    cleaned["interruption_reason"] = reason.strip()

    if errors:
        raise ValidationError(errors)
    return cleaned


def load_today_record(user_id, experiment_id, now=None):
    """Get today's record for an experiment, or None."""
    now = now or datetime.now()
    return db.find_record(user_id, experiment_id, day_key(now))


def save_today_record(
    user_id, experiment_id, data, confirmed=False, now=None, cache=None
):
    """
    Create or overwrite today's record for an active experiment.

    The existing record is looked up again right before writing, so a stale
    client (second tab, slow first save) updates the same row instead of
    adding a second one. Last write wins.
    """
    now = now or datetime.now()
    cleaned = validate_record_input(data)
    if not confirmed:
        raise ConfirmationRequired("Saving a record requires confirmation")

    experiment = db.get_experiment(experiment_id)
    if experiment is None or experiment.user_id != user_id:
        raise NotFoundError("Experiment not found")
    if not experiment.is_active(now):
        raise NotFoundError("Experiment has already ended")

    today = day_key(now)
    record = DailyRecord.from_dict(
        cleaned, experiment_id=experiment_id, user_id=user_id, recorded_date=today
    )

    existing = db.find_record(user_id, experiment_id, today)
    record_id = db.upsert_record(existing.id if existing else None, record)
    record.id = record_id

    if cache is not None:
        cache.invalidate(experiment_id)

    logger.info(
        "record_saved",
        user_id=user_id,
        experiment_id=experiment_id,
        record_id=record_id,
        recorded_date=today.date().isoformat(),
        updated=existing is not None,
        carried_out=record.carried_out,
    )
    return record
