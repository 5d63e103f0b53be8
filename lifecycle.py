"""
Experiment lifecycle: which experiment is active for a user, and what the
settings and record forms should allow as a result.
"""

import math
import re
from datetime import datetime, timedelta

import structlog

import db
import records
from errors import (
    ConfirmationRequired,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from models import (
    MAX_ACTION_LENGTH,
    MAX_CUSTOM_STRATEGY_LENGTH,
    MAX_DURATION_DAYS,
    MIN_DURATION_DAYS,
    STRATEGIES,
    STRATEGY_OTHER,
)
from results import ResultsCache
from stats import bucket_for_time

logger = structlog.get_logger(__name__)

NO_ACTIVE_EXPERIMENT = "no_active_experiment"
ACTIVE_NO_RECORD = "active_no_record"
ACTIVE_RECORDED = "active_recorded"

NOTIFICATION_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class SessionContext:
    """
    Per sign-in state: the user, their current experiment and results cache.
    Created at sign-in, cleared at sign-out.
    """

    def __init__(self, user_id):
        self.user_id = user_id
        self.current_experiment = None
        self.state = None
        self.record_unlocked = False
        self.cache = ResultsCache()
        self._subscribers = []

    def subscribe(self, callback):
        """Call `callback(old_state, new_state)` on every state change."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set_state(self, new_state):
        old_state = self.state
        self.state = new_state
        if old_state != new_state:
            for callback in list(self._subscribers):
                callback(old_state, new_state)

    def begin_edit(self):
        """Unlock today's saved record for editing."""
        self.record_unlocked = True

    def lock_record(self):
        self.record_unlocked = False

    def clear(self):
        self.cache.clear()
        self._subscribers.clear()
        self.current_experiment = None
        self.state = None
        self.record_unlocked = False


def _text_field(form, key, errors):
    """Stripped text for `key`, "" when absent. Non-text values are a field error."""
    value = form.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        errors[key] = "Must be text"
        return None
    return value.strip()


def validate_settings(form):
    """
    Check the settings form and return the cleaned experiment fields.
    Raises ValidationError listing every bad field.
    """
    errors = {}

    strategy = _text_field(form, "strategy", errors)
    custom = _text_field(form, "strategy_custom", errors)
    if strategy == "":
        errors["strategy"] = "Required"
    elif strategy == STRATEGY_OTHER:
        if custom == "":
            errors["strategy_custom"] = "Required"
        elif custom is not None and len(custom) > MAX_CUSTOM_STRATEGY_LENGTH:
            errors["strategy_custom"] = (
                f"Must be {MAX_CUSTOM_STRATEGY_LENGTH} characters or fewer"
            )
        strategy = custom
    elif strategy is not None and strategy not in STRATEGIES:
        errors["strategy"] = "Unknown strategy"

    action = _text_field(form, "action", errors)
    if action == "":
        errors["action"] = "Required"
    elif action is not None and len(action) > MAX_ACTION_LENGTH:
        errors["action"] = f"Must be {MAX_ACTION_LENGTH} characters or fewer"

    duration_raw = form.get("duration_days")
    duration_days = None
    if duration_raw is None or str(duration_raw).strip() == "":
        errors["duration_days"] = "Required"
    elif isinstance(duration_raw, bool) or not isinstance(duration_raw, (int, str)):
        errors["duration_days"] = "Must be a whole number"
    else:
        try:
            duration_days = int(str(duration_raw).strip())
        except ValueError:
            errors["duration_days"] = "Must be a whole number"
        else:
            if not MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS:
                errors["duration_days"] = (
                    f"Must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS}"
                )

    notification_time = _text_field(form, "notification_time", errors)
    if notification_time == "":
        errors["notification_time"] = "Required"
    elif notification_time is not None and not NOTIFICATION_TIME_RE.match(
        notification_time
    ):
        errors["notification_time"] = "Use HH:MM"

    if errors:
        raise ValidationError(errors)

    return {
        "strategy": strategy,
        "action": action,
        "duration_days": duration_days,
        "notification_time": notification_time,
    }


def resolve_active_experiment(user_id, now=None):
    """
    The user's active experiment, or None.
    More than one active experiment is tolerated: the earliest created wins.
    """
    now = now or datetime.now()
    experiments = db.find_active_experiments(user_id, now)
    if not experiments:
        return None
    if len(experiments) > 1:
        logger.warning(
            "invariant_violation",
            reason="multiple active experiments",
            user_id=user_id,
            experiment_ids=[e.id for e in experiments],
            chosen=experiments[0].id,
        )
    return experiments[0]


def days_elapsed(experiment, now):
    """Whole days since the experiment started, counting a partial day as one."""
    seconds = abs((now - experiment.start_at).total_seconds())
    return math.ceil(seconds / 86400)


def refresh(session, now=None):
    """Re-resolve the session's experiment and today's record, updating state."""
    now = now or datetime.now()
    experiment = resolve_active_experiment(session.user_id, now)
    session.current_experiment = experiment

    if experiment is None:
        session.set_state(NO_ACTIVE_EXPERIMENT)
        return experiment, None

    record = records.load_today_record(session.user_id, experiment.id, now)
    session.set_state(ACTIVE_RECORDED if record else ACTIVE_NO_RECORD)
    return experiment, record


def _settings_values(experiment):
    if experiment.is_custom_strategy:
        strategy, custom = STRATEGY_OTHER, experiment.strategy
    else:
        strategy, custom = experiment.strategy, ""
    return {
        "strategy": strategy,
        "strategy_custom": custom,
        "action": experiment.action,
        "duration_days": experiment.duration_days,
        "notification_time": experiment.notification_time,
    }


def view_state(session, now=None):
    """
    Describe which surfaces are unlocked for the user right now.
    With an active experiment the settings form is read-only and the record
    form is writable; without one it's the other way round.
    """
    now = now or datetime.now()
    experiment, record = refresh(session, now)

    if experiment is None:
        return {
            "state": session.state,
            "experiment": None,
            "settings": {"editable": True, "can_end": False, "values": None},
            "record": {
                "enabled": False,
                "editable": False,
                "can_edit": False,
                "record": None,
                "date": now.date().isoformat(),
            },
        }

    locked = record is not None and not session.record_unlocked
    return {
        "state": session.state,
        "experiment": experiment.to_dict(),
        "settings": {
            "editable": False,
            "can_end": True,
            "values": _settings_values(experiment),
        },
        "record": {
            "enabled": True,
            "editable": not locked,
            "can_edit": locked,
            "record": record.to_json() if record else None,
            "date": now.date().isoformat(),
            "days_elapsed": days_elapsed(experiment, now),
            "default_started_time": bucket_for_time(experiment.notification_time),
        },
    }


def save_settings(session, form, confirmed=False, now=None):
    """Validate the settings form and start a new experiment."""
    now = now or datetime.now()
    fields = validate_settings(form)
    if not confirmed:
        raise ConfirmationRequired("Saving settings requires confirmation")

    exp_id = db.create_experiment_if_none_active(
        {
            "user_id": session.user_id,
            "strategy": fields["strategy"],
            "action": fields["action"],
            "duration_days": fields["duration_days"],
            "start_at": now,
            "end_at": now + timedelta(days=fields["duration_days"]),
            "notification_time": fields["notification_time"],
            "created_at": now,
        },
        now,
    )
    if exp_id is None:
        raise InvariantViolation("An experiment is already active")

    logger.info(
        "experiment_created",
        user_id=session.user_id,
        experiment_id=exp_id,
        duration_days=fields["duration_days"],
    )
    refresh(session, now)
    return db.get_experiment(exp_id)


def end_experiment(session, confirmed=False, now=None):
    """End the active experiment now. It can't be reactivated afterwards."""
    now = now or datetime.now()
    if not confirmed:
        raise ConfirmationRequired("Ending an experiment requires confirmation")

    experiment = resolve_active_experiment(session.user_id, now)
    if experiment is None:
        raise NotFoundError("No active experiment")

    db.end_experiment(experiment.id, now)
    logger.info(
        "experiment_ended", user_id=session.user_id, experiment_id=experiment.id
    )
    session.lock_record()
    refresh(session, now)
    return db.get_experiment(experiment.id)
