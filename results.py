"""
Results view: summary figures and statistics for one experiment.
"""

from datetime import datetime

import structlog

import db
from errors import NotFoundError, StoreUnavailableError
from models import METRIC_KEYS
from stats import (
    completion_breakdown,
    compute_time_of_day_stats,
    duration_series,
    round_percent,
)

logger = structlog.get_logger(__name__)


class ResultsCache:
    """
    Sorted record lists per experiment ID.
    Entries only go stale when a record is written, so there is no expiry;
    the record write path calls invalidate().
    """

    def __init__(self):
        self._entries = {}

    def get(self, experiment_id):
        return self._entries.get(experiment_id)

    def put(self, experiment_id, records):
        self._entries[experiment_id] = records

    def invalidate(self, experiment_id):
        self._entries.pop(experiment_id, None)

    def clear(self):
        self._entries.clear()

    def __contains__(self, experiment_id):
        return experiment_id in self._entries


def list_experiments(user_id):
    """All of a user's experiments, newest first."""
    return db.find_all_experiments(user_id)


def default_experiment_id(experiments, current_experiment=None):
    """The experiment the results view opens on: the active one, else the newest."""
    if current_experiment is not None:
        return current_experiment.id
    return experiments[0].id if experiments else None


def load_records(user_id, experiment_id, cache=None):
    """Records for an experiment sorted by date, served from cache when possible."""
    if cache is not None:
        cached = cache.get(experiment_id)
        if cached is not None:
            logger.debug("results_cache_hit", experiment_id=experiment_id)
            return cached

    found = db.find_records(user_id, experiment_id)
    found.sort(key=lambda r: r.recorded_date)
    if cache is not None:
        cache.put(experiment_id, found)
    return found


def summarize(experiment, found, now):
    """Headline figures for the results view."""
    record_count = len(found)
    return {
        "experiment_id": experiment.id,
        "strategy": experiment.strategy,
        "action": experiment.action,
        "start_date": experiment.start_at.date().isoformat(),
        "planned_end_date": experiment.planned_end.date().isoformat(),
        "end_at": experiment.end_at.isoformat(),
        "duration_days": experiment.duration_days,
        "record_count": record_count,
        "completion_rate": round_percent(record_count, experiment.duration_days),
        "status": experiment.status(now),
    }


def _placeholder(experiment_id):
    return {
        "available": False,
        "experiment_id": experiment_id,
        "summary": None,
        "stats": {},
        "calendar": {},
    }


def get_results(user_id, experiment_id, cache=None, now=None):
    """
    Summary, calendar and the five charts' statistics for an experiment.
    A store failure gives a placeholder instead of an error so the view
    still opens.
    """
    now = now or datetime.now()
    try:
        experiment = db.get_experiment(experiment_id)
        if experiment is None or experiment.user_id != user_id:
            raise NotFoundError("Experiment not found")
        found = load_records(user_id, experiment_id, cache)
    except StoreUnavailableError as e:
        logger.warning(
            "results_unavailable", experiment_id=experiment_id, error=str(e)
        )
        return _placeholder(experiment_id)

    stats = {
        "completion": completion_breakdown(found),
        "duration": duration_series(found),
    }
    for key in METRIC_KEYS:
        stats[key] = compute_time_of_day_stats(found, key)

    return {
        "available": True,
        "experiment_id": experiment_id,
        "summary": summarize(experiment, found, now),
        "stats": stats,
        "calendar": {
            r.recorded_date.date().isoformat(): r.carried_out for r in found
        },
    }
