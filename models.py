"""
Data models for the Habit Lab tracker.

- Experiment: a time-boxed behavioral trial owned by one user
- DailyRecord: one day's outcome for an experiment, stored as a tagged variant
  (NotCarriedOut | CarriedOut) so fields that don't apply simply don't exist
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

# Strategy choices offered by the settings form. "other" means free text.
STRATEGIES = [
    "environment_design",
    "lower_start_cost",
    "precommitment",
    "immediate_reward",
    "self_image",
]
STRATEGY_OTHER = "other"

# Time-of-day buckets in display order. Index matters for the trend fit.
TIME_SLOTS = [
    "late_night",
    "early_morning",
    "morning",
    "daytime",
    "evening",
    "night",
]

DURATION_CHOICES = [5, 15, 30, 60, 180]
METRIC_KEYS = ["concentration", "accomplishment", "fatigue"]

MAX_ACTION_LENGTH = 2000
MAX_MEMO_LENGTH = 2000
MAX_CUSTOM_STRATEGY_LENGTH = 50
MAX_REASON_LENGTH = 50
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 90


def day_key(moment):
    """Normalize an instant to local midnight of its calendar day."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class Experiment:
    """A user's experiment. Active while end_at is in the future."""

    id: int
    user_id: str
    strategy: str
    action: str
    duration_days: int
    start_at: datetime
    end_at: datetime
    notification_time: str
    created_at: datetime

    @property
    def is_custom_strategy(self):
        return self.strategy not in STRATEGIES

    @property
    def planned_end(self):
        return self.start_at + timedelta(days=self.duration_days)

    def is_active(self, now):
        return self.end_at > now

    def status(self, now):
        return "finished" if self.end_at < now else "active"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "strategy": self.strategy,
            "is_custom_strategy": self.is_custom_strategy,
            "action": self.action,
            "duration_days": self.duration_days,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
            "notification_time": self.notification_time,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class NotInterrupted:
    pass


@dataclass(frozen=True)
class Interrupted:
    reason: str = ""


@dataclass
class NotCarriedOut:
    memo: str = ""


@dataclass
class CarriedOut:
    started_time: str
    duration_time: int
    interruption: Union[NotInterrupted, Interrupted]
    concentration: int
    accomplishment: int
    fatigue: int
    memo: str = ""


@dataclass
class DailyRecord:
    """One logged day. `outcome` decides which fields the record carries."""

    experiment_id: int
    user_id: str
    recorded_date: datetime
    outcome: Union[NotCarriedOut, CarriedOut] = field(default_factory=NotCarriedOut)
    id: Optional[int] = None

    @property
    def carried_out(self):
        return isinstance(self.outcome, CarriedOut)

    @property
    def memo(self):
        return self.outcome.memo

    @classmethod
    def from_dict(cls, data, experiment_id=None, user_id=None, recorded_date=None):
        """
        Build a record from a flat mapping (form input or a store row).
        Conditional fields are read only when the toggles that own them are on;
        anything else in `data` is dropped.
        """
        memo = (data.get("memo") or "").strip()
        if data.get("carried_out"):
            if data.get("interrupted"):
                reason = (data.get("interruption_reason") or "").strip()
                interruption = Interrupted(reason)
            else:
                interruption = NotInterrupted()
            outcome = CarriedOut(
                started_time=data.get("started_time"),
                duration_time=_to_int(data.get("duration_time")),
                interruption=interruption,
                concentration=_to_int(data.get("concentration")),
                accomplishment=_to_int(data.get("accomplishment")),
                fatigue=_to_int(data.get("fatigue")),
                memo=memo,
            )
        else:
            outcome = NotCarriedOut(memo=memo)

        return cls(
            experiment_id=experiment_id
            if experiment_id is not None
            else data.get("experiment_id"),
            user_id=user_id if user_id is not None else data.get("user_id"),
            recorded_date=recorded_date
            if recorded_date is not None
            else data.get("recorded_date"),
            outcome=outcome,
            id=data.get("id"),
        )

    def to_dict(self):
        """Flat canonical shape. Fields the variant lacks are absent, not None."""
        data = {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "user_id": self.user_id,
            "recorded_date": self.recorded_date,
            "carried_out": self.carried_out,
            "memo": self.outcome.memo,
        }
        if self.carried_out:
            o = self.outcome
            data.update(
                {
                    "started_time": o.started_time,
                    "duration_time": o.duration_time,
                    "interrupted": isinstance(o.interruption, Interrupted),
                    "concentration": o.concentration,
                    "accomplishment": o.accomplishment,
                    "fatigue": o.fatigue,
                }
            )
            if isinstance(o.interruption, Interrupted):
                data["interruption_reason"] = o.interruption.reason
        return data

    def to_json(self):
        data = self.to_dict()
        data["recorded_date"] = self.recorded_date.date().isoformat()
        return data


def _to_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return value
