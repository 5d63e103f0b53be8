"""Tests for models.py: the record variant and experiment helpers."""

from datetime import datetime, timedelta

from models import (
    CarriedOut,
    DailyRecord,
    Experiment,
    Interrupted,
    NotCarriedOut,
    NotInterrupted,
    day_key,
)

DAY = datetime(2026, 3, 10)

CONDITIONAL_FIELDS = [
    "started_time",
    "duration_time",
    "interrupted",
    "interruption_reason",
    "concentration",
    "accomplishment",
    "fatigue",
]


def make_experiment(**overrides):
    values = {
        "id": 1,
        "user_id": "u",
        "strategy": "precommitment",
        "action": "Write 200 words",
        "duration_days": 10,
        "start_at": datetime(2026, 3, 1, 9, 0),
        "end_at": datetime(2026, 3, 11, 9, 0),
        "notification_time": "08:00",
        "created_at": datetime(2026, 3, 1, 9, 0),
    }
    values.update(overrides)
    return Experiment(**values)


class TestDailyRecordVariant:
    def test_not_carried_out_drops_conditional_fields(self, carried_out_input):
        data = dict(carried_out_input, carried_out=False)

        record = DailyRecord.from_dict(data, 1, "u", DAY)

        assert isinstance(record.outcome, NotCarriedOut)
        flat = record.to_dict()
        for key in CONDITIONAL_FIELDS:
            assert key not in flat
        assert flat["memo"] == "Went well"

    def test_carried_out_keeps_fields(self, carried_out_input):
        record = DailyRecord.from_dict(carried_out_input, 1, "u", DAY)

        assert isinstance(record.outcome, CarriedOut)
        assert record.outcome.interruption == Interrupted("Phone call")
        flat = record.to_dict()
        assert flat["interrupted"] is True
        assert flat["interruption_reason"] == "Phone call"
        assert flat["duration_time"] == 30

    def test_not_interrupted_drops_reason(self, carried_out_input):
        data = dict(carried_out_input, interrupted=False)

        record = DailyRecord.from_dict(data, 1, "u", DAY)

        assert record.outcome.interruption == NotInterrupted()
        flat = record.to_dict()
        assert flat["interrupted"] is False
        assert "interruption_reason" not in flat

    def test_to_json_uses_date_string(self, carried_out_input):
        record = DailyRecord.from_dict(carried_out_input, 1, "u", DAY)

        assert record.to_json()["recorded_date"] == "2026-03-10"


class TestExperiment:
    def test_active_until_end(self):
        exp = make_experiment()

        assert exp.is_active(datetime(2026, 3, 11, 8, 59))
        assert not exp.is_active(datetime(2026, 3, 11, 9, 0))

    def test_status(self):
        exp = make_experiment()

        assert exp.status(datetime(2026, 3, 5)) == "active"
        assert exp.status(datetime(2026, 3, 12)) == "finished"

    def test_custom_strategy_detected(self):
        assert make_experiment(strategy="Walk after lunch").is_custom_strategy
        assert not make_experiment().is_custom_strategy

    def test_planned_end(self):
        exp = make_experiment(end_at=datetime(2026, 3, 4))

        assert exp.planned_end == exp.start_at + timedelta(days=10)


def test_day_key_is_local_midnight():
    assert day_key(datetime(2026, 3, 10, 23, 59, 59, 999)) == datetime(2026, 3, 10)
