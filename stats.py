"""
Statistics over daily records.

Everything here is a pure function of the records passed in: no store access,
no clock. Records may be DailyRecord objects or their flat dict form.
"""

import numpy as np

from models import TIME_SLOTS

LOW_SAMPLE_THRESHOLD = 3

# Duration minutes -> 1..5 ordinal score
DURATION_SCORES = {5: 1, 15: 2, 30: 3, 60: 4, 180: 5}

# Hour ranges (start inclusive, end exclusive) for each time-of-day bucket
SLOT_HOURS = [
    ("late_night", 0, 3),
    ("early_morning", 3, 6),
    ("morning", 6, 9),
    ("daytime", 9, 15),
    ("evening", 15, 18),
    ("night", 18, 24),
]


def _flat(record):
    return record if isinstance(record, dict) else record.to_dict()


def round_percent(numerator, denominator):
    """Whole-number percentage with halves rounded up. 0 when denominator is 0."""
    if not denominator:
        return 0
    return int(numerator / denominator * 100 + 0.5)


def bucket_for_hour(hour):
    """Map an hour of day (0-23) to its time-of-day bucket."""
    for slot, start, end in SLOT_HOURS:
        if start <= hour < end:
            return slot
    raise ValueError(f"Hour out of range: {hour}")


def bucket_for_time(hhmm):
    """Map an "HH:MM" reminder time to the default started-time bucket."""
    return bucket_for_hour(int(hhmm.split(":")[0]))


def duration_score(minutes):
    """Score a duration on the 1-5 scale, or None if it's not a known choice."""
    return DURATION_SCORES.get(minutes)


def summarize_values(values):
    """Mean, median and population standard deviation of a list of numbers."""
    if not values:
        return {
            "mean": None,
            "median": None,
            "sd": None,
            "count": 0,
            "low_sample": False,
        }
    arr = np.asarray(values, dtype=float)
    return {
        "mean": float(np.mean(arr)),
        "median": float(np.median(arr)),
        "sd": float(np.std(arr)),
        "count": len(values),
        "low_sample": len(values) < LOW_SAMPLE_THRESHOLD,
    }


def fit_trend(medians):
    """
    Least-squares line through (bucket index, median) for non-empty buckets,
    evaluated at every bucket index. Needs at least two points.
    """
    points = [(i, m) for i, m in enumerate(medians) if m is not None]
    if len(points) < 2:
        return [None] * len(medians)
    x = np.array([p[0] for p in points], dtype=float)
    y = np.array([p[1] for p in points], dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    return [float(slope * i + intercept) for i in range(len(medians))]


def compute_time_of_day_stats(records, metric_key):
    """
    Bucket carried-out records by started time and summarize one metric.

    A record counts only if it was carried out, has a known started_time,
    has `interrupted` set and has a value for `metric_key`.
    """
    buckets = [
        {"slot": slot, "count": 0, "interrupted_count": 0, "values": []}
        for slot in TIME_SLOTS
    ]

    for record in records:
        r = _flat(record)
        if not r.get("carried_out"):
            continue
        if r.get("interrupted") is None or r.get(metric_key) is None:
            continue
        if r.get("started_time") not in TIME_SLOTS:
            continue
        bucket = buckets[TIME_SLOTS.index(r["started_time"])]
        bucket["count"] += 1
        if r["interrupted"]:
            bucket["interrupted_count"] += 1
        bucket["values"].append(r[metric_key])

    interruption_rates = [
        b["interrupted_count"] / b["count"] * 100 if b["count"] > 0 else None
        for b in buckets
    ]

    for bucket in buckets:
        bucket.update(summarize_values(bucket["values"]))

    trend = fit_trend([b["median"] for b in buckets])

    return {
        "metric": metric_key,
        "labels": list(TIME_SLOTS),
        "buckets": buckets,
        "interruption_rates": interruption_rates,
        "trend": trend,
    }


def completion_breakdown(records):
    """Carried-out vs not-carried-out day counts and the carried-out share."""
    flat = [_flat(r) for r in records]
    carried_out = sum(1 for r in flat if r.get("carried_out"))
    not_carried_out = len(flat) - carried_out
    total = len(flat)
    return {
        "carried_out_days": carried_out,
        "not_carried_out_days": not_carried_out,
        "total_days": total,
        "rate": round_percent(carried_out, total),
    }


def duration_series(records):
    """Per-day duration scores for carried-out records, plus their average."""
    points = []
    for record in records:
        r = _flat(record)
        if not r.get("carried_out") or not r.get("duration_time"):
            continue
        recorded = r.get("recorded_date")
        points.append(
            {
                "date": recorded.date().isoformat()
                if hasattr(recorded, "date")
                else recorded,
                "minutes": r["duration_time"],
                "score": duration_score(r["duration_time"]),
            }
        )

    scores = [p["score"] for p in points if p["score"] is not None]
    average = round(sum(scores) / len(scores), 1) if scores else 0
    return {"points": points, "average_score": average}
