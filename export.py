"""
CSV export of an experiment's daily records.
"""

import csv
import io

import db
from errors import NotFoundError

EXPORT_COLUMNS = [
    "Date",
    "Strategy",
    "Action",
    "CarriedOut",
    "StartedTime",
    "Duration",
    "Interrupted",
    "Reason",
    "Concentration",
    "Accomplishment",
    "Fatigue",
    "Memo",
]


def _yes_no(value):
    return "Yes" if value else "No"


def _blank(value):
    return "" if value is None else value


def export_rows(experiment, records):
    """One row per record, in date order, with the export columns."""
    rows = []
    for record in sorted(records, key=lambda r: r.recorded_date):
        r = record.to_dict()
        rows.append(
            [
                r["recorded_date"].date().isoformat(),
                experiment.strategy,
                experiment.action,
                _yes_no(r["carried_out"]),
                _blank(r.get("started_time")),
                _blank(r.get("duration_time")),
                _yes_no(r.get("interrupted")),
                _blank(r.get("interruption_reason")),
                _blank(r.get("concentration")),
                _blank(r.get("accomplishment")),
                _blank(r.get("fatigue")),
                r.get("memo") or "",
            ]
        )
    return rows


def rows_to_csv(rows):
    """Render rows as CSV text with a header line. Quotes are doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(rows)
    return buffer.getvalue()


def export_filename(today):
    return f"experiment_data_{today.isoformat()}.csv"


def export_experiment_csv(user_id, experiment_id):
    """Fetch an experiment's records fresh from the store and render them."""
    experiment = db.get_experiment(experiment_id)
    if experiment is None or experiment.user_id != user_id:
        raise NotFoundError("Experiment not found")
    found = db.find_records(user_id, experiment_id)
    return rows_to_csv(export_rows(experiment, found))
