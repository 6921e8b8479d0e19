"""Report materialization: flag tables, composite scores and run summary.

Flag lists and buckets arrive already reduced and are written whole. The
composite table is one row per entity, so it is streamed from DuckDB in
ordered batches and appended to its CSV.
"""

import json
import logging
import os
from dataclasses import asdict

import duckdb
import pandas as pd

from provider_anomaly import VERSION
from provider_anomaly.config import Thresholds
from provider_anomaly.scoring import (
    COMPOSITE_COLUMNS,
    composite_batches,
    compute_cross_signal_correlations,
    flag_column,
)
from provider_anomaly.signals import SIGNAL_LABELS, SIGNAL_NAMES

log = logging.getLogger("provider_anomaly.output")

FLOAT_FORMAT = "%.6f"

# Evidence columns per signal, in output order
FLAG_COLUMNS = {
    "cost_outlier": [
        "procedure_code", "paid_per_beneficiary", "cohort_mean",
        "cohort_stddev", "cohort_size", "flagged_codes",
    ],
    "billing_mill": ["servicing_count", "percentile_cutoff"],
    "excess_volume": ["procedure_code", "period", "flagged_rows"],
    "temporal_spike": [
        "period", "previous_period", "paid", "previous_paid", "flagged_periods",
    ],
    "procedure_concentration": ["procedure_code", "procedure_paid", "total_paid"],
}

METRIC_DESCRIPTIONS = {
    "cost_outlier": "largest z-score of paid per beneficiary within a procedure cohort",
    "billing_mill": "distinct servicing entities billed under this entity",
    "excess_volume": "largest transaction count on a single raw row",
    "temporal_spike": "largest month-over-month paid growth ratio",
    "procedure_concentration": "share of total paid on the top procedure code",
}

TOP_ENTITIES = 25


def flags_frame(signal_type: str, signals: list[dict]) -> pd.DataFrame:
    """Flatten a detector's flags into entity_id, metric, evidence columns."""
    columns = ["entity_id", "metric"] + FLAG_COLUMNS[signal_type]
    rows = [
        [s["entity_id"], s["metric"]] + [s["evidence"].get(c) for c in FLAG_COLUMNS[signal_type]]
        for s in signals
    ]
    return pd.DataFrame(rows, columns=columns)


def composite_frame(records: list[dict]) -> pd.DataFrame:
    return pd.DataFrame(records, columns=COMPOSITE_COLUMNS)


def buckets_frame(buckets: dict[int, dict]) -> pd.DataFrame:
    rows = [
        [score, b["provider_count"], b["total_paid"]]
        for score, b in sorted(buckets.items())
    ]
    return pd.DataFrame(rows, columns=["score", "provider_count", "total_paid"])


def generate_summary(
    signal_results: dict[str, list[dict]],
    buckets: dict[int, dict],
    top: list[dict],
    thresholds: Thresholds,
    input_path: str,
    rows_scanned: int,
) -> dict:
    """Run-level summary. No timestamps, so identical runs match byte for byte.

    ``top`` is the head of the composite ordering (see scoring.top_providers).
    """
    scanned = sum(b["provider_count"] for b in buckets.values())

    return {
        "tool_version": VERSION,
        "input": input_path,
        "thresholds": asdict(thresholds),
        "rows_scanned": rows_scanned,
        "total_providers_scanned": scanned,
        "total_providers_flagged": scanned - buckets[0]["provider_count"],
        "signals": [
            {
                "signal": name,
                "label": SIGNAL_LABELS[name],
                "metric": METRIC_DESCRIPTIONS[name],
                "count": len(signal_results.get(name, [])),
            }
            for name in SIGNAL_NAMES
        ],
        "score_buckets": [
            {"score": score, "provider_count": b["provider_count"], "total_paid": str(b["total_paid"])}
            for score, b in sorted(buckets.items())
        ],
        "cross_signal_analysis": compute_cross_signal_correlations(signal_results),
        "highest_risk_providers": [
            {
                "entity_id": r["entity_id"],
                "score": r["score"],
                "total_paid": str(r["total_paid"]),
                "signals": [n for n in SIGNAL_NAMES if r[flag_column(n)]],
            }
            for r in top
        ],
    }


def _write_csv(df: pd.DataFrame, path: str, append: bool = False) -> None:
    df.to_csv(path, index=False, float_format=FLOAT_FORMAT, lineterminator="\n",
              mode="a" if append else "w", header=not append)


def write_composite(con: duckdb.DuckDBPyConnection, path: str) -> int:
    """Stream composite_risk into ``path`` batch by batch; returns rows written."""
    written = 0
    for batch in composite_batches(con):
        _write_csv(composite_frame(batch), path, append=written > 0)
        written += len(batch)
    if not written:
        _write_csv(composite_frame([]), path)
    return written


def write_results(
    out_dir: str,
    con: duckdb.DuckDBPyConnection,
    signal_results: dict[str, list[dict]],
    buckets: dict[int, dict],
    summary: dict,
) -> list[str]:
    """Write every result table into ``out_dir``; returns the written paths.

    ``con`` must still hold the composite_risk table built by score_providers.
    """
    os.makedirs(out_dir, exist_ok=True)
    written = []

    for name in SIGNAL_NAMES:
        path = os.path.join(out_dir, f"flags_{name}.csv")
        _write_csv(flags_frame(name, signal_results.get(name, [])), path)
        written.append(path)

    path = os.path.join(out_dir, "composite_risk.csv")
    write_composite(con, path)
    written.append(path)

    path = os.path.join(out_dir, "score_buckets.csv")
    _write_csv(buckets_frame(buckets), path)
    written.append(path)

    path = os.path.join(out_dir, "summary.json")
    with open(path, "w", newline="\n") as f:
        json.dump(summary, f, indent=2, default=str)
        f.write("\n")
    written.append(path)

    log.info("Results written to: %s", out_dir)
    log.info("  Providers scanned: %s", f"{summary['total_providers_scanned']:,}")
    log.info("  Providers flagged: %s", f"{summary['total_providers_flagged']:,}")
    for entry in summary["signals"]:
        log.info("  %-25s %d", entry["signal"], entry["count"])
    for bucket in summary["score_buckets"]:
        log.info("  score %d: %s providers, $%s",
                 bucket["score"], f"{bucket['provider_count']:,}", bucket["total_paid"])
    return written
