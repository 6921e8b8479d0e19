"""The five anomaly signals, computed over the materialized summary tables.

Each detector returns a list of flags, at most one per billing entity:

    {"signal_type": ..., "entity_id": ..., "metric": float, "evidence": {...}}

Detectors read only immutable tables (or stream the raw relation), so
``run_all_signals`` can fan them out across threads, each with its own
DuckDB cursor, and join on all of them before scoring.

Threshold tests run on exact decimal sums. Ratios such as the z-score,
growth ratio and share are DOUBLE and only reported as the flag metric.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from fractions import Fraction

import duckdb

from provider_anomaly.aggregate import (
    PROCEDURE_COHORTS,
    PROVIDER_MONTH,
    PROVIDER_PROCEDURE,
    PROVIDER_TOTALS,
)
from provider_anomaly.config import Thresholds
from provider_anomaly.source import RelationSource

log = logging.getLogger("provider_anomaly.signals")

SIGNAL_NAMES = (
    "cost_outlier",
    "billing_mill",
    "excess_volume",
    "temporal_spike",
    "procedure_concentration",
)

SIGNAL_LABELS = {
    "cost_outlier": "Cost-per-Beneficiary Outlier",
    "billing_mill": "Billing Mill (servicing concentration)",
    "excess_volume": "Excess Transaction Volume",
    "temporal_spike": "Temporal Billing Spike",
    "procedure_concentration": "Procedure Dominance",
}

# Relative slack on the DOUBLE z-score prefilter; candidates are then
# decided exactly, so this only needs to exceed float rounding error.
CANDIDATE_MARGIN = 1e-9


def _exact(value) -> Decimal:
    """A threshold as the decimal it was written as (0.95, not its binary neighbour)."""
    return Decimal(repr(float(value)))


def _exceeds_zscore(count, ppb, sum_ppb, sum_sq_ppb, threshold) -> bool:
    """Exact test of (ppb - mean) / stddev > threshold against the cohort sums.

    Scaling by the cohort size removes every division:
    n*x - S1 > 0 and (n*x - S1)**2 > k**2 * (n*S2 - S1**2).
    A zero-variance cohort never passes.
    """
    x, s1, s2 = Fraction(ppb), Fraction(sum_ppb), Fraction(sum_sq_ppb)
    k = Fraction(_exact(threshold))
    spread = count * s2 - s1 * s1
    lead = count * x - s1
    return spread > 0 and lead > 0 and lead * lead > k * k * spread


def signal_cost_outlier(con: duckdb.DuckDBPyConnection, thresholds: Thresholds) -> list[dict]:
    """Signal 1: Cost-per-Beneficiary Outlier.

    z-score of each (entity, code) paid_per_beneficiary against the code's
    cohort. Only cohorts of at least ``cohort_min`` providers exist in
    procedure_cohorts; zero-variance cohorts are excluded rather than scored.
    An entity flagged on several codes is reported once, with its largest z.
    """
    zscore = float(thresholds.zscore)
    floor = zscore - CANDIDATE_MARGIN * max(1.0, abs(zscore))
    results = con.execute(f"""
        WITH scored AS (
            SELECT
                pp.billing_entity_id,
                pp.procedure_code,
                pp.paid_per_beneficiary,
                pc.provider_count,
                pc.sum_ppb,
                pc.sum_sq_ppb,
                pc.mean_ppb,
                pc.stddev_ppb,
                (CAST(pp.paid_per_beneficiary AS DOUBLE) - pc.mean_ppb) / pc.stddev_ppb AS z_score
            FROM {PROVIDER_PROCEDURE} pp
            JOIN {PROCEDURE_COHORTS} pc ON pp.procedure_code = pc.procedure_code
            WHERE pc.stddev_ppb > 0
        )
        SELECT *
        FROM scored
        WHERE z_score > ?
        ORDER BY billing_entity_id, procedure_code
    """, [floor]).fetchall()

    columns = ["entity_id", "procedure_code", "paid_per_beneficiary", "cohort_size",
               "sum_ppb", "sum_sq_ppb", "cohort_mean", "cohort_stddev", "z_score"]

    npi_data: dict[str, dict] = {}
    for row in results:
        d = dict(zip(columns, row))
        if not _exceeds_zscore(d["cohort_size"], d["paid_per_beneficiary"],
                               d["sum_ppb"], d["sum_sq_ppb"], zscore):
            continue
        entry = npi_data.get(d["entity_id"])
        worst = (-d["z_score"], d["procedure_code"])
        if entry is None:
            npi_data[d["entity_id"]] = {"worst": worst, "row": d, "flagged_codes": 1}
            continue
        entry["flagged_codes"] += 1
        if worst < entry["worst"]:
            entry["worst"] = worst
            entry["row"] = d

    signals = []
    for entity_id, data in npi_data.items():
        d = data["row"]
        signals.append({
            "signal_type": "cost_outlier",
            "entity_id": entity_id,
            "metric": float(d["z_score"]),
            "evidence": {
                "procedure_code": d["procedure_code"],
                "paid_per_beneficiary": float(d["paid_per_beneficiary"]),
                "cohort_mean": float(d["cohort_mean"]),
                "cohort_stddev": float(d["cohort_stddev"]),
                "cohort_size": int(d["cohort_size"]),
                "flagged_codes": data["flagged_codes"],
            },
        })
    signals.sort(key=lambda s: (-s["metric"], s["entity_id"]))
    return signals


def signal_billing_mill(con: duckdb.DuckDBPyConnection, thresholds: Thresholds) -> list[dict]:
    """Signal 2: Billing Mill.

    Entities whose count of distinct servicing ids is at or above the
    ``mill_percentile`` of that count across all entities. The distribution
    is heavily right-skewed (median 1), so a relative cutoff scales with the
    dataset.
    """
    percentile = float(thresholds.mill_percentile)
    results = con.execute(f"""
        WITH cutoff AS (
            SELECT QUANTILE_CONT(servicing_count, {percentile!r}) AS percentile_cutoff
            FROM {PROVIDER_TOTALS}
        )
        SELECT
            pt.billing_entity_id,
            pt.servicing_count,
            c.percentile_cutoff
        FROM {PROVIDER_TOTALS} pt
        CROSS JOIN cutoff c
        WHERE pt.servicing_count >= c.percentile_cutoff
        ORDER BY pt.servicing_count DESC, pt.billing_entity_id
    """).fetchall()

    signals = []
    for entity_id, servicing_count, cutoff in results:
        signals.append({
            "signal_type": "billing_mill",
            "entity_id": entity_id,
            "metric": float(servicing_count),
            "evidence": {
                "servicing_count": int(servicing_count),
                "percentile_cutoff": float(cutoff),
            },
        })
    return signals


def signal_excess_volume(
    con: duckdb.DuckDBPyConnection,
    source: RelationSource,
    thresholds: Thresholds,
) -> list[dict]:
    """Signal 3: Excess Transaction Volume.

    Raw rows whose transaction count exceeds an absolute ceiling. This is a
    structural impossibility check, so it streams the source directly with
    the predicate pushed into the parquet scan; only offending rows reach
    Python, and state is kept per flagged entity.
    """
    npi_data: dict[str, dict] = {}
    for entity_id, code, period, transactions in source.scan(
        ["billing_entity_id", "procedure_code", "period", "transaction_count"],
        predicate="transaction_count > ?",
        params=[int(thresholds.volume)],
        con=con,
    ):
        entry = npi_data.get(entity_id)
        worst = (-transactions, period, code)
        if entry is None:
            npi_data[entity_id] = {"worst": worst, "flagged_rows": 1}
            continue
        entry["flagged_rows"] += 1
        if worst < entry["worst"]:
            entry["worst"] = worst

    signals = []
    for entity_id, data in npi_data.items():
        neg_transactions, period, code = data["worst"]
        signals.append({
            "signal_type": "excess_volume",
            "entity_id": entity_id,
            "metric": float(-neg_transactions),
            "evidence": {
                "procedure_code": code,
                "period": period,
                "flagged_rows": data["flagged_rows"],
            },
        })
    signals.sort(key=lambda s: (-s["metric"], s["entity_id"]))
    return signals



def signal_temporal_spike(con: duckdb.DuckDBPyConnection, thresholds: Thresholds) -> list[dict]:
    """Signal 4: Temporal Billing Spike.

    Month-over-month growth against the entity's previous *observed* period
    (gaps are not filled). The predecessor's spend is floored at 1 so a
    jump from zero still yields a finite ratio; the absolute floor on the
    current month keeps tiny-to-tiny jumps out. An entity's first period has
    no predecessor and never flags.

    Both tests compare exact month sums: paid > ratio * max(previous, 1)
    and paid > floor.
    """
    results = con.execute(f"""
        WITH lagged AS (
            SELECT
                billing_entity_id,
                period,
                total_paid,
                LAG(period) OVER w AS previous_period,
                LAG(total_paid) OVER w AS previous_total_paid
            FROM {PROVIDER_MONTH}
            WINDOW w AS (PARTITION BY billing_entity_id ORDER BY period)
        ),
        scored AS (
            SELECT
                *,
                CAST(total_paid AS DOUBLE)
                    / GREATEST(CAST(previous_total_paid AS DOUBLE), 1.0) AS growth_ratio
            FROM lagged
            WHERE previous_period IS NOT NULL
              AND CAST(total_paid AS DECIMAL(38, 12))
                  > CAST(? AS DECIMAL(18, 6))
                    * CAST(GREATEST(previous_total_paid, 1) AS DECIMAL(20, 6))
              AND total_paid > CAST(? AS DECIMAL(38, 6))
        ),
        flagged AS (
            SELECT
                *,
                ROW_NUMBER() OVER (
                    PARTITION BY billing_entity_id
                    ORDER BY growth_ratio DESC, period
                ) AS rn,
                COUNT(*) OVER (PARTITION BY billing_entity_id) AS flagged_periods
            FROM scored
        )
        SELECT
            billing_entity_id,
            growth_ratio,
            period,
            previous_period,
            total_paid,
            previous_total_paid,
            flagged_periods
        FROM flagged
        WHERE rn = 1
        ORDER BY growth_ratio DESC, billing_entity_id
    """, [_exact(thresholds.spike_ratio), _exact(thresholds.spike_floor)]).fetchall()

    columns = ["entity_id", "growth_ratio", "period", "previous_period",
               "paid", "previous_paid", "flagged_periods"]

    signals = []
    for row in results:
        d = dict(zip(columns, row))
        signals.append({
            "signal_type": "temporal_spike",
            "entity_id": d["entity_id"],
            "metric": float(d["growth_ratio"]),
            "evidence": {
                "period": d["period"],
                "previous_period": d["previous_period"],
                "paid": float(d["paid"]),
                "previous_paid": float(d["previous_paid"]),
                "flagged_periods": int(d["flagged_periods"]),
            },
        })
    return signals


def signal_procedure_concentration(
    con: duckdb.DuckDBPyConnection, thresholds: Thresholds
) -> list[dict]:
    """Signal 5: Procedure Dominance.

    Among entities with total paid above ``concentration_min_total``, the
    share of spend on the single top procedure code. Ties on the top amount
    resolve to the lexicographically first code; the share is the same
    either way. The gate and the share test both compare exact sums.
    """
    results = con.execute(f"""
        WITH eligible AS (
            SELECT billing_entity_id, total_paid
            FROM {PROVIDER_TOTALS}
            WHERE total_paid > CAST(? AS DECIMAL(38, 6))
        ),
        ranked AS (
            SELECT
                pp.billing_entity_id,
                pp.procedure_code,
                pp.total_paid AS procedure_paid,
                e.total_paid,
                ROW_NUMBER() OVER (
                    PARTITION BY pp.billing_entity_id
                    ORDER BY pp.total_paid DESC, pp.procedure_code
                ) AS rn
            FROM {PROVIDER_PROCEDURE} pp
            JOIN eligible e ON pp.billing_entity_id = e.billing_entity_id
        )
        SELECT
            billing_entity_id,
            CAST(procedure_paid AS DOUBLE) / CAST(total_paid AS DOUBLE) AS share,
            procedure_code,
            procedure_paid,
            total_paid
        FROM ranked
        WHERE rn = 1
          AND CAST(procedure_paid AS DECIMAL(38, 12))
              > CAST(? AS DECIMAL(18, 6)) * CAST(total_paid AS DECIMAL(20, 6))
        ORDER BY share DESC, billing_entity_id
    """, [_exact(thresholds.concentration_min_total),
          _exact(thresholds.concentration_share)]).fetchall()

    signals = []
    for entity_id, share, code, procedure_paid, total_paid in results:
        signals.append({
            "signal_type": "procedure_concentration",
            "entity_id": entity_id,
            "metric": float(share),
            "evidence": {
                "procedure_code": code,
                "procedure_paid": float(procedure_paid),
                "total_paid": float(total_paid),
            },
        })
    return signals


def _timed(index: int, name: str, func, *args) -> list[dict]:
    label = SIGNAL_LABELS[name]
    log.info("[%d/%d] Signal: %s", index, len(SIGNAL_NAMES), label)
    start = time.time()
    signals = func(*args)
    log.info("  %s: found %d flags (%.1fs)", label, len(signals), time.time() - start)
    return signals


def run_all_signals(
    con: duckdb.DuckDBPyConnection,
    source: RelationSource,
    thresholds: Thresholds,
    workers: int = len(SIGNAL_NAMES),
) -> dict[str, list[dict]]:
    """Run all five signals and return results keyed by signal type.

    Detectors are independent readers of the summary tables, so they run in
    a thread pool, each on a cursor created here on the calling thread.
    Any detector exception propagates and aborts the run.
    """
    jobs = {
        "cost_outlier": (signal_cost_outlier, (thresholds,)),
        "billing_mill": (signal_billing_mill, (thresholds,)),
        "excess_volume": (signal_excess_volume, (source, thresholds)),
        "temporal_spike": (signal_temporal_spike, (thresholds,)),
        "procedure_concentration": (signal_procedure_concentration, (thresholds,)),
    }

    cursors = {name: con.cursor() for name in SIGNAL_NAMES}
    try:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = {
                name: pool.submit(_timed, i, name, jobs[name][0], cursors[name], *jobs[name][1])
                for i, name in enumerate(SIGNAL_NAMES, start=1)
            }
            results = {name: futures[name].result() for name in SIGNAL_NAMES}
    finally:
        for cursor in cursors.values():
            cursor.close()

    return results
