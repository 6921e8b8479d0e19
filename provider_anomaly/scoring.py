"""Composite risk scoring across the five signals.

Flag sets are small by the time they get here (thousands of entities). They
are loaded into an ``entity_flags`` table and joined against provider_totals
inside DuckDB, so the per-entity composite table never passes through Python
in one piece. Each entity's score is the number of signals that flagged it.
"""

import logging
from decimal import Decimal
from typing import Iterator, Optional

import duckdb
import pandas as pd

from provider_anomaly.aggregate import PROVIDER_TOTALS
from provider_anomaly.signals import SIGNAL_NAMES

log = logging.getLogger("provider_anomaly.scoring")

ENTITY_FLAGS = "entity_flags"
COMPOSITE_RISK = "composite_risk"

FETCH_SIZE = 50_000


def flag_column(signal_type: str) -> str:
    return f"flag_{signal_type}"


COMPOSITE_COLUMNS = (
    ["entity_id", "total_paid"] + [flag_column(n) for n in SIGNAL_NAMES] + ["score"]
)


def empty_buckets() -> dict[int, dict]:
    """Score -> {provider_count, total_paid} for every score 0..N."""
    return {
        score: {"provider_count": 0, "total_paid": Decimal(0)}
        for score in range(len(SIGNAL_NAMES) + 1)
    }


def _load_flags(con: duckdb.DuckDBPyConnection, signal_results: dict[str, list[dict]]) -> int:
    con.execute(f"CREATE OR REPLACE TABLE {ENTITY_FLAGS} (signal_type VARCHAR, entity_id VARCHAR)")
    rows = [
        (name, flag["entity_id"])
        for name in SIGNAL_NAMES
        for flag in signal_results.get(name, [])
    ]
    if rows:
        con.register("flag_rows", pd.DataFrame(rows, columns=["signal_type", "entity_id"]))
        try:
            con.execute(f"INSERT INTO {ENTITY_FLAGS} SELECT signal_type, entity_id FROM flag_rows")
        finally:
            con.unregister("flag_rows")
    return len(rows)


def score_providers(
    con: duckdb.DuckDBPyConnection,
    signal_results: dict[str, list[dict]],
) -> dict[int, dict]:
    """Build the composite_risk table, one row per entity in provider_totals.

    Returns the score buckets; bucket totals are exact decimal sums. Rows
    are read back with ``composite_batches``.
    """
    _load_flags(con, signal_results)

    pivot = ",\n".join(
        f"BOOL_OR(signal_type = '{name}') AS {flag_column(name)}" for name in SIGNAL_NAMES
    )
    flags = ",\n".join(
        f"COALESCE(f.{flag_column(name)}, false) AS {flag_column(name)}" for name in SIGNAL_NAMES
    )
    score = " + ".join(
        f"CAST(COALESCE(f.{flag_column(name)}, false) AS INTEGER)" for name in SIGNAL_NAMES
    )
    con.execute(f"""
        CREATE OR REPLACE TABLE {COMPOSITE_RISK} AS
        SELECT
            pt.billing_entity_id AS entity_id,
            pt.total_paid,
            {flags},
            {score} AS score
        FROM {PROVIDER_TOTALS} pt
        LEFT JOIN (
            SELECT entity_id, {pivot}
            FROM {ENTITY_FLAGS}
            GROUP BY entity_id
        ) f ON pt.billing_entity_id = f.entity_id
    """)

    out_of_domain = con.execute(f"""
        SELECT COUNT(DISTINCT f.entity_id)
        FROM {ENTITY_FLAGS} f
        WHERE NOT EXISTS (
            SELECT 1 FROM {PROVIDER_TOTALS} pt WHERE pt.billing_entity_id = f.entity_id
        )
    """).fetchone()[0]
    if out_of_domain:
        log.warning("Ignoring %d flagged entities absent from %s", out_of_domain, PROVIDER_TOTALS)

    buckets = empty_buckets()
    for score_value, provider_count, total_paid in con.execute(f"""
        SELECT score, COUNT(*), SUM(total_paid)
        FROM {COMPOSITE_RISK}
        GROUP BY score
        ORDER BY score
    """).fetchall():
        buckets[score_value] = {"provider_count": provider_count, "total_paid": total_paid}

    scored = sum(b["provider_count"] for b in buckets.values())
    flagged = scored - buckets[0]["provider_count"]
    log.info("Scored %s providers; %s with score >= 1", f"{scored:,}", f"{flagged:,}")
    return buckets


def _ordered_composite_sql(where: str = "", limit: Optional[int] = None) -> str:
    query = f"""
        SELECT {", ".join(COMPOSITE_COLUMNS)}
        FROM {COMPOSITE_RISK}
        {where}
        ORDER BY score DESC, total_paid DESC, entity_id
    """
    if limit is not None:
        query += f" LIMIT {int(limit)}"
    return query


def composite_batches(
    con: duckdb.DuckDBPyConnection, batch_size: int = FETCH_SIZE
) -> Iterator[list[dict]]:
    """Stream composite_risk by score desc, total_paid desc, entity_id asc."""
    cursor = con.cursor()
    try:
        cursor.execute(_ordered_composite_sql())
        while True:
            rows = cursor.fetchmany(batch_size)
            if not rows:
                break
            yield [dict(zip(COMPOSITE_COLUMNS, row)) for row in rows]
    finally:
        cursor.close()


def top_providers(con: duckdb.DuckDBPyConnection, limit: int) -> list[dict]:
    """Highest scoring entities with score >= 1, in composite order."""
    rows = con.execute(_ordered_composite_sql("WHERE score > 0", limit)).fetchall()
    return [dict(zip(COMPOSITE_COLUMNS, row)) for row in rows]


def compute_cross_signal_correlations(signal_results: dict[str, list[dict]]) -> dict:
    """Summarize how often signals co-occur on the same entity."""
    entity_signals: dict[str, set[str]] = {}
    for signal_type, signals in signal_results.items():
        for s in signals:
            entity_signals.setdefault(s["entity_id"], set()).add(signal_type)

    signal_count_totals: dict[int, int] = {}
    multi_signal_entities: dict[int, list[str]] = {}
    for entity_id, types in sorted(entity_signals.items()):
        n = len(types)
        signal_count_totals[n] = signal_count_totals.get(n, 0) + 1
        if n >= 2:
            multi_signal_entities.setdefault(n, []).append(entity_id)

    # Find which signal pairs co-occur most
    pair_counts: dict[tuple[str, str], int] = {}
    for types in entity_signals.values():
        type_list = sorted(types)
        for i in range(len(type_list)):
            for j in range(i + 1, len(type_list)):
                pair = (type_list[i], type_list[j])
                pair_counts[pair] = pair_counts.get(pair, 0) + 1

    top_pairs = sorted(pair_counts.items(), key=lambda x: (-x[1], x[0]))[:10]

    return {
        "total_unique_entities_flagged": len(entity_signals),
        "entities_by_signal_count": {
            str(k): v for k, v in sorted(signal_count_totals.items())
        },
        "multi_signal_entities": {
            str(k): v[:10] for k, v in sorted(multi_signal_entities.items(), reverse=True)
        },
        "top_signal_pairs": [
            {"pair": list(pair), "count": count}
            for pair, count in top_pairs
        ],
    }
