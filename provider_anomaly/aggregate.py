"""Grouped summary tables built from the relation source.

Each summary is a single GROUP BY over the streaming scan, materialized as a
DuckDB table. DuckDB's hash aggregate holds one accumulator per distinct
group (spilling to the temp directory under memory pressure), so the working
set tracks group cardinality rather than raw row count.

Tables produced:
  - provider_procedure: per (billing entity, procedure code)
  - provider_month: per (billing entity, period)
  - provider_totals: per billing entity
  - procedure_cohorts: per procedure code, cohorts of at least ``cohort_min``
"""

import logging
from collections import namedtuple
from typing import Optional, Sequence, Union

import duckdb

from provider_anomaly.source import RelationSource

log = logging.getLogger("provider_anomaly.aggregate")

PROVIDER_PROCEDURE = "provider_procedure"
PROVIDER_MONTH = "provider_month"
PROVIDER_TOTALS = "provider_totals"
PROCEDURE_COHORTS = "procedure_cohorts"

# Money is summed as exact decimals so group sums do not depend on the order
# in which partitions are merged.
MONEY = "DECIMAL(38, 6)"

Reducer = namedtuple("Reducer", ["alias", "func", "column"])

REDUCERS = {
    "sum": "SUM({column})",
    "money_sum": "SUM(CAST({column} AS " + MONEY + "))",
    "count": "COUNT(*)",
    "count_distinct": "COUNT(DISTINCT {column})",
    "min": "MIN({column})",
    "max": "MAX({column})",
    "mean": "AVG({column})",
    "stddev_pop": "STDDEV_POP({column})",
    # Exact squares; DECIMAL(18, 6) operands keep the product within DECIMAL(38)
    "sum_squares": "SUM(CAST({column} AS DECIMAL(18, 6)) * CAST({column} AS DECIMAL(18, 6)))",
}


def _reducer_sql(reducer: Reducer) -> str:
    if reducer.func not in REDUCERS:
        raise ValueError(f"Unsupported reducer: {reducer.func}")
    return f"{REDUCERS[reducer.func].format(column=reducer.column)} AS {reducer.alias}"


def aggregate(
    con: duckdb.DuckDBPyConnection,
    source: Union[RelationSource, str],
    group_keys: Sequence[str],
    reducers: Sequence[Reducer],
    table: str,
    derived: Optional[dict] = None,
    min_group_size: Optional[int] = None,
) -> int:
    """Materialize ``source`` grouped by ``group_keys`` into ``table``.

    ``source`` is a RelationSource or the name of an earlier summary table.
    ``derived`` adds columns computed from the reduced values, and
    ``min_group_size`` drops groups with fewer input rows. Returns the number
    of groups written.
    """
    if isinstance(source, RelationSource):
        columns = sorted({r.column for r in reducers if r.column} - set(group_keys))
        needed = list(group_keys) + columns
        relation = f"({source.relation_sql(needed)}) AS src"
    else:
        relation = source

    keys = ", ".join(group_keys)
    select = ", ".join([keys] + [_reducer_sql(r) for r in reducers])
    query = f"SELECT {select} FROM {relation} GROUP BY {keys}"
    if min_group_size is not None:
        query += f" HAVING COUNT(*) >= {int(min_group_size)}"
    if derived:
        extra = ", ".join(f"{expr} AS {alias}" for alias, expr in derived.items())
        query = f"SELECT *, {extra} FROM ({query}) AS grouped"

    log.debug("aggregate %s: %s", table, query)
    con.execute(f"CREATE OR REPLACE TABLE {table} AS {query}")
    groups = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    log.info("  %s: %s groups", table, f"{groups:,}")
    return groups


def build_provider_procedure(con: duckdb.DuckDBPyConnection, source: RelationSource) -> int:
    """One row per (billing entity, procedure code)."""
    return aggregate(
        con,
        source,
        ["billing_entity_id", "procedure_code"],
        [
            Reducer("total_paid", "money_sum", "paid_amount"),
            Reducer("total_beneficiaries", "sum", "beneficiary_count"),
            Reducer("total_transactions", "sum", "transaction_count"),
            Reducer("active_periods", "count_distinct", "period"),
        ],
        PROVIDER_PROCEDURE,
        derived={
            # Zero-beneficiary rows keep their full paid amount as the ratio.
            # Rounded once to a fixed-scale decimal so cohort sums stay exact.
            "paid_per_beneficiary": (
                f"CAST(CAST(total_paid AS DOUBLE) / GREATEST(total_beneficiaries, 1) AS {MONEY})"
            ),
        },
    )


def build_provider_month(con: duckdb.DuckDBPyConnection, source: RelationSource) -> int:
    """One row per (billing entity, period)."""
    return aggregate(
        con,
        source,
        ["billing_entity_id", "period"],
        [
            Reducer("total_paid", "money_sum", "paid_amount"),
            Reducer("total_transactions", "sum", "transaction_count"),
            Reducer("total_beneficiaries", "sum", "beneficiary_count"),
        ],
        PROVIDER_MONTH,
    )


def build_provider_totals(con: duckdb.DuckDBPyConnection, source: RelationSource) -> int:
    """One row per billing entity; the domain every flag attaches to."""
    return aggregate(
        con,
        source,
        ["billing_entity_id"],
        [
            Reducer("total_paid", "money_sum", "paid_amount"),
            Reducer("servicing_count", "count_distinct", "servicing_entity_id"),
            Reducer("procedure_count", "count_distinct", "procedure_code"),
            Reducer("total_transactions", "sum", "transaction_count"),
            Reducer("total_beneficiaries", "sum", "beneficiary_count"),
        ],
        PROVIDER_TOTALS,
    )


def build_procedure_cohorts(con: duckdb.DuckDBPyConnection, cohort_min: int) -> int:
    """Per-code moments of paid_per_beneficiary.

    Built from provider_procedure, so each input row is one provider; codes
    billed by fewer than ``cohort_min`` providers are left out. The exact
    sums (``sum_ppb``, ``sum_sq_ppb``) decide outliers; mean and stddev are
    DOUBLE and only reported.
    """
    return aggregate(
        con,
        PROVIDER_PROCEDURE,
        ["procedure_code"],
        [
            Reducer("provider_count", "count", None),
            Reducer("sum_ppb", "money_sum", "paid_per_beneficiary"),
            Reducer("sum_sq_ppb", "sum_squares", "paid_per_beneficiary"),
            Reducer("mean_ppb", "mean", "paid_per_beneficiary"),
            Reducer("stddev_ppb", "stddev_pop", "paid_per_beneficiary"),
        ],
        PROCEDURE_COHORTS,
        min_group_size=cohort_min,
    )


def build_summary_tables(
    con: duckdb.DuckDBPyConnection,
    source: RelationSource,
    cohort_min: int,
) -> dict:
    """Build all summary tables and return table name -> group count."""
    log.info("Building summary tables...")
    return {
        PROVIDER_PROCEDURE: build_provider_procedure(con, source),
        PROVIDER_MONTH: build_provider_month(con, source),
        PROVIDER_TOTALS: build_provider_totals(con, source),
        PROCEDURE_COHORTS: build_procedure_cohorts(con, cohort_min),
    }
