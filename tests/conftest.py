"""Shared test fixtures: synthetic spending relations written to parquet."""

import os
import sys

import duckdb
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provider_anomaly.aggregate import build_summary_tables
from provider_anomaly.config import EngineSettings
from provider_anomaly.source import RelationSource, get_connection

SCHEMA = (
    "billing_entity_id VARCHAR, servicing_entity_id VARCHAR, procedure_code VARCHAR, "
    "period VARCHAR, beneficiary_count BIGINT, transaction_count BIGINT, paid_amount DOUBLE"
)


def _cohort_rows():
    # 24 providers around $100 per beneficiary on code X, one at $1,000
    rows = []
    for i in range(24):
        ppb = (95.0, 100.0, 105.0)[i % 3]
        npi = f"A{i + 1:02d}"
        rows.append((npi, npi, "X", "2023-01", 10, 10, ppb * 10))
    rows.append(("A25", "A25", "X", "2023-01", 10, 10, 10000.0))
    return rows


SPENDING_ROWS = _cohort_rows() + [
    # Billing mill: 50 distinct servicing ids under one billing entity
    *[("M1", f"S{i:02d}", "Y", "2023-03", 1, 1, 100.0) for i in range(50)],

    # Excess volume: two rows over 1000 transactions; V2 sits exactly on it
    ("V1", "V1", "99213", "2023-01", 40, 1500, 5000.0),
    ("V1", "V1", "99214", "2023-02", 40, 1200, 5000.0),
    ("V1", "V1", "99213", "2023-03", 40, 900, 5000.0),
    ("V2", "V2", "99213", "2023-01", 40, 1000, 5000.0),

    # Temporal spikes
    ("T1", "T1", "99213", "2023-01", 10, 20, 10000.0),
    ("T1", "T1", "99213", "2023-02", 10, 20, 60000.0),
    ("T2", "T2", "99213", "2023-01", 10, 20, 0.0),
    ("T2", "T2", "99213", "2023-02", 10, 20, 40000.0),
    ("T3", "T3", "99213", "2023-01", 10, 20, 0.0),
    ("T3", "T3", "99213", "2023-02", 10, 20, 60000.0),
    ("T4", "T4", "99213", "2023-01", 10, 20, 20000.0),
    ("T4", "T4", "99213", "2023-02", 10, 20, 100000.0),
    ("T5", "T5", "P1", "2023-01", 10, 20, 100000.0),
    ("T5", "T5", "P1", "2023-05", 10, 20, 300000.0),
    ("T5", "T5", "P2", "2023-05", 10, 20, 300000.0),
    ("T6", "T6", "99213", "2023-06", 10, 20, 400000.0),

    # Procedure dominance: same 98.3% share, different totals
    ("C1", "C1", "C", "2023-01", 50, 100, 590000.0),
    ("C1", "C1", "D", "2023-01", 5, 10, 10000.0),
    ("C2", "C2", "C", "2023-01", 50, 100, 393333.0),
    ("C2", "C2", "D", "2023-01", 5, 10, 6667.0),

    # Multi-signal: volume, spike and dominance together
    ("Z1", "Z1", "Z", "2023-01", 10, 10, 10000.0),
    ("Z1", "Z1", "Z", "2023-02", 50, 2000, 600000.0),
]

UNFLAGGED = [f"A{i:02d}" for i in range(1, 25)] + ["V2", "T2", "T4", "T6", "C2"]


def write_spending(path, rows=(), extra_sql=(), schema=SCHEMA):
    """Write rows (and any extra INSERTs) to a parquet file via DuckDB."""
    c = duckdb.connect(":memory:")
    try:
        c.execute(f"CREATE TABLE spending ({schema})")
        rows = list(rows)
        if rows:
            placeholders = ", ".join("?" for _ in rows[0])
            c.executemany(f"INSERT INTO spending VALUES ({placeholders})", rows)
        for sql in extra_sql:
            c.execute(sql)
        c.execute(f"COPY spending TO '{path}' (FORMAT PARQUET, ROW_GROUP_SIZE 2048)")
    finally:
        c.close()
    return str(path)


@pytest.fixture
def spending_rows():
    return list(SPENDING_ROWS)


@pytest.fixture
def write_parquet(tmp_path):
    def _write(rows=(), name="spending.parquet", extra_sql=(), schema=SCHEMA):
        return write_spending(tmp_path / name, rows, extra_sql, schema)
    return _write


@pytest.fixture
def open_source():
    opened = []

    def _open(path, batch_size=1000):
        con = get_connection(EngineSettings(threads=2))
        opened.append(con)
        source = RelationSource(path, con, batch_size=batch_size)
        source.validate()
        return con, source

    yield _open
    for con in opened:
        con.close()


@pytest.fixture
def summarize(write_parquet, open_source):
    """Build the summary tables for ``rows``; returns (con, source)."""
    count = [0]

    def _summarize(rows=(), cohort_min=20, extra_sql=()):
        count[0] += 1
        path = write_parquet(rows, name=f"spending_{count[0]}.parquet", extra_sql=extra_sql)
        con, source = open_source(path)
        build_summary_tables(con, source, cohort_min)
        return con, source

    return _summarize


@pytest.fixture
def spending_path(write_parquet):
    return write_parquet(SPENDING_ROWS)


@pytest.fixture
def con_source(summarize):
    return summarize(SPENDING_ROWS)


@pytest.fixture
def con(con_source):
    return con_source[0]
