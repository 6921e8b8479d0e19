"""Read-only relation over the spending dataset, backed by DuckDB.

DuckDB reads parquet row groups lazily: only the projected columns are
decoded and row groups whose min/max statistics rule out a predicate are
skipped, so nothing here ever materializes the full relation.
"""

import glob
import logging
import os
from typing import Iterator, Optional, Sequence

import duckdb

from provider_anomaly.config import DEFAULT_BATCH_SIZE, EngineSettings

log = logging.getLogger("provider_anomaly.source")

# Canonical field -> published CMS column name
CMS_ALIASES = {
    "billing_entity_id": "BILLING_PROVIDER_NPI_NUM",
    "servicing_entity_id": "SERVICING_PROVIDER_NPI_NUM",
    "procedure_code": "HCPCS_CODE",
    "period": "CLAIM_FROM_MONTH",
    "beneficiary_count": "TOTAL_UNIQUE_BENEFICIARIES",
    "transaction_count": "TOTAL_CLAIMS",
    "paid_amount": "TOTAL_PAID",
}
FIELDS = tuple(CMS_ALIASES)

ID_FIELDS = ("billing_entity_id", "servicing_entity_id", "procedure_code")
COUNT_FIELDS = ("beneficiary_count", "transaction_count")

INTEGER_TYPES = frozenset({
    "TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT",
    "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT", "UHUGEINT",
})
FLOAT_TYPES = frozenset({"FLOAT", "DOUBLE", "REAL"})
TEXT_TYPES = frozenset({"VARCHAR"})
DATE_TYPES = frozenset({"DATE", "TIMESTAMP", "TIMESTAMP_NS", "TIMESTAMP_MS", "TIMESTAMP_S"})


class SchemaError(ValueError):
    """The input relation is missing a required field or has the wrong type."""

    def __init__(self, missing: Sequence[str] = (), mistyped: Optional[dict] = None):
        self.missing = list(missing)
        self.mistyped = dict(mistyped or {})
        parts = []
        if self.missing:
            parts.append("missing fields: " + ", ".join(self.missing))
        if self.mistyped:
            parts.append("wrong types: " + ", ".join(
                f"{name} ({col_type})" for name, col_type in sorted(self.mistyped.items())
            ))
        super().__init__("Input schema mismatch; " + "; ".join(parts))


def get_connection(settings: EngineSettings = EngineSettings()) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection sized for out-of-core aggregation."""
    con = duckdb.connect(":memory:")
    con.execute(f"SET memory_limit = '{settings.memory_limit}'")
    con.execute(f"SET threads = {int(settings.threads)}")
    con.execute("SET preserve_insertion_order = false")
    if settings.temp_directory:
        con.execute(f"SET temp_directory = '{_quote(settings.temp_directory)}'")
    return con


def _quote(text: str) -> str:
    return str(text).replace("'", "''")


def _base_type(col_type: str) -> str:
    return col_type.split("(")[0].strip().upper()


def _is_numeric(col_type: str) -> bool:
    base = _base_type(col_type)
    return base in INTEGER_TYPES or base in FLOAT_TYPES or base == "DECIMAL"


class RelationSource:
    """Immutable handle over the spending relation.

    Every ``scan`` opens a fresh cursor and streams fetch batches; the
    aggregation engine instead embeds ``relation_sql()`` so DuckDB can fold
    the scan into a grouped hash aggregate.
    """

    def __init__(
        self,
        path: str,
        con: duckdb.DuckDBPyConnection,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.path = str(path)
        self.con = con
        self.batch_size = batch_size
        self._reader = self._reader_sql(self.path)
        self._expressions: Optional[dict] = None

    @staticmethod
    def _reader_sql(path: str) -> str:
        if os.path.isdir(path):
            pattern = os.path.join(path, "*.parquet")
            if not glob.glob(pattern):
                raise FileNotFoundError(f"No parquet files found in: {path}")
            return f"read_parquet('{_quote(pattern)}')"
        if any(ch in path for ch in "*?["):
            if not glob.glob(path):
                raise FileNotFoundError(f"No files match: {path}")
        elif not os.path.exists(path):
            raise FileNotFoundError(f"Spending data not found: {path}")
        if path.lower().endswith(".csv"):
            return f"read_csv('{_quote(path)}', header=true, auto_detect=true)"
        return f"read_parquet('{_quote(path)}')"

    def describe(self) -> dict:
        """Physical column name -> DuckDB type, without reading any rows."""
        rows = self.con.execute(f"DESCRIBE SELECT * FROM {self._reader}").fetchall()
        return {row[0]: row[1] for row in rows}

    def validate(self) -> dict:
        """Resolve canonical fields to physical columns and check their types.

        Returns the canonical field -> SQL projection map. Raises SchemaError.
        """
        columns = self.describe()
        missing = []
        mistyped = {}
        expressions = {}

        for field in FIELDS:
            if field in columns:
                physical = field
            elif CMS_ALIASES[field] in columns:
                physical = CMS_ALIASES[field]
            else:
                missing.append(field)
                continue

            col_type = columns[physical]
            base = _base_type(col_type)
            ref = f'"{physical}"'

            if field in ID_FIELDS:
                if base in TEXT_TYPES:
                    expressions[field] = ref
                elif base in INTEGER_TYPES:
                    expressions[field] = f"CAST({ref} AS VARCHAR)"
                else:
                    mistyped[field] = col_type
            elif field == "period":
                if base in TEXT_TYPES:
                    expressions[field] = f"LEFT({ref}, 7)"
                elif base in DATE_TYPES:
                    expressions[field] = f"strftime({ref}, '%Y-%m')"
                else:
                    mistyped[field] = col_type
            elif field in COUNT_FIELDS:
                if base in INTEGER_TYPES:
                    expressions[field] = ref
                else:
                    mistyped[field] = col_type
            else:
                if _is_numeric(col_type):
                    expressions[field] = ref
                else:
                    mistyped[field] = col_type

        if missing or mistyped:
            raise SchemaError(missing, mistyped)

        self._expressions = expressions
        log.info("Input schema OK: %s", self.path)
        return expressions

    def relation_sql(self, columns: Optional[Sequence[str]] = None) -> str:
        """A SELECT over the source exposing canonical column names."""
        if self._expressions is None:
            self.validate()
        wanted = list(columns) if columns else list(FIELDS)
        unknown = [c for c in wanted if c not in self._expressions]
        if unknown:
            raise KeyError(f"Unknown columns: {', '.join(unknown)}")
        projection = ", ".join(f"{self._expressions[c]} AS {c}" for c in wanted)
        return f"SELECT {projection} FROM {self._reader}"

    def scan(
        self,
        columns: Sequence[str],
        predicate: Optional[str] = None,
        params: Optional[Sequence] = None,
        con: Optional[duckdb.DuckDBPyConnection] = None,
    ) -> Iterator[tuple]:
        """Stream projected rows matching ``predicate``.

        ``predicate`` is a SQL boolean expression over canonical column names,
        with ``?`` placeholders bound from ``params``. Pass ``con`` when
        scanning from a worker thread so the scan gets a cursor owned by that
        thread.
        """
        query = f"SELECT * FROM ({self.relation_sql(columns)}) AS src"
        if predicate:
            query += f" WHERE {predicate}"
        log.debug("scan: %s %s", query, list(params or []))

        cursor = (con or self.con).cursor()
        try:
            cursor.execute(query, list(params or []))
            while True:
                batch = cursor.fetchmany(self.batch_size)
                if not batch:
                    break
                yield from batch
        finally:
            cursor.close()

    def count_rows(self) -> int:
        return self.con.execute(f"SELECT COUNT(*) FROM {self._reader}").fetchone()[0]
