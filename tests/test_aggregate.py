"""Tests for the grouped summary tables."""

import os
import random
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provider_anomaly.aggregate import (
    PROCEDURE_COHORTS,
    PROVIDER_MONTH,
    PROVIDER_PROCEDURE,
    PROVIDER_TOTALS,
    Reducer,
    aggregate,
)


def _table(con, table):
    return con.execute(f"SELECT * FROM {table} ORDER BY ALL").fetchall()


class TestProviderProcedure:

    def test_one_row_per_key(self, con):
        keys = con.execute(f"""
            SELECT billing_entity_id, procedure_code, COUNT(*)
            FROM {PROVIDER_PROCEDURE}
            GROUP BY ALL
            HAVING COUNT(*) > 1
        """).fetchall()
        assert keys == []

    def test_sums_and_distinct_periods(self, con):
        row = con.execute(f"""
            SELECT total_paid, total_beneficiaries, total_transactions, active_periods
            FROM {PROVIDER_PROCEDURE}
            WHERE billing_entity_id = 'V1' AND procedure_code = '99213'
        """).fetchone()
        assert row == (Decimal("10000.000000"), 80, 2400, 2)

    def test_paid_per_beneficiary(self, con):
        ppb = con.execute(f"""
            SELECT paid_per_beneficiary FROM {PROVIDER_PROCEDURE}
            WHERE billing_entity_id = 'A25'
        """).fetchone()[0]
        assert ppb == Decimal("1000")

    def test_zero_beneficiaries_floor_to_one(self, summarize):
        con, _ = summarize([("E1", "E1", "X", "2023-01", 0, 3, 50000.0)])
        ppb = con.execute(
            f"SELECT paid_per_beneficiary FROM {PROVIDER_PROCEDURE}"
        ).fetchone()[0]
        assert ppb == Decimal("50000")


class TestProviderMonth:

    def test_month_sums(self, con):
        rows = con.execute(f"""
            SELECT period, total_paid FROM {PROVIDER_MONTH}
            WHERE billing_entity_id = 'T5' ORDER BY period
        """).fetchall()
        assert rows == [("2023-01", Decimal("100000.000000")),
                        ("2023-05", Decimal("600000.000000"))]


class TestProviderTotals:

    def test_distinct_counts(self, con):
        row = con.execute(f"""
            SELECT total_paid, servicing_count, procedure_count
            FROM {PROVIDER_TOTALS} WHERE billing_entity_id = 'M1'
        """).fetchone()
        assert row == (Decimal("5000.000000"), 50, 1)

    def test_every_entity_present(self, con, spending_rows):
        count = con.execute(f"SELECT COUNT(*) FROM {PROVIDER_TOTALS}").fetchone()[0]
        assert count == len({r[0] for r in spending_rows})

    def test_grand_total_matches_input(self, con, spending_rows):
        total = con.execute(f"SELECT SUM(total_paid) FROM {PROVIDER_TOTALS}").fetchone()[0]
        assert float(total) == pytest.approx(sum(r[6] for r in spending_rows))


class TestProcedureCohorts:

    def test_only_large_cohorts_materialized(self, con):
        rows = con.execute(
            f"SELECT procedure_code, provider_count FROM {PROCEDURE_COHORTS}"
        ).fetchall()
        assert rows == [("X", 25)]

    def test_cohort_min_is_respected(self, summarize, spending_rows):
        con, _ = summarize(spending_rows, cohort_min=7)
        codes = {r[0] for r in con.execute(
            f"SELECT procedure_code FROM {PROCEDURE_COHORTS}"
        ).fetchall()}
        assert codes == {"X", "99213"}

    def test_population_stddev(self, summarize):
        rows = [(f"P{i}", f"P{i}", "K", "2023-01", 1, 1, 0.0) for i in range(9)]
        rows.append(("P9", "P9", "K", "2023-01", 1, 1, 10.0))
        con, _ = summarize(rows, cohort_min=10)
        mean, stddev = con.execute(
            f"SELECT mean_ppb, stddev_ppb FROM {PROCEDURE_COHORTS}"
        ).fetchone()
        assert mean == pytest.approx(1.0)
        assert stddev == pytest.approx(3.0)

    def test_exact_cohort_sums(self, summarize):
        rows = [(f"P{i}", f"P{i}", "K", "2023-01", 1, 1, 0.0) for i in range(9)]
        rows.append(("P9", "P9", "K", "2023-01", 1, 1, 17.0))
        con, _ = summarize(rows, cohort_min=10)
        count, total, squares = con.execute(
            f"SELECT provider_count, sum_ppb, sum_sq_ppb FROM {PROCEDURE_COHORTS}"
        ).fetchone()
        assert (count, total, squares) == (10, Decimal("17"), Decimal("289"))

    def test_paid_per_beneficiary_is_fixed_scale(self, summarize):
        con, _ = summarize([("R1", "R1", "K", "2023-01", 3, 3, 100.0)])
        ppb = con.execute(
            f"SELECT paid_per_beneficiary FROM {PROVIDER_PROCEDURE}"
        ).fetchone()[0]
        assert ppb == Decimal("33.333333")


class TestOrderIndependence:
    """Permuting input rows leaves every summary table unchanged."""

    def test_shuffled_input_gives_identical_tables(self, summarize, spending_rows):
        con_a, _ = summarize(spending_rows)
        shuffled = list(spending_rows)
        random.Random(7).shuffle(shuffled)
        con_b, _ = summarize(shuffled)
        for table in (PROVIDER_PROCEDURE, PROVIDER_MONTH, PROVIDER_TOTALS):
            assert _table(con_a, table) == _table(con_b, table)


class TestAggregate:

    def test_unknown_reducer_rejected(self, con_source):
        con, source = con_source
        with pytest.raises(ValueError):
            aggregate(con, source, ["billing_entity_id"],
                      [Reducer("m", "median", "paid_amount")], "bad_table")

    def test_custom_grouping_from_source(self, con_source):
        con, source = con_source
        groups = aggregate(
            con, source, ["procedure_code"],
            [Reducer("max_tx", "max", "transaction_count")],
            "code_max",
        )
        assert groups == con.execute(
            "SELECT COUNT(DISTINCT procedure_code) FROM provider_procedure"
        ).fetchone()[0]
        assert con.execute(
            "SELECT max_tx FROM code_max WHERE procedure_code = 'Z'"
        ).fetchone()[0] == 2000
