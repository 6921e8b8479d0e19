"""Tests for the command-line entry point."""

import json
import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provider_anomaly.main import build_parser, main


def _run(input_path, out_dir, *extra):
    return main(["run", "--input", str(input_path), "--out", str(out_dir),
                 "--threads", "2", *extra])


class TestCommandLine:

    def test_successful_run(self, spending_path, tmp_path):
        out = tmp_path / "out"
        assert _run(spending_path, out) == 0
        with open(out / "summary.json") as f:
            summary = json.load(f)
        assert summary["total_providers_flagged"] == 8

    def test_schema_mismatch_exits_nonzero(self, write_parquet, tmp_path):
        path = write_parquet(
            [("A", "X", "2023-01")],
            schema="billing_entity_id VARCHAR, procedure_code VARCHAR, period VARCHAR",
        )
        assert _run(path, tmp_path / "out") == 2
        assert not (tmp_path / "out").exists()

    def test_missing_input_exits_nonzero(self, tmp_path):
        assert _run(tmp_path / "missing.parquet", tmp_path / "out") == 1

    def test_corrupt_input_exits_nonzero(self, tmp_path):
        path = tmp_path / "corrupt.parquet"
        path.write_text("billing_entity_id,procedure_code\nA,X\n")
        assert _run(path, tmp_path / "out") == 1
        assert not (tmp_path / "out").exists()

    def test_invalid_threshold_exits_nonzero(self, spending_path, tmp_path):
        assert _run(spending_path, tmp_path / "out", "--mill-percentile", "1.5") == 2

    def test_thresholds_from_flags(self, spending_path, tmp_path):
        out = tmp_path / "out"
        assert _run(spending_path, out, "--volume-threshold", "1600") == 0
        df = pd.read_csv(out / "flags_excess_volume.csv", dtype={"entity_id": str})
        assert df["entity_id"].tolist() == ["Z1"]

    def test_sequential_workers(self, spending_path, tmp_path):
        assert _run(spending_path, tmp_path / "out", "--workers", "1") == 0

    def test_defaults(self):
        args = build_parser().parse_args(["run", "--input", "in.parquet", "--out", "out"])
        assert args.cohort_min == 20
        assert args.zscore_threshold == 3.0
        assert args.mill_percentile == 0.99
        assert args.volume_threshold == 1000
        assert args.spike_ratio == 5.0
        assert args.spike_floor == 50000.0
        assert args.concentration_share == 0.95
        assert args.concentration_min_total == 500000.0

    def test_run_requires_input(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--out", "out"])
