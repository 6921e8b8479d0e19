"""Main entry point for the provider anomaly detection engine."""

import argparse
import logging
import sys
import time

import duckdb

from provider_anomaly import VERSION
from provider_anomaly.aggregate import build_summary_tables
from provider_anomaly.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_COHORT_MIN,
    DEFAULT_CONCENTRATION_MIN_TOTAL,
    DEFAULT_CONCENTRATION_SHARE,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_MILL_PERCENTILE,
    DEFAULT_SPIKE_FLOOR,
    DEFAULT_SPIKE_RATIO,
    DEFAULT_THREADS,
    DEFAULT_VOLUME,
    DEFAULT_WORKERS,
    DEFAULT_ZSCORE,
    EngineSettings,
    Thresholds,
)
from provider_anomaly.output import TOP_ENTITIES, generate_summary, write_results
from provider_anomaly.scoring import score_providers, top_providers
from provider_anomaly.signals import run_all_signals
from provider_anomaly.source import RelationSource, SchemaError, get_connection

log = logging.getLogger("provider_anomaly")


def run_analysis(
    input_path: str,
    out_dir: str,
    thresholds: Thresholds = Thresholds(),
    settings: EngineSettings = EngineSettings(),
) -> dict:
    """Run the full pipeline on one input and write its results to ``out_dir``.

    The run owns its DuckDB connection from start to finish; nothing is
    shared with other runs. Nothing is written unless every detector
    succeeds. Returns the signal results, score buckets and summary.
    """
    thresholds.validate()
    con = get_connection(settings)
    try:
        source = RelationSource(input_path, con, batch_size=settings.batch_size)
        source.validate()

        rows_scanned = source.count_rows()
        log.info("Input rows: %s", f"{rows_scanned:,}")

        phase = time.time()
        build_summary_tables(con, source, thresholds.cohort_min)
        log.info("Summary tables built in %.1fs", time.time() - phase)

        phase = time.time()
        log.info("Running anomaly signals...")
        signal_results = run_all_signals(con, source, thresholds, workers=settings.workers)
        log.info("Signals finished in %.1fs", time.time() - phase)

        buckets = score_providers(con, signal_results)
        summary = generate_summary(
            signal_results,
            buckets,
            top_providers(con, TOP_ENTITIES),
            thresholds,
            str(input_path),
            rows_scanned,
        )
        write_results(out_dir, con, signal_results, buckets, summary)
    finally:
        con.close()

    return {
        "signal_results": signal_results,
        "buckets": buckets,
        "summary": summary,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provider-anomaly",
        description="Multi-signal anomaly detection over aggregated provider billing data",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Score every billing entity in an input relation")
    run.add_argument("--input", required=True,
                     help="Parquet file, directory of parquet files, glob, or CSV file")
    run.add_argument("--out", required=True, help="Directory for result tables")

    group = run.add_argument_group("thresholds")
    group.add_argument("--cohort-min", type=int, default=DEFAULT_COHORT_MIN,
                       help="Minimum providers per procedure cohort (default: %(default)s)")
    group.add_argument("--zscore-threshold", type=float, default=DEFAULT_ZSCORE,
                       help="Cost outlier z-score threshold, strict (default: %(default)s)")
    group.add_argument("--mill-percentile", type=float, default=DEFAULT_MILL_PERCENTILE,
                       help="Servicing-count percentile for billing mills (default: %(default)s)")
    group.add_argument("--volume-threshold", type=int, default=DEFAULT_VOLUME,
                       help="Transactions per raw row ceiling, strict (default: %(default)s)")
    group.add_argument("--spike-ratio", type=float, default=DEFAULT_SPIKE_RATIO,
                       help="Month-over-month growth ratio, strict (default: %(default)s)")
    group.add_argument("--spike-floor", type=float, default=DEFAULT_SPIKE_FLOOR,
                       help="Minimum paid in the spike month (default: %(default)s)")
    group.add_argument("--concentration-share", type=float, default=DEFAULT_CONCENTRATION_SHARE,
                       help="Top procedure share of total paid, strict (default: %(default)s)")
    group.add_argument("--concentration-min-total", type=float,
                       default=DEFAULT_CONCENTRATION_MIN_TOTAL,
                       help="Minimum total paid for dominance checks (default: %(default)s)")

    engine = run.add_argument_group("engine")
    engine.add_argument("--memory-limit", default=DEFAULT_MEMORY_LIMIT,
                        help="DuckDB memory limit (default: %(default)s)")
    engine.add_argument("--threads", type=int, default=DEFAULT_THREADS,
                        help="DuckDB worker threads (default: %(default)s)")
    engine.add_argument("--temp-directory", default=None,
                        help="Spill directory for out-of-core aggregation")
    engine.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE,
                        help="Rows per fetch when streaming scans (default: %(default)s)")
    engine.add_argument("--workers", type=int, default=DEFAULT_WORKERS,
                        help="Signals run concurrently; 1 runs them in sequence (default: %(default)s)")

    run.add_argument("-v", "--verbose", action="store_true", help="Log generated SQL")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    thresholds = Thresholds(
        cohort_min=args.cohort_min,
        zscore=args.zscore_threshold,
        mill_percentile=args.mill_percentile,
        volume=args.volume_threshold,
        spike_ratio=args.spike_ratio,
        spike_floor=args.spike_floor,
        concentration_share=args.concentration_share,
        concentration_min_total=args.concentration_min_total,
    )
    settings = EngineSettings(
        memory_limit=args.memory_limit,
        threads=args.threads,
        temp_directory=args.temp_directory,
        batch_size=args.batch_size,
        workers=args.workers,
    )

    start_time = time.time()
    log.info("=" * 60)
    log.info("Provider Anomaly Detection Engine v%s", VERSION)
    log.info("=" * 60)

    try:
        run_analysis(args.input, args.out, thresholds, settings)
    except SchemaError as e:
        log.error("%s", e)
        return 2
    except (OSError, duckdb.IOException, duckdb.InvalidInputException) as e:
        # Unreadable or corrupt input files surface as InvalidInputException
        log.error("I/O failure: %s", e)
        return 1
    except ValueError as e:
        log.error("Invalid configuration: %s", e)
        return 2

    elapsed = time.time() - start_time
    minutes = int(elapsed // 60)
    seconds = int(elapsed % 60)
    log.info("Total runtime: %dm %ds", minutes, seconds)
    return 0


if __name__ == "__main__":
    sys.exit(main())
