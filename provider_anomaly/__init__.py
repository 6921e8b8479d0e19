"""Multi-signal anomaly detection over aggregated provider billing data."""

VERSION = "1.0.0"
