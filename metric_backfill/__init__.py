"""Cutoff-bounded historical metric backfill from PostgreSQL/ClickHouse into ClickHouse."""

__version__ = "0.1.0"
