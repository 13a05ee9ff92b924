"""Background job orchestration and backfill for the Cinegraph movie store."""

__version__ = "0.1.0"
