"""Rate-limited, resumable API ingestion: collect into raw staging, extract into typed records."""

__version__ = "0.1.0"
