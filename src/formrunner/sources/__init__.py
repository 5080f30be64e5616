"""Input records files and result export."""

from formrunner.sources.records import (
    SUPPORTED_SUFFIXES,
    load_records,
    results_to_csv,
    results_to_xlsx,
    write_results,
)

__all__ = ["SUPPORTED_SUFFIXES", "load_records", "results_to_csv", "results_to_xlsx", "write_results"]
