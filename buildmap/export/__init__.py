"""Report and CSV exporters."""

from .report import (
    ResolutionReportWriter,
    find_collisions,
    load_report,
    summarize_report,
)

__all__ = [
    "ResolutionReportWriter",
    "find_collisions",
    "load_report",
    "summarize_report",
]
