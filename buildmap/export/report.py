"""
Resolution report exporter.

Writes the outcome of a pipeline run:
- resolution_report.json: one entry per record, plus status counts and
  footprint collisions
- buildings_geocoded.csv: the canonical input with lat, lon and
  geocode_display_name appended

Both files are rewritten in full on every run and contain no timestamps,
so identical inputs and caches produce byte-identical outputs.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from ..core.models import MatchStatus
from ..core.pipeline import RecordResolution
from ..utils.logging_config import get_logger
from ..utils.validation import InputContractError

logger = get_logger(__name__)

REPORT_FILENAME = "resolution_report.json"
GEOCODED_FILENAME = "buildings_geocoded.csv"
GEOCODED_COLUMNS = ("lat", "lon", "geocode_display_name")


def find_collisions(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Object references claimed by more than one record.

    Only results that carry a geometry count. Sorted by count desc, then
    reference.
    """
    by_ref: Dict[str, List[str]] = {}
    for entry in results:
        if entry.get("geometry") is None:
            continue
        for ref in entry.get("object_references") or []:
            by_ref.setdefault(ref, []).append(entry["id"])

    collisions = [
        {"osm": ref, "count": len(ids), "ids": sorted(ids)}
        for ref, ids in by_ref.items()
        if len(ids) > 1
    ]
    collisions.sort(key=lambda c: (-c["count"], c["osm"]))
    return collisions


def count_statuses(results: List[Dict[str, Any]]) -> Dict[str, int]:
    """Totals for every status, zeros included."""
    counts = {status.value: 0 for status in MatchStatus}
    for entry in results:
        counts[entry["status"]] = counts.get(entry["status"], 0) + 1
    return counts


def summarize_report(report: Dict[str, Any]) -> Dict[str, Any]:
    """Totals per status and the share of records that ended up with a footprint."""
    results = report.get("results", [])
    total = len(results)
    with_geometry = sum(1 for r in results if r.get("geometry") is not None)
    geocoded = sum(
        1 for r in results
        if (r.get("geocode") or {}).get("lat") is not None
    )
    return {
        "total": total,
        "geocoded": geocoded,
        "with_geometry": with_geometry,
        "match_rate": round(with_geometry / total, 4) if total else 0.0,
        "counts": report.get("counts") or count_statuses(results),
        "collisions": len(report.get("collisions") or []),
    }


def load_report(path: Path | str) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise InputContractError(f"Report not found: {path}", field="path")
    try:
        with open(path, "r", encoding="utf-8") as f:
            report = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InputContractError(f"Cannot read report {path}: {e}", field="path") from e
    if not isinstance(report, dict) or not isinstance(report.get("results"), list):
        raise InputContractError(f"{path} is not a resolution report", field="path")
    return report


class ResolutionReportWriter:
    """
    Serialize pipeline results.

    Usage:
        writer = ResolutionReportWriter(Path("output"))
        report = writer.build(results)
        writer.write_report(report)
        writer.write_geocoded_csv(columns, rows, results)
    """

    def __init__(self, output_dir: Path | str, pretty: bool = True):
        self.output_dir = Path(output_dir)
        self.pretty = pretty

    @property
    def report_path(self) -> Path:
        return self.output_dir / REPORT_FILENAME

    @property
    def geocoded_path(self) -> Path:
        return self.output_dir / GEOCODED_FILENAME

    def build(self, results: List[RecordResolution]) -> Dict[str, Any]:
        entries = [self._entry(r) for r in results]
        collisions = find_collisions(entries)

        shared: Dict[str, set] = {}
        for collision in collisions:
            for record_id in collision["ids"]:
                shared.setdefault(record_id, set()).update(collision["ids"])
        for entry in entries:
            entry["shared_footprint_with"] = sorted(shared.get(entry["id"], set()) - {entry["id"]})

        return {
            "counts": count_statuses(entries),
            "collisions": collisions,
            "results": entries,
        }

    def write_report(self, report: Dict[str, Any], path: Optional[Path] = None) -> Path:
        path = Path(path or self.report_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2 if self.pretty else None, ensure_ascii=False)
            f.write("\n")

        logger.info(f"Wrote report for {len(report['results'])} records to {path}")
        return path

    def write_geocoded_csv(
        self,
        columns: List[str],
        rows: List[Dict[str, str]],
        results: List[RecordResolution],
        path: Optional[Path] = None,
    ) -> Path:
        """Mirror the canonical rows, appending the chosen coordinate."""
        path = Path(path or self.geocoded_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        by_id = {r.record_id: r.geocode for r in results}
        fieldnames = [c for c in columns if c not in GEOCODED_COLUMNS] + list(GEOCODED_COLUMNS)

        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                geocode = by_id.get((row.get("id") or "").strip())
                out = dict(row)
                out["lat"] = "" if geocode is None or geocode.lat is None else repr(geocode.lat)
                out["lon"] = "" if geocode is None or geocode.lon is None else repr(geocode.lon)
                out["geocode_display_name"] = geocode.display_name if geocode else ""
                writer.writerow(out)

        logger.info(f"Wrote geocoded CSV to {path}")
        return path

    def _entry(self, result: RecordResolution) -> Dict[str, Any]:
        footprint = result.footprint
        return {
            "id": result.record_id,
            "status": footprint.status.value,
            "strategy": footprint.strategy,
            "confidence": footprint.confidence.value,
            "object_references": list(footprint.object_references),
            "geometry": footprint.geometry_geojson(),
            "geocode": result.geocode.to_dict(),
            "shared_footprint_with": [],
            "debug": {
                "addresses_tried": list(result.geocode.addresses_tried),
                "radii_tried": list(footprint.radii_tried),
                "top_candidates": list(footprint.top_candidates),
                "validation_errors": list(footprint.validation_errors),
                "geocode_warnings": list(result.geocode.warnings),
            },
        }


# =============================================================================
# CONSOLE OUTPUT
# =============================================================================


def print_summary(summary: Dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or Console()

    table = Table(title="Resolution Summary")
    table.add_column("Status", style="cyan")
    table.add_column("Records", justify="right")
    for status, count in summary["counts"].items():
        table.add_row(status, str(count))
    console.print(table)

    console.print(
        f"\n[bold]Total:[/bold] {summary['total']}  "
        f"[bold]Geocoded:[/bold] {summary['geocoded']}  "
        f"[bold]With footprint:[/bold] {summary['with_geometry']}  "
        f"[bold]Match rate:[/bold] {summary['match_rate']:.1%}"
    )
    if summary["collisions"]:
        console.print(f"[yellow]{summary['collisions']} shared footprint(s), see `buildmap collisions`[/yellow]")


def print_collisions(collisions: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    console = console or Console()
    if not collisions:
        console.print("[green]No shared footprints[/green]")
        return

    table = Table(title="Shared Footprints")
    table.add_column("OSM object", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Ids")
    for collision in collisions:
        table.add_row(collision["osm"], str(collision["count"]), ", ".join(collision["ids"]))
    console.print(table)
