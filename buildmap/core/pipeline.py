"""
Entity resolution pipeline.

Loads canonical records and overrides, then runs every record through
geocode resolution and footprint matching, strictly in input order.

Usage:
    records = load_records(Path("data/buildings_canonical.csv"))
    overrides = load_overrides(Path("data/overrides.csv"))

    pipeline = ResolutionPipeline.from_settings(settings)
    results = pipeline.run(records, overrides)
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pydantic
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ..geo.address_queries import AddressQueryGenerator
from ..geo.footprint_matcher import FootprintMatcher, MatcherConfig
from ..geo.geocoder import GeocodeResolver, GeocoderConfig
from ..ingest.nominatim import NominatimClient
from ..ingest.overpass import OverpassClient
from ..utils.logging_config import get_logger
from ..utils.validation import InputContractError, validate_record_fields
from .config import Settings
from .models import AddressPart, CanonicalRecord, FootprintResolution, GeocodeResolution, Override

logger = get_logger(__name__)


# =============================================================================
# INPUT LOADING
# =============================================================================


def read_rows(path: Path) -> Tuple[List[str], List[Dict[str, str]]]:
    """Read a CSV file into (columns, rows). Missing or unreadable files are fatal."""
    path = Path(path)
    if not path.exists():
        raise InputContractError(f"Input file not found: {path}", field="path")

    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            rows = [dict(row) for row in reader]
            columns = list(reader.fieldnames or [])
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise InputContractError(f"Cannot read {path}: {e}", field="path") from e

    return columns, rows


def _address_parts(value: str, line_no: int) -> tuple[AddressPart, ...]:
    if not value.strip():
        return ()
    try:
        items = json.loads(value)
    except json.JSONDecodeError as e:
        raise InputContractError(
            f"Row {line_no}: addresses_json is not valid JSON ({e.msg})",
            field="addresses_json",
        ) from e

    if not isinstance(items, list):
        raise InputContractError(f"Row {line_no}: addresses_json must be a list", field="addresses_json")

    parts = []
    for item in items:
        if isinstance(item, str):
            parts.append(AddressPart(raw=item))
        elif isinstance(item, dict):
            parts.append(AddressPart(
                raw=str(item.get("raw") or ""),
                normalized=str(item.get("normalized") or ""),
                street=str(item.get("street") or ""),
                house_number=str(item.get("house_number") or ""),
            ))
    return tuple(parts)


def records_from_rows(rows: List[Dict[str, str]], columns: List[str]) -> List[CanonicalRecord]:
    """Validate raw CSV rows and convert them into canonical records."""
    validate_record_fields(rows, columns)

    records = []
    for line_no, row in enumerate(rows, start=2):
        try:
            records.append(CanonicalRecord(
                id=row["id"],
                name=row["name"].strip(),
                address=row["address"].strip(),
                address_raw=(row.get("address_raw") or "").strip() or None,
                primary_address=(row.get("primary_address") or "").strip() or None,
                address_parts=_address_parts(row.get("addresses_json") or "", line_no),
            ))
        except pydantic.ValidationError as e:
            raise InputContractError(f"Row {line_no}: {e}", field="record") from e
    return records


def load_records(path: Path) -> List[CanonicalRecord]:
    columns, rows = read_rows(path)
    records = records_from_rows(rows, columns)
    logger.info(f"Loaded {len(records)} records from {path}")
    return records


def load_overrides(path: Optional[Path]) -> Dict[str, Override]:
    """
    Load manual footprint overrides keyed by record id.

    Accepts either ``building_id`` or ``record_id`` as the id column. Rows
    missing an id, type or object id are skipped. Rows naming a node or a
    non-integer id are skipped with a warning. A later row for the same
    record replaces an earlier one.
    """
    if path is None:
        return {}

    _columns, rows = read_rows(path)
    overrides: Dict[str, Override] = {}

    for line_no, row in enumerate(rows, start=2):
        record_id = (row.get("building_id") or row.get("record_id") or "").strip()
        osm_type = (row.get("osm_type") or "").strip().lower()
        osm_id = (row.get("osm_id") or "").strip()
        if not record_id or not osm_type or not osm_id:
            logger.debug(f"Skipping incomplete override row {line_no}")
            continue

        try:
            overrides[record_id] = Override(
                record_id=record_id,
                object_type=osm_type,
                object_id=int(osm_id),
                note=(row.get("note") or "").strip(),
            )
        except (ValueError, pydantic.ValidationError):
            logger.warning(
                f"Skipping override row {line_no}: expected osm_type way/relation and an integer osm_id",
                extra={"record_id": record_id},
            )

    logger.info(f"Loaded {len(overrides)} overrides from {path}")
    return overrides


# =============================================================================
# PIPELINE
# =============================================================================


@dataclass
class RecordResolution:
    """Everything the pipeline decided for one record."""

    record: CanonicalRecord
    geocode: GeocodeResolution
    footprint: FootprintResolution

    @property
    def record_id(self) -> str:
        return self.record.id


class ResolutionPipeline:
    """
    Sequential geocode + footprint resolution.

    One record at a time, in input order. A failure inside one record
    degrades that record's result and never aborts the run.
    """

    def __init__(
        self,
        resolver: GeocodeResolver,
        matcher: FootprintMatcher,
        console: Optional[Console] = None,
        show_progress: bool = False,
    ):
        self.resolver = resolver
        self.matcher = matcher
        self.console = console or Console()
        self.show_progress = show_progress

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        console: Optional[Console] = None,
        show_progress: bool = True,
    ) -> "ResolutionPipeline":
        settings.ensure_dirs()
        resolver = GeocodeResolver(
            NominatimClient.from_settings(settings),
            AddressQueryGenerator.from_settings(settings),
            GeocoderConfig.from_settings(settings),
        )
        matcher = FootprintMatcher(
            OverpassClient.from_settings(settings),
            MatcherConfig.from_settings(settings),
        )
        return cls(resolver, matcher, console=console, show_progress=show_progress)

    def resolve_one(self, record: CanonicalRecord, override: Optional[Override] = None) -> RecordResolution:
        geocode = self.resolver.resolve(record)
        footprint = self.matcher.match(record, geocode, override)
        return RecordResolution(record=record, geocode=geocode, footprint=footprint)

    def run(
        self,
        records: List[CanonicalRecord],
        overrides: Optional[Dict[str, Override]] = None,
    ) -> List[RecordResolution]:
        overrides = overrides or {}
        unknown = sorted(set(overrides) - {r.id for r in records})
        if unknown:
            logger.warning(f"Overrides for unknown record ids ignored: {', '.join(unknown)}")

        if not self.show_progress:
            return [self.resolve_one(r, overrides.get(r.id)) for r in records]

        results = []
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=self.console,
        ) as progress:
            task = progress.add_task("Resolving buildings...", total=len(records))
            for record in records:
                progress.update(task, description=f"Resolving {record.id}")
                results.append(self.resolve_one(record, overrides.get(record.id)))
                progress.advance(task)
        return results
