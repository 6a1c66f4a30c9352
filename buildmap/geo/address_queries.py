"""
Address query generation.

Expands one canonical record into the ordered, deduplicated list of address
strings tried against the geocoder. Every query is a single address segment
(never the multi-segment "A 1 / B 2" form) and carries city/country context.

Usage:
    generator = AddressQueryGenerator(CityContext("Zagreb", "10000", "Croatia"))
    generator.generate(record)
    # ['Jurišićeva 1, 10000 Zagreb, Croatia',
    #  'Jurišićeva ulica 1, 10000 Zagreb, Croatia', ...]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..core.config import Settings
from ..core.models import CanonicalRecord
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SEGMENT_SEPARATOR = "/"

HOUSE_NUMBER_RE = re.compile(r"\b(\d+[A-Za-z]?)\b")
_WHITESPACE = re.compile(r"\s+")


def normalize_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def extract_house_number(address: str) -> Optional[str]:
    """First house number token ("10A", "29") of the street portion, lowercased."""
    match = HOUSE_NUMBER_RE.search(address.split(",")[0])
    return match.group(1).lower() if match else None


def _mentions(address: str, name: str) -> bool:
    if not name:
        return False
    return re.search(rf"\b{re.escape(name)}\b", address, re.IGNORECASE) is not None


@dataclass(frozen=True)
class CityContext:
    """Geographic grounding appended to queries that lack it."""

    city: str = "Zagreb"
    postcode: str = "10000"
    country: str = "Croatia"
    country_aliases: tuple[str, ...] = ("croatia", "hrvatska")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CityContext":
        return cls(
            city=settings.city_name,
            postcode=settings.city_postcode,
            country=settings.country_name,
            country_aliases=tuple(a.lower() for a in settings.country_aliases),
        )

    def apply(self, address: str) -> str:
        # Whole words only: "Zagrebačka cesta" does not name Zagreb
        has_city = _mentions(address, self.city)
        has_country = any(_mentions(address, name) for name in self.country_aliases + (self.country,))

        if not has_city and not has_country:
            prefix = f"{self.postcode} {self.city}".strip()
            return f"{address}, {prefix}, {self.country}"
        if has_city and not has_country:
            return f"{address}, {self.country}"
        return address


@dataclass(frozen=True)
class StreetWordRule:
    """
    Rule table for rewriting colloquial street names.

    Croatian streets are often written as a bare possessive adjective
    ("Jurišićeva 1") while OSM tags the full name ("Jurišićeva ulica").
    A single-word street name ending in one of ``adjectival_suffixes`` gets
    ``street_word`` inserted before the house number, unless it ends in one
    of ``noun_suffixes`` or is already a street-type word.
    """

    street_word: str = "ulica"
    adjectival_suffixes: tuple[str, ...] = ("eva", "ova", "ina", "ska", "ška", "čka", "ćka")
    noun_suffixes: tuple[str, ...] = ("ica", "nica", "ište", "ovina", "ština")
    street_type_words: frozenset[str] = field(default_factory=lambda: frozenset({
        "ulica", "ul.", "trg", "cesta", "avenija", "put", "prilaz", "šetalište",
        "stube", "obala", "odvojak", "vijenac", "naselje", "park", "perivoj",
        "nasip", "breg", "gaj", "poljana", "prolaz",
    }))

    def applies_to(self, street: str) -> bool:
        words = street.split()
        if len(words) != 1:
            return False
        word = words[0].lower()
        if word in self.street_type_words:
            return False
        if word.endswith(self.noun_suffixes):
            return False
        return word.endswith(self.adjectival_suffixes)

    def rewrite(self, address: str) -> Optional[str]:
        """Return the rewritten address, or None when the rule does not fire."""
        # Only the street portion counts; the postcode after the comma is not a house number
        match = HOUSE_NUMBER_RE.search(address.split(",")[0])
        if match is None:
            return None
        street = address[:match.start()].rstrip()
        if not self.applies_to(street):
            return None
        return f"{street} {self.street_word} {address[match.start():]}"


class AddressQueryGenerator:
    """Turns a CanonicalRecord into ordered geocoder queries."""

    def __init__(
        self,
        context: Optional[CityContext] = None,
        rule: Optional[StreetWordRule] = None,
        rewrite_street_names: bool = True,
    ):
        self.context = context or CityContext()
        self.rule = rule or StreetWordRule()
        self.rewrite_street_names = rewrite_street_names

    @classmethod
    def from_settings(cls, settings: Settings) -> "AddressQueryGenerator":
        return cls(
            context=CityContext.from_settings(settings),
            rewrite_street_names=settings.street_word_rewrite,
        )

    def generate(self, record: CanonicalRecord) -> list[str]:
        raw_address = record.address_raw or record.address
        segments = split_segments(raw_address)

        sources = [record.primary_address or choose_primary(segments)]
        sources.extend(part.normalized or part.raw for part in record.address_parts)
        sources.extend(segments)

        queries = []
        for source in sources:
            for segment in split_segments(source or ""):
                query = self.context.apply(segment)
                queries.append(query)
                if self.rewrite_street_names:
                    rewritten = self.rule.rewrite(query)
                    if rewritten:
                        queries.append(rewritten)

        unique = dedupe_casefold(queries)
        logger.debug(
            f"Generated {len(unique)} address queries",
            extra={"record_id": record.id},
        )
        return unique


def split_segments(address: str) -> list[str]:
    """Split a multi-segment address on '/' into clean, non-empty segments."""
    return [
        segment
        for segment in (normalize_whitespace(s) for s in address.split(SEGMENT_SEPARATOR))
        if segment
    ]


def choose_primary(segments: list[str]) -> str:
    """First segment carrying a house number, else the first segment."""
    for segment in segments:
        if extract_house_number(segment):
            return segment
    return segments[0] if segments else ""


def dedupe_casefold(values: Iterable[str]) -> list[str]:
    """Drop case-insensitive duplicates, keeping first-seen order."""
    seen = set()
    unique = []
    for value in values:
        key = value.casefold()
        if key in seen:
            continue
        seen.add(key)
        unique.append(value)
    return unique
