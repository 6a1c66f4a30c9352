"""Buildmap - building entity resolution against Nominatim and Overpass."""

__version__ = "0.1.0"
