"""Adaptive article harvester: tiered scraping, extraction and enrichment."""

__version__ = "0.4.0"
