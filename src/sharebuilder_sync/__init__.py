"""Scrape accounts, positions and OFX transaction exports from ShareBuilder's web site."""

__version__ = "0.3.0"
