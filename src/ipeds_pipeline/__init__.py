"""IPEDS pipeline package.

This package scrapes the NCES IPEDS Data Center, downloads the yearly
data and dictionary files, normalizes them and loads them into a DuckDB
database, then consolidates and validates the stored tables.
"""

__version__ = "0.3.0"
