"""Ingest package for IPEDS data files.

This package scrapes the yearly listing pages, downloads the data and
dictionary files, normalizes them and loads them into the store.
"""
