"""Test suite for the IPEDS pipeline.

This package contains:
- Unit tests for individual modules
- Integration tests for complete update runs
"""
