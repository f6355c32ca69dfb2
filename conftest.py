"""
Pytest configuration for the LC-3 test suite.

    pytest                      # everything
    pytest -m "not exhaustive"  # skip the all-65536-values sweeps
"""

import os
import sys

# Flat layout: make the top-level modules importable without installing.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "exhaustive: sweeps every 16-bit value (a few seconds each)")
