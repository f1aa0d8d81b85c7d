"""Pytest configuration for all tests.

Modules are imported as ``src.connector...``; pyproject.toml puts the
repository root on the path.
"""
