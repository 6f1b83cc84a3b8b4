"""Pytest configuration shared across all test modules.

This file is automatically loaded by pytest before running any tests, so the
environment below is in place before ``app.core.config`` builds settings.
"""

import os

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ALPHAVANTAGE_API_KEY", "test-alpha-key")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("CACHE_ENABLED", "true")
os.environ.setdefault("CACHE_PERSISTENCE_ENABLED", "false")
