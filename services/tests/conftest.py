"""
Top-level test configuration for Berth.
"""

import os

# Ensure test-friendly defaults
os.environ.setdefault("BERTH_JSON_LOGS", "false")
os.environ.setdefault("BERTH_LOG_LEVEL", "DEBUG")
os.environ.setdefault("BERTH_ENCRYPTION_KEY", "")
