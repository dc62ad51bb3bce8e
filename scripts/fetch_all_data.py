#!/usr/bin/env python3
"""
Cron / CI entry point for the data pipeline.

Fetches every enabled source, regenerates public/data and the manifest, and
exits nonzero only when the whole run failed. In GitHub Actions the step
output ``changed`` tells the workflow whether to commit.

Usage:
    python scripts/fetch_all_data.py
    python scripts/fetch_all_data.py --only tech4palestine --log-level DEBUG
"""

import sys
from pathlib import Path

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pulsedata.pipeline.orchestrator import main  # noqa: E402

if __name__ == "__main__":
    main()
