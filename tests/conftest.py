"""Pytest configuration: make `subterm` and `tests.runtimes` importable from a checkout."""

import logging
import sys
from pathlib import Path

# Ensure the project root is in sys.path so helper modules under tests/ import as `tests.*`
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Lifecycle code logs at INFO on every provision/evict; keep failures readable.
logging.getLogger("subterm").setLevel(logging.WARNING)
