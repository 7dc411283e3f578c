from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
for path in (REPO_ROOT, REPO_ROOT / "web"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
