import sys
from pathlib import Path

import pytest

# Tests import the top-level packages directly from the repository root.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

_ISOLATED_ENV = (
    "BPM_ADMIN_BASIC_AUTH_USER",
    "BPM_ADMIN_BASIC_AUTH_PASS",
    "BPM_TRUST_PROXY",
    "BPM_CACHE_TTL_DAYS",
    "BPM_DB_PATH",
    "MUSO_API_KEY",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
