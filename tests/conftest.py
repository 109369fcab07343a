import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.fakes import FakeEngine  # noqa: E402


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def unit_log_dir(tmp_path):
    path = tmp_path / "units"
    path.mkdir()
    return str(path)
