import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.config import Settings  # noqa: E402
from tests.test_helpers import FakeExchange, RecordingSink, make_candles  # noqa: E402


@pytest.fixture
def config(tmp_path):
    return Settings(_env_file=None, data_dir=str(tmp_path), trading_mode="paper")


@pytest.fixture
def candle_factory():
    return make_candles


@pytest.fixture
def fake_exchange():
    return FakeExchange(make_candles([1.0] * 60))


@pytest.fixture
def sink():
    return RecordingSink()
