"""Tests for the injectable clocks."""
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from api.services import clock as clock_module
from api.services.clock import AcceleratedClock, Clock, FixedClock, SystemClock, get_clock

pytestmark = pytest.mark.unit

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestClocks:

    def test_base_clock_is_abstract(self):
        with pytest.raises(TypeError):
            Clock()

    def test_system_clock_is_aware(self):
        assert SystemClock().now().tzinfo is not None

    def test_fixed_clock(self):
        clock = FixedClock(datetime(2024, 1, 1))
        assert clock.now() == BASE

        clock.advance(timedelta(hours=2))
        assert clock.now() == BASE + timedelta(hours=2)

        clock.set(BASE)
        assert clock.now() == BASE

    def test_accelerated_clock_runs_faster(self):
        with patch('api.services.clock.time.monotonic', side_effect=[100.0, 101.0]):
            clock = AcceleratedClock(factor=3600, base_time=BASE)
            assert clock.now() == BASE + timedelta(hours=1)

    def test_accelerated_clock_moves_forward(self):
        clock = AcceleratedClock(factor=1000, base_time=BASE)
        first = clock.now()
        time.sleep(0.01)
        assert clock.now() > first

    def test_rejects_non_positive_factor(self):
        with pytest.raises(ValueError):
            AcceleratedClock(factor=0)


class TestGetClock:
    """Process clock selection from settings."""

    def setup_method(self):
        clock_module._clock = None

    def teardown_method(self):
        clock_module._clock = None

    def test_default_is_system(self):
        with patch('api.services.clock.settings') as mock_settings:
            mock_settings.time_acceleration = 1.0
            mock_settings.time_base = None
            assert isinstance(get_clock(), SystemClock)

    def test_acceleration_from_settings(self):
        with patch('api.services.clock.settings') as mock_settings:
            mock_settings.time_acceleration = 60.0
            mock_settings.time_base = BASE
            clock = get_clock()

        assert isinstance(clock, AcceleratedClock)
        assert clock.factor == 60.0
        assert clock.base_time == BASE
        assert get_clock() is clock
