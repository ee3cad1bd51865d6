"""Tests for step retry backoff."""

import os
import random
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.retry import NO_DELAY, RetrySettings, calculate_backoff


class TestCalculateBackoff(unittest.TestCase):

    def test_exponential_without_jitter(self):
        settings = RetrySettings(backoff_base=0.5, backoff_max=30.0, jitter=0.0)
        delays = [calculate_backoff(i, settings) for i in range(4)]
        self.assertEqual(delays, [0.5, 1.0, 2.0, 4.0])

    def test_capped_at_max(self):
        settings = RetrySettings(backoff_base=1.0, backoff_max=5.0, jitter=0.0)
        self.assertEqual(calculate_backoff(10, settings), 5.0)

    def test_jitter_stays_in_range(self):
        settings = RetrySettings(backoff_base=1.0, backoff_max=30.0, jitter=0.2)
        rng = random.Random(7)
        for _ in range(200):
            delay = calculate_backoff(2, settings, rng)
            self.assertGreaterEqual(delay, 3.2)
            self.assertLessEqual(delay, 4.8)

    def test_jitter_never_exceeds_cap(self):
        settings = RetrySettings(backoff_base=10.0, backoff_max=10.0, jitter=0.5)
        rng = random.Random(1)
        for _ in range(100):
            self.assertLessEqual(calculate_backoff(0, settings, rng), 10.0)

    def test_seeded_rng_is_reproducible(self):
        settings = RetrySettings()
        a = [calculate_backoff(i, settings, random.Random(42)) for i in range(3)]
        b = [calculate_backoff(i, settings, random.Random(42)) for i in range(3)]
        self.assertEqual(a, b)

    def test_no_delay(self):
        self.assertEqual(calculate_backoff(5, NO_DELAY), 0.0)


class TestRetrySettingsFromConfig(unittest.TestCase):

    def test_reads_retry_section(self):
        config = {
            "retry.backoff_base_seconds": 2,
            "retry.backoff_max_seconds": 60,
            "retry.jitter": 0,
        }
        settings = RetrySettings.from_config(config)
        self.assertEqual(settings, RetrySettings(backoff_base=2.0, backoff_max=60.0, jitter=0.0))

    def test_defaults(self):
        self.assertEqual(RetrySettings.from_config({}), RetrySettings())


if __name__ == "__main__":
    unittest.main()
