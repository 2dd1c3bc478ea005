import os
import sys
import unittest
from unittest import mock

BACKEND_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

import rate_limit  # noqa: E402
from rate_limit import FailureRateLimiter  # noqa: E402


class MemoryRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.limiter = FailureRateLimiter(window_sec=60, max_attempts=3, block_sec=120)

    def test_blocks_after_max_attempts(self):
        self.assertEqual(self.limiter.register_failure("1.2.3.4")["attempts"], 1)
        self.assertFalse(self.limiter.register_failure("1.2.3.4")["blocked"])
        third = self.limiter.register_failure("1.2.3.4")
        self.assertTrue(third["blocked"])
        self.assertEqual(third["retry_after"], 120)
        self.assertGreater(self.limiter.retry_after("1.2.3.4"), 0)
        self.assertEqual(self.limiter.retry_after("5.6.7.8"), 0)

    def test_clear_resets_failures(self):
        self.limiter.register_failure("1.2.3.4")
        self.limiter.register_failure("1.2.3.4")
        self.limiter.clear("1.2.3.4")
        self.assertFalse(self.limiter.register_failure("1.2.3.4")["blocked"])

    def test_failures_outside_window_are_forgotten(self):
        with mock.patch.object(rate_limit.time, "time", return_value=1000.0):
            self.limiter.register_failure("1.2.3.4")
            self.limiter.register_failure("1.2.3.4")
        with mock.patch.object(rate_limit.time, "time", return_value=1100.0):
            result = self.limiter.register_failure("1.2.3.4")
        self.assertFalse(result["blocked"])
        self.assertEqual(result["attempts"], 1)

    def test_block_expires(self):
        with mock.patch.object(rate_limit.time, "time", return_value=1000.0):
            for _ in range(3):
                self.limiter.register_failure("1.2.3.4")
            self.assertGreater(self.limiter.retry_after("1.2.3.4"), 0)
        with mock.patch.object(rate_limit.time, "time", return_value=1121.0):
            self.assertEqual(self.limiter.retry_after("1.2.3.4"), 0)

    def test_invalid_configuration(self):
        with self.assertRaises(RuntimeError):
            FailureRateLimiter(backend="memcached")
        with self.assertRaises(RuntimeError):
            FailureRateLimiter(max_attempts=0)
        with self.assertRaises(RuntimeError):
            FailureRateLimiter(key_prefix="")


if __name__ == "__main__":
    unittest.main(verbosity=2)
