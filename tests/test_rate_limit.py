"""
Sliding window rate limiter tests.
"""

import unittest

from mydata_ca import RateLimiter


class TestRateLimiter(unittest.TestCase):

    def test_admits_up_to_limit(self):
        limiter = RateLimiter(rpm=3)
        results = [limiter.check("client-1", now=100.0 + i) for i in range(4)]
        self.assertEqual([r.allowed for r in results], [True, True, True, False])
        self.assertEqual([r.remaining for r in results], [2, 1, 0, 0])
        self.assertAlmostEqual(results[3].retry_after, 57.0)

    def test_window_slides(self):
        limiter = RateLimiter(rpm=2)
        self.assertTrue(limiter.allow("k", now=0.0))
        self.assertTrue(limiter.allow("k", now=30.0))
        self.assertFalse(limiter.allow("k", now=59.0))
        self.assertTrue(limiter.allow("k", now=60.0))

    def test_refused_requests_not_recorded(self):
        limiter = RateLimiter(rpm=1)
        limiter.check("k", now=0.0)
        for t in (10.0, 20.0, 30.0):
            self.assertFalse(limiter.allow("k", now=t))
        self.assertTrue(limiter.allow("k", now=60.5))

    def test_keys_independent(self):
        limiter = RateLimiter(rpm=1)
        self.assertTrue(limiter.allow("a", now=0.0))
        self.assertTrue(limiter.allow("b", now=0.0))
        self.assertFalse(limiter.allow("a", now=1.0))

    def test_hit_counts_everything(self):
        limiter = RateLimiter(rpm=1)
        counts = [limiter.hit("k", now=float(i)) for i in range(5)]
        self.assertEqual(counts, [1, 2, 3, 4, 5])
        self.assertEqual(limiter.hit("k", now=61.5), 4)

    def test_minimum_limit(self):
        self.assertEqual(RateLimiter(rpm=0).limit, 1)

    def test_stats_and_reset(self):
        limiter = RateLimiter(rpm=5)
        limiter.check("k")
        limiter.check("k")
        stats = limiter.get_stats("k")
        self.assertEqual(stats["current"], 2)
        self.assertEqual(stats["remaining"], 3)
        self.assertEqual(stats["window_seconds"], 60)

        limiter.reset("k")
        self.assertEqual(limiter.get_stats("k")["current"], 0)
        limiter.check("a")
        limiter.reset()
        self.assertEqual(limiter.get_stats("a")["current"], 0)
        self.assertEqual(limiter.tracked_keys(), 0)

    def test_idle_keys_evicted(self):
        limiter = RateLimiter(rpm=1)
        for i in range(5000):
            limiter.check(f"client-{i}", now=0.0)
        self.assertEqual(limiter.tracked_keys(), 5000)
        self.assertTrue(limiter.allow("late", now=10000.0))
        self.assertEqual(limiter.tracked_keys(), 1)

    def test_cleanup_expired(self):
        limiter = RateLimiter(rpm=5)
        limiter.hit("a", now=0.0)
        limiter.hit("a", now=1.0)
        limiter.hit("b", now=30.0)
        self.assertEqual(limiter.cleanup_expired(now=61.0), 2)
        self.assertEqual(limiter.tracked_keys(), 1)
        self.assertEqual(limiter.cleanup_expired(now=200.0), 1)
        self.assertEqual(limiter.tracked_keys(), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
