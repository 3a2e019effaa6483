"""
Tests for the fixed-interval send throttle, driven by a fake clock.
"""

from django.test import SimpleTestCase

from newsletter.throttle import SendThrottle


class FakeClock:

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class SendThrottleTest(SimpleTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.throttle = SendThrottle(1.0, clock=self.clock, sleep=self.clock.sleep, poll_interval=0.25)

    def test_first_slot_is_immediate(self):
        self.assertTrue(self.throttle.wait())
        self.assertEqual(self.clock.sleeps, [])

    def test_consecutive_sends_are_spaced_by_interval(self):
        send_times = []
        for _ in range(10):
            self.assertTrue(self.throttle.wait())
            send_times.append(self.clock.now)

        self.assertGreaterEqual(send_times[-1] - send_times[0], 9 * 1.0)
        for earlier, later in zip(send_times, send_times[1:]):
            self.assertGreaterEqual(later - earlier, 1.0)

    def test_work_between_sends_counts_towards_interval(self):
        self.throttle.wait()
        self.clock.now += 0.75  # time spent sending
        self.throttle.wait()
        self.assertAlmostEqual(sum(self.clock.sleeps), 0.25)

    def test_batch_pause_does_not_shorten_next_interval(self):
        self.throttle.wait()
        first = self.clock.now
        self.throttle.pause(0.0)
        self.throttle.wait()
        self.assertGreaterEqual(self.clock.now - first, 1.0)

    def test_stop_predicate_interrupts_wait(self):
        self.throttle.wait()
        calls = []

        def should_stop():
            calls.append(self.clock.now)
            return len(calls) > 2

        self.assertFalse(self.throttle.wait(should_stop))
        self.assertLess(self.clock.now - 1000.0, 1.0)

    def test_stopped_wait_consumes_no_slot(self):
        self.assertFalse(self.throttle.wait(lambda: True))
        self.assertTrue(self.throttle.wait())
        self.assertEqual(self.clock.sleeps, [])

    def test_pause_sleeps_in_slices(self):
        self.assertTrue(self.throttle.pause(1.0))
        self.assertEqual(self.clock.sleeps, [0.25, 0.25, 0.25, 0.25])

    def test_zero_interval_never_sleeps(self):
        throttle = SendThrottle(0, clock=self.clock, sleep=self.clock.sleep)
        for _ in range(5):
            throttle.wait()
        self.assertEqual(self.clock.sleeps, [])

    def test_reset_forgets_last_slot(self):
        self.throttle.wait()
        self.throttle.reset()
        self.throttle.wait()
        self.assertEqual(self.clock.sleeps, [])
