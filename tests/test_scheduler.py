"""
Tests for the daily scheduler.
"""

import unittest
from datetime import datetime, timedelta, timezone, tzinfo

from farol_analyzer.inference.scheduler import (
    Scheduler,
    format_duration,
    next_run_at,
    time_until_next_run,
)
from farol_analyzer.utils.result import Result

BRT = timezone(timedelta(hours=-3))


class ShiftingZone(tzinfo):
    """UTC-3 until 2024-11-03 00:00 local time, UTC-2 from then on."""

    def utcoffset(self, dt):
        if dt.replace(tzinfo=None) >= datetime(2024, 11, 3):
            return timedelta(hours=-2)
        return timedelta(hours=-3)

    def dst(self, dt):
        return self.utcoffset(dt) - timedelta(hours=-3)

    def tzname(self, dt):
        return "-02" if self.dst(dt) else "-03"


SHIFTING = ShiftingZone()


def fixed_clock(hour, minute=0):
    return lambda: datetime(2024, 6, 1, hour, minute, tzinfo=BRT)


class FakeOrchestrator:
    def __init__(self, on_run=None, error=None):
        self.runs = 0
        self.on_run = on_run
        self.error = error

    def run_with_retry(self):
        self.runs += 1
        if self.on_run is not None:
            self.on_run()
        if self.error is not None:
            raise self.error
        return Result.failure("CRAWLER_ERROR", "down")


class ScriptedEvent:
    """Stop event whose wait() times out `timeouts` times, then reports a stop."""

    def __init__(self, timeouts):
        self.timeouts = timeouts
        self.waits = []
        self._set = False

    def clear(self):
        self._set = False

    def set(self):
        self._set = True

    def is_set(self):
        return self._set

    def wait(self, timeout):
        self.waits.append(timeout)
        if len(self.waits) > self.timeouts:
            self._set = True
            return True
        return False


class TestScheduleMath(unittest.TestCase):
    def test_later_today(self):
        now = datetime(2024, 6, 1, 1, 30, tzinfo=BRT)
        self.assertEqual(time_until_next_run(now, 3, 0), timedelta(hours=1, minutes=30))

    def test_already_passed_is_tomorrow(self):
        now = datetime(2024, 6, 1, 4, 0, tzinfo=BRT)
        self.assertEqual(next_run_at(now, 3, 0), datetime(2024, 6, 2, 3, 0, tzinfo=BRT))
        self.assertEqual(time_until_next_run(now, 3, 0), timedelta(hours=23))

    def test_exact_time_is_tomorrow(self):
        now = datetime(2024, 6, 1, 3, 0, tzinfo=BRT)
        self.assertEqual(time_until_next_run(now, 3, 0), timedelta(days=1))

    def test_clock_change_keeps_wall_clock_trigger(self):
        """The day the clocks move forward, the wait is one hour shorter."""
        now = datetime(2024, 11, 2, 4, 0, tzinfo=SHIFTING)
        trigger = next_run_at(now, 3, 0)
        self.assertEqual((trigger.hour, trigger.minute), (3, 0))
        self.assertEqual(trigger.utcoffset(), timedelta(hours=-2))
        self.assertEqual(time_until_next_run(now, 3, 0), timedelta(hours=22))

    def test_default_clock_is_wall_clock(self):
        scheduler = Scheduler(FakeOrchestrator())
        self.assertIsNone(scheduler.clock().tzinfo)
        self.assertLessEqual(time_until_next_run(scheduler.clock(), 3, 0), timedelta(days=1, hours=1))

    def test_invalid_time(self):
        now = datetime(2024, 6, 1, 3, 0, tzinfo=BRT)
        with self.assertRaises(ValueError):
            time_until_next_run(now, 24, 0)
        with self.assertRaises(ValueError):
            time_until_next_run(now, 3, 60)

    def test_format_duration(self):
        self.assertEqual(format_duration(3 * 3600 + 5 * 60 + 10), "3h 5m")
        self.assertEqual(format_duration(12 * 60 + 59), "12m")
        self.assertEqual(format_duration(40.7), "40s")


class TestScheduler(unittest.TestCase):
    def test_rejects_invalid_time(self):
        with self.assertRaises(ValueError):
            Scheduler(FakeOrchestrator(), hour=25)

    def test_status_before_start(self):
        scheduler = Scheduler(FakeOrchestrator(), hour=3, minute=5, clock=fixed_clock(2))
        status = scheduler.get_status()
        self.assertEqual(status["scheduled_time"], "03:05")
        self.assertTrue(status["is_stopped"])
        self.assertFalse(status["is_running"])
        self.assertIsNone(status["next_run_in"])

    def test_run_immediately_then_stop(self):
        orchestrator = FakeOrchestrator()
        scheduler = Scheduler(orchestrator, clock=fixed_clock(2))
        orchestrator.on_run = scheduler.stop
        scheduler.start(run_immediately=True)
        self.assertEqual(orchestrator.runs, 1)
        self.assertTrue(scheduler.get_status()["is_stopped"])

    def test_waits_until_scheduled_time(self):
        orchestrator = FakeOrchestrator()
        scheduler = Scheduler(orchestrator, hour=3, clock=fixed_clock(2))
        event = ScriptedEvent(timeouts=1)
        scheduler._stop_event = event
        scheduler.start()
        self.assertEqual(event.waits, [3600.0, 3600.0])
        self.assertEqual(orchestrator.runs, 1)

    def test_status_while_waiting(self):
        statuses = []
        scheduler = Scheduler(FakeOrchestrator(), hour=3, clock=fixed_clock(2))

        class RecordingEvent(ScriptedEvent):
            def wait(self, timeout):
                statuses.append(scheduler.get_status())
                return super().wait(timeout)

        scheduler._stop_event = RecordingEvent(timeouts=0)
        scheduler.start()
        self.assertEqual(statuses[0]["next_run_in"], "1h 0m")
        self.assertFalse(statuses[0]["is_stopped"])

    def test_job_errors_do_not_escape(self):
        scheduler = Scheduler(FakeOrchestrator(error=RuntimeError("boom")), clock=fixed_clock(2))
        self.assertIsNone(scheduler.execute_job())
        self.assertFalse(scheduler.is_running)

    def test_overlapping_execution_is_skipped(self):
        nested = []
        orchestrator = FakeOrchestrator()
        scheduler = Scheduler(orchestrator, clock=fixed_clock(2))
        orchestrator.on_run = lambda: nested.append(scheduler.execute_job())
        result = scheduler.execute_job()
        self.assertFalse(result.ok)
        self.assertEqual(nested, [None])
        self.assertEqual(orchestrator.runs, 1)


if __name__ == "__main__":
    unittest.main()
