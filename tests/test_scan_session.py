"""Scan session controller tests"""

import json
import os
import shutil
import sys
import tempfile
import threading
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scan_validation import DemandLine, OrderDemandSnapshot, ValidationReason
from stock_scanner import (
    FeedbackController,
    RepeatSuppressor,
    ScanOutcome,
    ScanSessionController,
    SessionState,
    StockScannerConfig,
)


def label(design="A", lot="L1", uid="U1"):
    return json.dumps({"Design": design, "Lot": lot, "Unique Identifier": uid})


def order_snapshot(max_qty=2):
    return OrderDemandSnapshot(lines=(DemandLine("A", "L1", max_qty),), order_id="o1", order_number=1)


class RecordingSource:
    """Scan source stand-in that records pause/resume calls."""

    def __init__(self, on_pause=None):
        self.calls = []
        self.on_pause = on_pause

    def pause(self):
        self.calls.append("pause")
        if self.on_pause:
            self.on_pause()

    def resume(self):
        self.calls.append("resume")


class RecordingFeedback:
    def __init__(self):
        self.outcomes = []

    def notify(self, outcome):
        self.outcomes.append(outcome)


class TestSessionLifecycle(unittest.TestCase):
    """start / clear / reset / close"""

    def setUp(self):
        self.controller = ScanSessionController(clock=lambda: 1000)

    def test_starts_idle_and_drops_scans(self):
        self.assertEqual(self.controller.state, SessionState.IDLE)
        self.assertIsNone(self.controller.handle_scan(label()))
        self.assertEqual(self.controller.events, ())

    def test_start_sets_id_and_awaits_scan(self):
        session_id = self.controller.start(order_snapshot())
        self.assertEqual(self.controller.session_id, session_id)
        self.assertEqual(self.controller.state, SessionState.AWAITING_SCAN)
        self.assertFalse(self.controller.is_custom)

    def test_start_without_snapshot_is_custom(self):
        self.controller.start(None)
        self.assertTrue(self.controller.is_custom)

    def test_clear_keeps_session_id(self):
        session_id = self.controller.start(None)
        self.controller.handle_scan(label(uid="U1"))
        self.controller.clear()
        self.assertEqual(self.controller.events, ())
        self.assertEqual(self.controller.session_id, session_id)
        self.assertEqual(self.controller.state, SessionState.AWAITING_SCAN)

    def test_reset_gives_new_session_id(self):
        old_id = self.controller.start(None)
        self.controller.handle_scan(label(uid="U1"))
        new_id = self.controller.reset()
        self.assertNotEqual(old_id, new_id)
        self.assertEqual(self.controller.session_id, new_id)
        self.assertEqual(self.controller.events, ())

    def test_cleared_item_can_be_scanned_again(self):
        self.controller.start(None)
        self.controller.handle_scan(label(uid="U1"))
        self.controller.clear()
        outcome = self.controller.handle_scan(label(uid="U1"))
        self.assertTrue(outcome.accepted)

    def test_close_stops_scanning_but_keeps_log(self):
        self.controller.start(None)
        self.controller.handle_scan(label(uid="U1"))
        self.controller.close()
        self.assertEqual(self.controller.state, SessionState.CLOSED)
        self.assertIsNone(self.controller.handle_scan(label(uid="U2")))
        self.assertEqual(len(self.controller.events), 1)

        self.controller.reopen()
        self.assertTrue(self.controller.handle_scan(label(uid="U2")).accepted)

    def test_events_is_a_fresh_snapshot(self):
        self.controller.start(None)
        before = self.controller.events
        self.controller.handle_scan(label(uid="U1"))
        self.assertEqual(before, ())
        self.assertEqual(len(self.controller.events), 1)


class TestHandleScan(unittest.TestCase):
    """Accept / reject paths"""

    def setUp(self):
        self.feedback = RecordingFeedback()
        self.controller = ScanSessionController(feedback=self.feedback, clock=lambda: 1234)
        self.controller.start(order_snapshot(max_qty=2))

    def test_accepts_and_appends_event(self):
        outcome = self.controller.handle_scan(label(uid="U1"))
        self.assertTrue(outcome.accepted)
        self.assertEqual(outcome.event.scanned_at, 1234)
        self.assertEqual(self.controller.events, (outcome.event,))
        self.assertEqual(self.controller.state, SessionState.AWAITING_SCAN)

    def test_scenario_quantity_and_duplicate(self):
        self.assertTrue(self.controller.handle_scan(label(uid="U1")).accepted)
        self.assertTrue(self.controller.handle_scan(label(uid="U2")).accepted)
        self.assertEqual(self.controller.handle_scan(label(uid="U3")).reason, ValidationReason.QUANTITY_EXCEEDED)
        self.assertEqual(self.controller.handle_scan(label(uid="U1")).reason, ValidationReason.DUPLICATE)
        self.assertEqual(len(self.controller.events), 2)

        lines = self.controller.aggregated
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].count, 2)

    def test_malformed_json(self):
        outcome = self.controller.handle_scan("hello")
        self.assertFalse(outcome.accepted)
        self.assertEqual(outcome.reason, ValidationReason.MALFORMED_FORMAT)
        self.assertEqual(self.controller.events, ())

    def test_missing_fields(self):
        outcome = self.controller.handle_scan(json.dumps({"Design": "A", "Lot": "L1"}))
        self.assertEqual(outcome.reason, ValidationReason.MALFORMED_FORMAT)

    def test_not_in_order(self):
        outcome = self.controller.handle_scan(label(design="B"))
        self.assertEqual(outcome.reason, ValidationReason.NOT_IN_ORDER)

    def test_feedback_gets_every_outcome(self):
        self.controller.handle_scan(label(uid="U1"))
        self.controller.handle_scan("bad")
        self.assertEqual([o.accepted for o in self.feedback.outcomes], [True, False])

    def test_feedback_failure_does_not_break_scan(self):
        class Broken:
            def notify(self, outcome):
                raise RuntimeError("buzzer unplugged")

        self.controller.feedback = Broken()
        outcome = self.controller.handle_scan(label(uid="U1"))
        self.assertTrue(outcome.accepted)

    def test_unexpected_error_is_rejected_and_gate_released(self):
        def broken_clock():
            raise RuntimeError("clock failure")

        self.controller._clock = broken_clock
        outcome = self.controller.handle_scan(label(uid="U1"))
        self.assertFalse(outcome.accepted)
        self.assertIsNone(outcome.reason)
        self.assertEqual(outcome.message, "clock failure")
        self.assertEqual(self.controller.state, SessionState.AWAITING_SCAN)

        self.controller._clock = lambda: 1
        self.assertTrue(self.controller.handle_scan(label(uid="U1")).accepted)

    def test_session_restarted_mid_scan_keeps_new_log_clean(self):
        other = OrderDemandSnapshot(lines=(DemandLine("B", "L9", 5),), order_id="o2", order_number=2)

        def clock_that_restarts():
            self.controller.start(other)
            return 1

        self.controller._clock = clock_that_restarts
        outcome = self.controller.handle_scan(label(uid="U1"))

        self.assertFalse(outcome.accepted)
        self.assertIsNone(outcome.reason)
        self.assertEqual(outcome.message, "Session changed while processing scan")
        self.assertEqual(self.controller.snapshot, other)
        self.assertEqual(self.controller.events, ())
        self.assertEqual(self.controller.state, SessionState.AWAITING_SCAN)

        self.controller._clock = lambda: 2
        self.assertTrue(self.controller.handle_scan(label(design="B", lot="L9", uid="U1")).accepted)

    def test_listener_sees_aggregated_lines(self):
        seen = []
        self.controller.add_listener(lambda lines: seen.append([(l.design, l.count) for l in lines]))
        self.controller.handle_scan(label(uid="U1"))
        self.controller.handle_scan("bad")
        self.controller.clear()
        self.assertEqual(seen, [[("A", 1)], []])

    def test_outcome_to_dict(self):
        out = self.controller.handle_scan(label(design="B")).to_dict()
        self.assertFalse(out["accepted"])
        self.assertEqual(out["reason"], "NotInOrder")


class TestPartiallyFulfilledOrder(unittest.TestCase):
    """Line with 3 ordered and 1 already shipped"""

    def test_two_more_allowed(self):
        snap = OrderDemandSnapshot(lines=(DemandLine("A", "L1", 3, fulfilled_quantity=1),))
        controller = ScanSessionController(clock=lambda: 1)
        controller.start(snap)

        self.assertTrue(controller.handle_scan(label(uid="U1")).accepted)
        self.assertTrue(controller.handle_scan(label(uid="U2")).accepted)
        self.assertEqual(controller.handle_scan(label(uid="U1")).reason, ValidationReason.DUPLICATE)
        outcome = controller.handle_scan(label(uid="U3"))
        self.assertEqual(outcome.reason, ValidationReason.QUANTITY_EXCEEDED)
        self.assertEqual(outcome.result.details, {"current": 2, "max": 2})

        lines = controller.aggregated
        self.assertEqual([(l.design, l.lot, l.count, l.unique_identifiers) for l in lines], [("A", "L1", 2, ["U1", "U2"])])

        controller.clear()
        self.assertEqual(controller.aggregated, [])


class TestReentrancyGate(unittest.TestCase):
    """Overlapping callbacks are dropped"""

    def setUp(self):
        self.controller = ScanSessionController(clock=lambda: 1)
        self.controller.start(order_snapshot(max_qty=1))

    def test_nested_callback_is_dropped(self):
        nested = []
        source = RecordingSource(on_pause=lambda: nested.append(self.controller.handle_scan(label(uid="U2"), source)))

        outcome = self.controller.handle_scan(label(uid="U1"), source)

        self.assertTrue(outcome.accepted)
        self.assertEqual(nested, [None])
        self.assertEqual(len(self.controller.events), 1)

    def test_rapid_same_label_appends_once(self):
        nested = []
        source = RecordingSource(on_pause=lambda: nested.append(self.controller.handle_scan(label(uid="U1"), source)))

        self.controller.handle_scan(label(uid="U1"), source)

        self.assertEqual(nested, [None])
        self.assertEqual([e.unique_identifier for e in self.controller.events], ["U1"])

    def test_pause_before_resume(self):
        source = RecordingSource()
        self.controller.handle_scan(label(uid="U1"), source)
        self.assertEqual(source.calls, ["pause", "resume"])

    def test_resume_after_rejection_and_error(self):
        source = RecordingSource()
        self.controller.handle_scan("garbage", source)

        def broken_clock():
            raise RuntimeError("boom")

        self.controller._clock = broken_clock
        self.controller.handle_scan(label(uid="U1"), source)
        self.assertEqual(source.calls, ["pause", "resume", "pause", "resume"])

    def test_concurrent_thread_is_dropped(self):
        entered = threading.Event()
        release = threading.Event()
        results = []

        def hold():
            entered.set()
            release.wait(5)

        worker = threading.Thread(
            target=lambda: results.append(self.controller.handle_scan(label(uid="U1"), RecordingSource(on_pause=hold)))
        )
        worker.start()
        self.assertTrue(entered.wait(5))
        self.assertEqual(self.controller.state, SessionState.PROCESSING)

        self.assertIsNone(self.controller.handle_scan(label(uid="U2")))

        release.set()
        worker.join(5)
        self.assertTrue(results[0].accepted)
        self.assertEqual(len(self.controller.events), 1)


class TestActivityLog(unittest.TestCase):
    """Session activity log export"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_export_log(self):
        controller = ScanSessionController(clock=lambda: 1)
        session_id = controller.start(None)
        controller.handle_scan(label(uid="U1"))
        controller.handle_scan(label(uid="U2", lot="L2"))

        path = controller.export_log(self.temp_dir)
        text = path.read_text(encoding="utf-8")

        self.assertTrue(path.name.startswith(f"scan-session-{session_id}"))
        self.assertIn("=== SESSION SUMMARY ===", text)
        self.assertIn(f"Session ID: {session_id}", text)
        self.assertIn("Total Items Scanned: 2", text)
        self.assertIn("Design/Lot Lines: 2", text)
        self.assertIn("=== DETAILED LOGS ===", text)
        self.assertIn("Scan successful", text)


class TestScannerHelpers(unittest.TestCase):
    """Config, repeat suppression and log-only feedback"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_config_created_with_defaults(self):
        path = os.path.join(self.temp_dir, "config.json")
        config = StockScannerConfig(path)
        self.assertTrue(os.path.exists(path))
        self.assertEqual(config.get("camera.device_id"), 0)
        self.assertEqual(config.get("api.base_url"), "")
        self.assertEqual(config.get("missing.key", "fallback"), "fallback")

    def test_config_loads_existing_file(self):
        path = os.path.join(self.temp_dir, "config.json")
        with open(path, "w") as f:
            json.dump({"api": {"base_url": "http://stock.local"}}, f)
        config = StockScannerConfig(path)
        self.assertEqual(config.get("api.base_url"), "http://stock.local")

    def test_repeat_suppressor(self):
        repeats = RepeatSuppressor(timeout=60)
        self.assertFalse(repeats.seen_recently("abc"))
        self.assertTrue(repeats.seen_recently("abc"))
        self.assertFalse(repeats.seen_recently("xyz"))

    def test_repeat_suppressor_expires(self):
        repeats = RepeatSuppressor(timeout=-1)
        self.assertFalse(repeats.seen_recently("abc"))
        self.assertFalse(repeats.seen_recently("abc"))

    def test_feedback_without_gpio(self):
        feedback = FeedbackController()
        feedback.enabled = False
        outcome = ScanOutcome(accepted=True, raw="x", message="ok")
        feedback.notify(outcome)
        self.assertIs(feedback.last_outcome, outcome)
        feedback.cleanup()


if __name__ == '__main__':
    unittest.main()
