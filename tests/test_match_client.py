import threading
import unittest

from match_client import END_REASON_TIMEOUT, MatchClientController, Phase
from match_engine import MatchStatus, MatchStoreError
from match_fakes import FakeBackend, ManualScheduler, make_match, unavailable


class MatchClientControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.scheduler = ManualScheduler()

    def _controller(self, backend: FakeBackend, **kwargs) -> MatchClientController:
        ctl = MatchClientController(backend, scheduler=self.scheduler, **kwargs)
        self.addCleanup(ctl.stop)
        return ctl

    def test_immediate_pairing_skips_polling(self) -> None:
        backend = FakeBackend([make_match("m1", "matched")])
        ctl = self._controller(backend)

        self.assertTrue(ctl.start("u1", want="any"))

        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertEqual(ctl.match.id, "m1")
        self.assertEqual(len(backend.lookup_calls), 1)
        self.assertEqual(self.scheduler.pending(), 0)
        self.assertEqual(backend.subscribe_calls, ["m1"])
        self.assertEqual(backend.dequeue_calls, ["u1"])

    def test_delayed_pairing_found_by_poll(self) -> None:
        backend = FakeBackend([None, None, make_match("m2", "matched")])
        ctl = self._controller(backend)

        ctl.start("u1", want="any")
        self.assertEqual(ctl.phase, Phase.QUEUE)
        self.assertIsNone(ctl.match)

        self.scheduler.advance(2)
        self.assertEqual(ctl.phase, Phase.QUEUE)
        self.scheduler.advance(1.9)
        self.assertEqual(ctl.phase, Phase.QUEUE)

        self.scheduler.advance(0.1)
        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertEqual(ctl.match.id, "m2")
        self.assertEqual(len(backend.lookup_calls), 3)

        self.scheduler.advance(10)
        self.assertEqual(len(backend.lookup_calls), 3)
        self.assertEqual(self.scheduler.pending(), 0)

    def test_connect_then_end(self) -> None:
        backend = FakeBackend([make_match("m3", "matched")])
        ctl = self._controller(backend)
        ctl.start("u1")
        self.assertEqual(ctl.phase, Phase.MATCHED)

        backend.emit(make_match("m3", "connected"))
        self.assertEqual(ctl.phase, Phase.CONNECTED)
        self.assertEqual(ctl.match.status.value, "connected")

        backend.emit(make_match("m3", "ended"))
        self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, "ended")
        self.assertEqual(backend.active_subscriptions, 0)

    def test_terminal_phase_ignores_later_events(self) -> None:
        backend = FakeBackend([make_match("m4", "connected")])
        ctl = self._controller(backend)
        ctl.start("u1")
        self.assertEqual(ctl.phase, Phase.CONNECTED)

        backend.emit(make_match("m4", "cancelled"))
        self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, "cancelled")

        # Delivered straight to the callback, as a late feed message would be.
        for status in ("connected", "matched", "ended", "waiting"):
            ctl._on_match_change(make_match("m4", status))
            self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, "cancelled")

    def test_status_mapping_from_matched(self) -> None:
        expected = {
            "waiting": Phase.MATCHED,
            "matched": Phase.MATCHED,
            "connected": Phase.CONNECTED,
            "ended": Phase.ENDED,
            "cancelled": Phase.ENDED,
        }
        for status, phase in expected.items():
            with self.subTest(status=status):
                backend = FakeBackend([make_match("m5", "matched")])
                ctl = self._controller(backend)
                ctl.start("u1")
                backend.emit(make_match("m5", status))
                self.assertEqual(ctl.phase, phase)
                self.assertEqual(ctl.match.status.value, status)

    def test_events_for_other_matches_are_ignored(self) -> None:
        backend = FakeBackend([make_match("m6", "matched")])
        ctl = self._controller(backend)
        ctl.start("u1")

        ctl._on_match_change(make_match("other", "ended"))
        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertEqual(ctl.match.id, "m6")

    def test_second_start_does_not_resubmit(self) -> None:
        backend = FakeBackend()
        ctl = self._controller(backend)

        self.assertTrue(ctl.start("u1"))
        self.assertFalse(ctl.start("u1"))
        self.assertFalse(ctl.start("someone-else"))

        self.assertEqual(len(backend.enqueue_calls), 1)
        self.assertEqual(ctl.user_id, "u1")

    def test_racing_lookups_wire_a_single_subscription(self) -> None:
        backend = FakeBackend([None], default_lookup=make_match("m7", "matched"))
        ctl = self._controller(backend)
        ctl.start("u1")

        # A second tick lands while the first tick's lookup is still in flight.
        backend.on_lookup = ctl._poll_tick
        self.scheduler.advance(2)

        self.assertEqual(len(backend.lookup_calls), 3)
        self.assertEqual(backend.subscribe_calls, ["m7"])
        self.assertEqual(backend.active_subscriptions, 1)
        self.assertEqual(ctl.phase, Phase.MATCHED)

    def test_stop_cancels_polling_and_withdraws_entry(self) -> None:
        backend = FakeBackend()
        ctl = self._controller(backend)
        ctl.start("u1")
        self.scheduler.advance(2)
        lookups = len(backend.lookup_calls)

        ctl.stop()
        self.scheduler.advance(20)

        self.assertEqual(len(backend.lookup_calls), lookups)
        self.assertEqual(backend.dequeue_calls, ["u1"])
        self.assertEqual(ctl.phase, Phase.QUEUE)
        self.assertEqual(self.scheduler.pending(), 0)

    def test_stop_releases_subscription_and_ignores_events(self) -> None:
        backend = FakeBackend([make_match("m8", "matched")])
        ctl = self._controller(backend)
        ctl.start("u1")

        ctl.stop()
        ctl.stop()
        backend.emit(make_match("m8", "connected"))
        ctl._on_match_change(make_match("m8", "connected"))

        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertEqual(backend.active_subscriptions, 0)
        self.assertEqual(backend.unsubscribe_calls, 1)
        # Only the withdrawal that follows wiring an existing match.
        self.assertEqual(backend.dequeue_calls, ["u1"])

    def test_stop_before_start_is_safe(self) -> None:
        backend = FakeBackend()
        ctl = self._controller(backend)
        ctl.stop()

        self.assertFalse(ctl.start("u1"))
        self.assertEqual(ctl.phase, Phase.IDLE)
        self.assertEqual(backend.enqueue_calls, [])

    def test_context_manager_stops_on_exit(self) -> None:
        backend = FakeBackend()
        with MatchClientController(backend, scheduler=self.scheduler) as ctl:
            ctl.start("u1")
        self.assertTrue(ctl.closed)
        self.assertEqual(backend.dequeue_calls, ["u1"])
        self.assertEqual(self.scheduler.pending(), 0)

    def test_submission_failure_propagates_and_returns_to_idle(self) -> None:
        backend = FakeBackend()
        backend.enqueue_error = MatchStoreError("enqueue_failed")
        ctl = self._controller(backend)

        with self.assertRaises(MatchStoreError):
            ctl.start("u1")

        self.assertEqual(ctl.phase, Phase.IDLE)
        self.assertEqual(backend.lookup_calls, [])
        self.assertEqual(self.scheduler.pending(), 0)

    def test_initial_lookup_failure_is_not_retried(self) -> None:
        backend = FakeBackend([MatchStoreError("lookup_failed")])
        ctl = self._controller(backend)

        with self.assertRaises(MatchStoreError):
            ctl.start("u1")

        self.assertEqual(ctl.phase, Phase.IDLE)
        self.assertEqual(backend.dequeue_calls, ["u1"])
        self.scheduler.advance(10)
        self.assertEqual(len(backend.lookup_calls), 1)

    def test_poll_errors_are_absorbed(self) -> None:
        backend = FakeBackend(
            [None, MatchStoreError("timeout"), ValueError("malformed"), make_match("m9", "matched")]
        )
        ctl = self._controller(backend)
        ctl.start("u1")

        self.scheduler.advance(4)
        self.assertEqual(ctl.phase, Phase.QUEUE)
        self.scheduler.advance(2)
        self.assertEqual(ctl.phase, Phase.MATCHED)

    def test_subscription_failure_falls_back_to_polling_the_match(self) -> None:
        backend = FakeBackend([make_match("m10", "matched")])
        backend.subscribe_error = unavailable()
        backend.get_match_results = [
            MatchStoreError("flaky"),
            make_match("m10", "matched"),
            make_match("m10", "connected"),
            make_match("m10", "ended"),
        ]
        ctl = self._controller(backend)
        ctl.start("u1")
        self.assertEqual(ctl.phase, Phase.MATCHED)

        self.scheduler.advance(4)
        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.scheduler.advance(2)
        self.assertEqual(ctl.phase, Phase.CONNECTED)
        self.scheduler.advance(2)
        self.assertEqual(ctl.phase, Phase.ENDED)

        self.scheduler.advance(10)
        self.assertEqual(len(backend.get_match_calls), 4)

    def test_timeout_ends_session_and_withdraws_entry(self) -> None:
        backend = FakeBackend()
        ctl = self._controller(backend, timeout_seconds=5)
        ctl.start("u1")

        self.scheduler.advance(4.9)
        self.assertEqual(ctl.phase, Phase.QUEUE)
        self.scheduler.advance(0.1)

        self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, END_REASON_TIMEOUT)
        self.assertEqual(backend.dequeue_calls, ["u1"])
        lookups = len(backend.lookup_calls)
        self.scheduler.advance(10)
        self.assertEqual(len(backend.lookup_calls), lookups)

        ctl.stop()
        self.assertEqual(backend.dequeue_calls, ["u1"])

    def test_match_before_timeout_cancels_timer(self) -> None:
        backend = FakeBackend([None, make_match("m11", "matched")])
        ctl = self._controller(backend, timeout_seconds=5)
        ctl.start("u1")

        self.scheduler.advance(10)
        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertIsNone(ctl.end_reason)
        self.assertEqual(backend.dequeue_calls, [])

    def test_mark_connecting_then_connected(self) -> None:
        backend = FakeBackend([make_match("m12", "matched")])
        ctl = self._controller(backend)
        self.assertFalse(ctl.mark_connecting())
        ctl.start("u1")

        self.assertTrue(ctl.mark_connecting())
        self.assertEqual(ctl.phase, Phase.CONNECTING)
        self.assertFalse(ctl.mark_connecting())

        backend.emit(make_match("m12", "matched"))
        self.assertEqual(ctl.phase, Phase.CONNECTING)
        backend.emit(make_match("m12", "connected"))
        self.assertEqual(ctl.phase, Phase.CONNECTED)

    def test_listeners_see_each_transition(self) -> None:
        backend = FakeBackend([None, make_match("m13", "matched")])
        ctl = self._controller(backend)
        seen = []
        remove = ctl.add_listener(lambda phase, match: seen.append(phase))

        ctl.start("u1")
        self.scheduler.advance(2)
        backend.emit(make_match("m13", "connected"))
        remove()
        backend.emit(make_match("m13", "ended"))

        self.assertEqual(seen, [Phase.QUEUE, Phase.MATCHED, Phase.CONNECTED])
        self.assertEqual(ctl.phase, Phase.ENDED)

    def test_change_written_before_subscribing_is_applied(self) -> None:
        backend = FakeBackend([make_match("m14", "matched")])
        backend.get_match_results = [make_match("m14", "cancelled")]
        ctl = self._controller(backend)

        ctl.start("u1")

        self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, "cancelled")
        self.assertEqual(backend.get_match_calls, ["m14"])
        self.assertEqual(backend.active_subscriptions, 0)

    def test_stale_reread_does_not_rewind_the_match(self) -> None:
        backend = FakeBackend([make_match("m15", "connected")])
        backend.get_match_results = [make_match("m15", "matched")]
        ctl = self._controller(backend)

        ctl.start("u1")

        self.assertEqual(ctl.phase, Phase.CONNECTED)
        self.assertEqual(ctl.match.status, MatchStatus.CONNECTED)

    def test_failed_reread_falls_back_to_polling_the_match(self) -> None:
        backend = FakeBackend([make_match("m16", "matched")])
        backend.get_match_results = [MatchStoreError("flaky"), make_match("m16", "connected")]
        ctl = self._controller(backend)

        ctl.start("u1")
        self.assertEqual(ctl.phase, Phase.MATCHED)
        self.assertEqual(self.scheduler.pending(), 1)

        self.scheduler.advance(2)
        self.assertEqual(ctl.phase, Phase.CONNECTED)

    def test_timeout_cancels_a_pairing_it_never_saw(self) -> None:
        backend = FakeBackend([None], default_lookup=make_match("m17", "matched"))
        backend.dequeue_result = None
        ctl = self._controller(backend, poll_interval_seconds=10, timeout_seconds=3)
        ctl.start("u1")

        self.scheduler.advance(3)

        self.assertEqual(ctl.phase, Phase.ENDED)
        self.assertEqual(ctl.end_reason, END_REASON_TIMEOUT)
        self.assertEqual(backend.status_updates, [("m17", MatchStatus.CANCELLED, "u1")])
        self.assertEqual(backend.subscribe_calls, [])

    def test_stop_cancels_a_pairing_it_never_saw(self) -> None:
        backend = FakeBackend([None], default_lookup=make_match("m18", "matched"))
        backend.dequeue_result = None
        ctl = self._controller(backend)
        ctl.start("u1")

        ctl.stop()

        self.assertEqual(backend.status_updates, [("m18", MatchStatus.CANCELLED, "u1")])

    def test_stop_without_entry_or_match_changes_nothing(self) -> None:
        backend = FakeBackend()
        backend.dequeue_result = None
        ctl = self._controller(backend)
        ctl.start("u1")

        ctl.stop()

        self.assertEqual(backend.dequeue_calls, ["u1"])
        self.assertEqual(backend.status_updates, [])

    def test_listeners_run_without_holding_the_controller(self) -> None:
        backend = FakeBackend([make_match("m19", "matched")])
        ctl = self._controller(backend)
        results = []
        seen = []

        def on_phase(phase: Phase, _match) -> None:
            seen.append(phase)
            if phase is Phase.MATCHED:
                worker = threading.Thread(target=lambda: results.append(ctl.mark_connecting()))
                worker.start()
                worker.join(timeout=2)
                results.append(worker.is_alive())

        ctl.add_listener(on_phase)
        ctl.start("u1")

        self.assertEqual(results, [True, False])
        self.assertEqual(seen, [Phase.QUEUE, Phase.MATCHED, Phase.CONNECTING])
        self.assertEqual(ctl.phase, Phase.CONNECTING)

    def test_listener_events_keep_transition_order(self) -> None:
        backend = FakeBackend([make_match("m20", "matched")])
        ctl = self._controller(backend)
        seen = []

        def on_phase(phase: Phase, _match) -> None:
            seen.append(phase)
            if phase is Phase.MATCHED:
                ctl.mark_connecting()
                seen.append("after_mark")

        ctl.add_listener(on_phase)
        ctl.start("u1")

        self.assertEqual(seen, [Phase.QUEUE, Phase.MATCHED, "after_mark", Phase.CONNECTING])

    def test_empty_user_id_is_rejected(self) -> None:
        ctl = self._controller(FakeBackend())
        with self.assertRaises(ValueError):
            ctl.start("   ")
        self.assertEqual(ctl.phase, Phase.IDLE)


if __name__ == "__main__":
    unittest.main()
