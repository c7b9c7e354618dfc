"""Unit tests for the timer controller and engine wiring."""

import pytest
from datetime import date, datetime

from hourflow.app import build_engine
from hourflow.config import DEFAULT_CONFIG
from hourflow.data.models import RecurringJob
from hourflow.data.session_store import SessionStore
from hourflow.errors import ConflictError, NotFoundError, TransientIOError
from hourflow.services.timer_service import TimerController, TimerState


@pytest.fixture
def timer(store, repo, notifier):
    return TimerController(store, clients=repo, notifier=notifier)


def invariant_holds(repo) -> bool:
    count = repo.count_active_sessions()
    marker = repo.get_active_timer()
    if count == 0:
        return not marker.is_running
    active = repo.get_active_session()
    return (count == 1 and marker.is_running
            and marker.session_id == active.id
            and marker.start_time == active.start_time)


class TestTimerController:
    def test_start_and_stop(self, timer, clients, clock, notifier):
        alice, _ = clients
        session = timer.start_timer(alice.id)
        assert timer.state == TimerState.RUNNING
        assert timer.is_running
        assert notifier.timer_updates == [("Alice Plumbing", 0)]

        clock.advance(minutes=25)
        assert timer.elapsed_seconds() == 25 * 60

        stopped = timer.stop_timer(notes="Leak fixed")
        assert stopped.id == session.id
        assert stopped.duration == 25 * 60
        assert stopped.notes == "Leak fixed"
        assert timer.state == TimerState.IDLE
        assert timer.get_active_timer() is None
        assert notifier.dismissed == 1

    def test_start_while_running_conflicts(self, timer, clients):
        alice, bob = clients
        timer.start_timer(alice.id)
        with pytest.raises(ConflictError) as info:
            timer.start_timer(bob.id)
        assert info.value.client_id == alice.id
        assert timer.get_active_timer().client_id == alice.id

    def test_stop_then_start_other_client(self, timer, clients, repo):
        alice, bob = clients
        timer.start_timer(alice.id)
        timer.stop_timer()
        timer.start_timer(bob.id)
        assert timer.get_active_timer().client_id == bob.id
        assert invariant_holds(repo)

    def test_switch_timer(self, timer, clients, clock, repo):
        alice, bob = clients
        first = timer.start_timer(alice.id)
        clock.advance(minutes=10)
        stopped, started = timer.switch_timer(bob.id)
        assert stopped.id == first.id
        assert stopped.duration == 600
        assert started.client_id == bob.id
        assert repo.count_active_sessions() == 1
        assert invariant_holds(repo)

    def test_start_unknown_client(self, timer):
        with pytest.raises(NotFoundError):
            timer.start_timer(404)
        assert timer.state == TimerState.IDLE

    def test_stop_when_idle_returns_none(self, timer, notifier):
        assert timer.stop_timer() is None
        assert notifier.dismissed == 0

    def test_stop_clears_memory_even_if_storage_fails(self, timer, clients, monkeypatch, notifier):
        alice, _ = clients
        timer.start_timer(alice.id)

        def failing_stop(session_id, notes=None):
            raise TransientIOError("disk full")

        monkeypatch.setattr(timer.store, "stop_session", failing_stop)
        with pytest.raises(TransientIOError):
            timer.stop_timer()
        assert timer.state == TimerState.IDLE
        assert timer.get_active_timer() is None
        assert notifier.dismissed == 1

    def test_stop_after_client_deleted_clears_marker(self, timer, clients, repo):
        alice, bob = clients
        timer.start_timer(alice.id)
        repo.delete_client(alice.id)  # cascades the running session away

        with pytest.raises(NotFoundError):
            timer.stop_timer()
        assert timer.state == TimerState.IDLE
        assert repo.get_active_timer().is_running is False

        session = timer.start_timer(bob.id)
        assert timer.get_active_timer().session_id == session.id
        assert invariant_holds(repo)

    def test_elapsed_is_zero_after_stop(self, timer, clients, clock):
        alice, _ = clients
        timer.start_timer(alice.id)
        clock.advance(minutes=3)
        timer.stop_timer()
        assert timer.elapsed_seconds() == 0

    def test_elapsed_survives_concurrent_stop(self, timer, clients, clock):
        alice, _ = clients
        timer.start_timer(alice.id)
        clock.advance(seconds=90)

        def clock_that_stops_midway():
            now = clock()
            timer._set_idle()
            return now

        timer.clock = clock_that_stops_midway
        assert timer.elapsed_seconds() == 90

    def test_stop_uses_marker_when_memory_is_idle(self, timer, store, clients, repo):
        alice, _ = clients
        session = store.start_session(alice.id)
        stopped = timer.stop_timer()
        assert stopped.id == session.id
        assert not stopped.is_active
        assert invariant_holds(repo)

    def test_manual_entry_while_running(self, timer, clients, repo):
        alice, bob = clients
        running = timer.start_timer(alice.id)
        entry = timer.create_manual_entry(bob.id, 1800, date(2025, 1, 20))
        assert entry.duration == 1800
        assert timer.get_active_timer().session_id == running.id
        assert invariant_holds(repo)

    def test_refresh_notification_reports_elapsed(self, timer, clients, clock, notifier):
        alice, _ = clients
        timer.start_timer(alice.id)
        clock.advance(seconds=61)
        timer.refresh_notification()
        assert notifier.timer_updates[-1] == ("Alice Plumbing", 61)

    def test_client_name_fallback(self, store, notifier):
        timer = TimerController(store, notifier=notifier)
        assert timer.client_name(7) == "Client 7"

    def test_invariant_after_many_operations(self, timer, clients, clock, repo):
        alice, bob = clients
        for client_id in (alice.id, bob.id, alice.id):
            timer.start_timer(client_id)
            assert invariant_holds(repo)
            clock.advance(minutes=5)
            timer.stop_timer()
            assert invariant_holds(repo)
        timer.switch_timer(bob.id)
        assert invariant_holds(repo)


class TestRecovery:
    def test_resumes_running_session(self, repo, store, clients, clock, notifier):
        alice, _ = clients
        session = store.start_session(alice.id)
        clock.advance(hours=1)

        restarted = TimerController(SessionStore(repo, clock=clock),
                                    clients=repo, notifier=notifier)
        snapshot = restarted.recover()
        assert snapshot.session_id == session.id
        assert snapshot.client_id == alice.id
        assert abs(snapshot.elapsed_seconds - 3600) <= 1
        assert restarted.state == TimerState.RUNNING
        # No new session was created
        assert len(repo.list_sessions_for_client(alice.id)) == 1
        assert notifier.timer_updates[-1][0] == "Alice Plumbing"

    def test_nothing_running(self, timer):
        assert timer.recover() is None
        assert timer.state == TimerState.IDLE

    def test_marker_without_session_is_cleared(self, timer, repo, clients, clock):
        alice, _ = clients
        repo.set_active_timer(alice.id, 999, clock.now)
        assert timer.recover() is None
        assert timer.state == TimerState.IDLE
        assert repo.get_active_timer().is_running is False
        assert invariant_holds(repo)

    def test_orphan_active_session_is_closed(self, timer, repo, clients, clock):
        alice, _ = clients
        orphan = repo.insert_session(alice.id, clock.now, clock.now.date(), is_active=True)
        clock.advance(minutes=3)
        assert timer.recover() is None
        assert repo.count_active_sessions() == 0
        assert repo.get_session(orphan).duration == 180
        assert invariant_holds(repo)

    def test_marker_pointing_at_other_session(self, timer, repo, clients, clock):
        alice, bob = clients
        active = repo.insert_session(alice.id, clock.now, clock.now.date(), is_active=True)
        repo.set_active_timer(bob.id, active + 1, clock.now)
        assert timer.recover() is None
        assert repo.count_active_sessions() == 0
        assert repo.get_active_timer().is_running is False

    def test_start_works_after_repair(self, timer, repo, clients, clock):
        alice, bob = clients
        repo.insert_session(alice.id, clock.now, clock.now.date(), is_active=True)
        timer.recover()
        session = timer.start_timer(bob.id)
        assert session.is_active
        assert invariant_holds(repo)


class TestEngine:
    def test_startup_recovers_and_runs_recurring_jobs(self, repo, clients, notifier):
        alice, _ = clients
        clock = lambda: datetime(2025, 1, 21, 18, 0)
        engine = build_engine(DEFAULT_CONFIG, repo=repo, notifier=notifier, clock=clock)
        engine.scheduler.create_job(RecurringJob(
            client_id=alice.id, title="Weekly service", frequency="weekly",
            day_of_week=2, duration_seconds=3600, start_date=date(2025, 1, 1),
        ))
        engine.startup()
        assert engine.monitor is None
        assert engine.timer.state == TimerState.IDLE
        assert len(repo.list_sessions_for_client(alice.id)) == 3
        engine.shutdown()
