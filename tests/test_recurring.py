"""Tests for recurrence math, occurrence generation and processing."""

import sqlite3

import pytest
from datetime import date, timedelta

from hourflow.data.models import RecurringJob
from hourflow.errors import NotFoundError, TransientIOError
from hourflow.services.recurrence import (
    compute_due_dates, due_window, next_due_date, seconds_to_hours,
    validate_job, weekday_index,
)
from hourflow.services.recurring_service import (
    RecurringJobProcessor, RecurringJobScheduler,
)

TUESDAY = 2


def make_job(**overrides) -> RecurringJob:
    fields = dict(
        client_id=1, title="Office cleaning", frequency="weekly",
        day_of_week=TUESDAY, duration_seconds=2 * 3600,
        start_date=date(2025, 1, 1),
    )
    fields.update(overrides)
    return RecurringJob(**fields)


@pytest.fixture
def scheduler(repo, clock):
    return RecurringJobScheduler(repo, clock=clock)


@pytest.fixture
def processor(repo, store, scheduler):
    return RecurringJobProcessor(repo, store, scheduler)


# ── Pure recurrence math ───────────────────────────────────────────────────


class TestRecurrence:
    def test_weekday_index_is_sunday_based(self):
        assert weekday_index(date(2025, 1, 5)) == 0   # Sunday
        assert weekday_index(date(2025, 1, 7)) == 2   # Tuesday
        assert weekday_index(date(2025, 1, 11)) == 6  # Saturday

    def test_weekly_dates(self):
        job = make_job()
        dates = compute_due_dates(job, date(2025, 1, 1), date(2025, 1, 21))
        assert dates == [date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21)]

    def test_weekly_continues_after_watermark(self):
        job = make_job(last_generated_date=date(2025, 1, 21))
        start, end = due_window(job, date(2025, 2, 4))
        assert start == date(2025, 1, 22)
        assert compute_due_dates(job, start, end) == [date(2025, 1, 28), date(2025, 2, 4)]

    def test_biweekly_anchored_on_start_date(self):
        job = make_job(frequency="biweekly")
        dates = compute_due_dates(job, date(2025, 1, 1), date(2025, 2, 28))
        assert dates == [date(2025, 1, 7), date(2025, 1, 21),
                         date(2025, 2, 4), date(2025, 2, 18)]

    def test_biweekly_keeps_cadence_across_runs(self):
        job = make_job(frequency="biweekly", last_generated_date=date(2025, 1, 7))
        start, end = due_window(job, date(2025, 2, 4))
        assert compute_due_dates(job, start, end) == [date(2025, 1, 21), date(2025, 2, 4)]

    def test_monthly_clamps_to_month_end(self):
        job = make_job(frequency="monthly", day_of_month=31)
        dates = compute_due_dates(job, date(2025, 1, 1), date(2025, 4, 30))
        assert dates == [date(2025, 1, 31), date(2025, 2, 28),
                         date(2025, 3, 31), date(2025, 4, 30)]

    def test_monthly_leap_year(self):
        job = make_job(frequency="monthly", day_of_month=30, start_date=date(2024, 2, 1))
        assert compute_due_dates(job, date(2024, 2, 1), date(2024, 2, 29)) == [date(2024, 2, 29)]

    def test_monthly_day_already_passed_moves_to_next_month(self):
        job = make_job(frequency="monthly", day_of_month=5, start_date=date(2025, 1, 10))
        dates = compute_due_dates(job, date(2025, 1, 10), date(2025, 3, 1))
        assert dates == [date(2025, 2, 5)]

    def test_end_date_is_inclusive(self):
        job = make_job(end_date=date(2025, 1, 14))
        dates = compute_due_dates(job, date(2025, 1, 1), date(2025, 3, 1))
        assert dates == [date(2025, 1, 7), date(2025, 1, 14)]

    def test_limit_caps_result(self):
        job = make_job(start_date=date(2000, 1, 1))
        dates = compute_due_dates(job, date(2000, 1, 1), date(2025, 1, 21))
        assert len(dates) == 100
        assert dates == sorted(dates)

    def test_empty_window(self):
        job = make_job(start_date=date(2025, 2, 1))
        start, end = due_window(job, date(2025, 1, 21))
        assert compute_due_dates(job, start, end) == []

    def test_next_due_date(self):
        job = make_job(last_generated_date=date(2025, 1, 21))
        assert next_due_date(job, date(2025, 1, 21)) == date(2025, 1, 28)
        assert next_due_date(make_job(), date(2024, 12, 1)) == date(2025, 1, 7)

    @pytest.mark.parametrize("overrides", [
        {"frequency": "daily"},
        {"day_of_week": 7},
        {"frequency": "monthly", "day_of_month": None},
        {"frequency": "monthly", "day_of_month": 32},
        {"duration_seconds": 0},
        {"start_date": None},
        {"end_date": date(2024, 12, 31)},
    ])
    def test_validate_job_rejects(self, overrides):
        with pytest.raises(ValueError):
            validate_job(make_job(**overrides))

    def test_seconds_to_hours(self):
        assert seconds_to_hours(5400) == 1.5
        assert seconds_to_hours(1000) == 0.28


# ── Scheduler ──────────────────────────────────────────────────────────────


class TestScheduler:
    def test_generates_weekly_occurrences_and_advances_watermark(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        generated = scheduler.generate_occurrences(date(2025, 1, 21))
        assert generated == {job.id: [date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21)]}
        occurrences = scheduler.list_occurrences(job.id)
        assert [o.status for o in occurrences] == ["pending"] * 3
        assert scheduler.repo.get_recurring_job(job.id).last_generated_date == date(2025, 1, 21)

    def test_generation_is_idempotent(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.generate_occurrences(date(2025, 1, 21))
        assert scheduler.generate_occurrences(date(2025, 1, 21)) == {}
        assert len(scheduler.list_occurrences(job.id)) == 3

    def test_reset_watermark_does_not_duplicate(self, scheduler, repo, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.generate_occurrences(date(2025, 1, 21))
        repo.conn.execute("UPDATE recurring_jobs SET last_generated_date = NULL")
        repo.conn.commit()
        scheduler.generate_occurrences(date(2025, 1, 21))
        assert len(scheduler.list_occurrences(job.id)) == 3

    def test_watermark_unchanged_when_nothing_due(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id, start_date=date(2025, 3, 1)))
        assert scheduler.generate_occurrences(date(2025, 1, 21)) == {}
        assert scheduler.repo.get_recurring_job(job.id).last_generated_date is None

    def test_cap_defers_the_rest(self, repo, clients):
        alice, _ = clients
        scheduler = RecurringJobScheduler(repo, max_per_run=10)
        job = scheduler.create_job(make_job(client_id=alice.id))
        first = scheduler.generate_occurrences(date(2025, 6, 1))[job.id]
        assert len(first) == 10
        watermark = repo.get_recurring_job(job.id).last_generated_date
        assert watermark == first[-1]

        second = scheduler.generate_occurrences(date(2025, 6, 1))[job.id]
        assert second[0] == first[-1] + timedelta(days=7)
        dates = [o.scheduled_date for o in scheduler.list_occurrences(job.id)]
        assert len(dates) == len(set(dates)) == 20

    def test_watermark_is_monotonic(self, scheduler, repo, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        marks = []
        for day in (date(2025, 1, 10), date(2025, 1, 21), date(2025, 1, 15), date(2025, 2, 1)):
            scheduler.generate_occurrences(day)
            marks.append(repo.get_recurring_job(job.id).last_generated_date)
        assert marks == sorted(marks)

    def test_paused_job_is_skipped(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.pause_job(job.id)
        assert scheduler.generate_occurrences(date(2025, 1, 21)) == {}
        scheduler.resume_job(job.id)
        assert len(scheduler.generate_occurrences(date(2025, 1, 21))[job.id]) == 3

    def test_create_job_validates(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.create_job(make_job(duration_seconds=-5))

    def test_update_job(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        updated = scheduler.update_job(job.id, title="Deep clean", duration_seconds=3600)
        assert updated.title == "Deep clean"
        assert updated.duration_seconds == 3600
        with pytest.raises(ValueError):
            scheduler.update_job(job.id, frequency="hourly")
        with pytest.raises(NotFoundError):
            scheduler.update_job(999, title="x")

    def test_skip_occurrence(self, scheduler, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.generate_occurrences(date(2025, 1, 21))
        first = scheduler.list_occurrences(job.id)[0]
        assert scheduler.skip_occurrence(first.id).status == "skipped"
        with pytest.raises(ValueError):
            scheduler.skip_occurrence(first.id)
        with pytest.raises(NotFoundError):
            scheduler.skip_occurrence(999)


# ── Processor ──────────────────────────────────────────────────────────────


class FailingOnceInvoices:
    """Invoice store whose first call fails."""

    def __init__(self, repo):
        self.repo = repo
        self.calls = 0

    def create_invoice(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise TransientIOError("invoice table locked")
        return self.repo.create_invoice(*args, **kwargs)


class FlakyInvoices:
    """Invoice store whose first call hits a dropped connection."""

    def __init__(self, repo):
        self.repo = repo
        self.calls = 0

    def create_invoice(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("invoice backend went away")
        return self.repo.create_invoice(*args, **kwargs)


class TestProcessor:
    def test_weekly_scenario_end_to_end(self, processor, scheduler, repo, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        report = processor.process_recurring_jobs(date(2025, 1, 21))
        assert report.generated == 3
        assert len(report.completed) == 3
        assert report.failed == []

        sessions = repo.list_sessions_for_client(alice.id)
        assert sorted(s.date for s in sessions) == [
            date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21)]
        for session in sessions:
            assert session.is_active is False
            assert session.duration == 2 * 3600
            assert session.notes == "Office cleaning"
        for occurrence in scheduler.list_occurrences(job.id):
            assert occurrence.status == "completed"
            assert occurrence.session_id is not None
            assert occurrence.invoice_id is None

    def test_rerun_creates_nothing_new(self, processor, scheduler, repo, clients):
        alice, _ = clients
        scheduler.create_job(make_job(client_id=alice.id))
        processor.process_recurring_jobs(date(2025, 1, 21))
        report = processor.process_recurring_jobs(date(2025, 1, 21))
        assert report.generated == 0
        assert report.completed == []
        assert len(repo.list_sessions_for_client(alice.id)) == 3

    def test_auto_invoice_amount(self, processor, scheduler, repo, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id, auto_invoice=True))
        processor.process_recurring_jobs(date(2025, 1, 7))
        occurrence = scheduler.list_occurrences(job.id)[0]
        invoice = repo.get_invoice(occurrence.invoice_id)
        assert invoice.total_hours == 2.0
        assert invoice.total_amount == 100.0
        assert invoice.session_ids == [occurrence.session_id]

    def test_deleted_client_fails_only_its_occurrence(self, processor, scheduler, repo, clients):
        alice, bob = clients
        good = scheduler.create_job(make_job(client_id=alice.id))
        orphan = scheduler.create_job(make_job(client_id=bob.id, title="Bakery"))
        scheduler.generate_occurrences(date(2025, 1, 7))
        repo.delete_client(bob.id)

        report = processor.process_pending_occurrences(date(2025, 1, 7))
        assert len(report.completed) == 1
        assert len(report.failed) == 1

        assert scheduler.list_occurrences(good.id)[0].status == "completed"
        failed = scheduler.list_occurrences(orphan.id)[0]
        assert failed.status == "pending"
        assert failed.session_id is None
        assert repo.list_sessions_for_client(bob.id) == []

    def test_retry_after_invoice_failure_reuses_session(self, repo, store, scheduler, clients):
        alice, _ = clients
        invoices = FailingOnceInvoices(repo)
        processor = RecurringJobProcessor(repo, store, scheduler, invoices=invoices)
        job = scheduler.create_job(make_job(client_id=alice.id, auto_invoice=True))
        scheduler.generate_occurrences(date(2025, 1, 7))

        first = processor.process_pending_occurrences(date(2025, 1, 7))
        assert len(first.failed) == 1
        pending = scheduler.list_occurrences(job.id)[0]
        assert pending.status == "pending"
        assert pending.session_id is not None

        second = processor.process_pending_occurrences(date(2025, 1, 7))
        assert len(second.completed) == 1
        done = scheduler.list_occurrences(job.id)[0]
        assert done.session_id == pending.session_id
        assert done.invoice_id is not None
        assert len(repo.list_sessions_for_client(alice.id)) == 1

    def test_skipped_occurrence_is_not_processed(self, processor, scheduler, repo, clients):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.generate_occurrences(date(2025, 1, 21))
        scheduler.skip_occurrence(scheduler.list_occurrences(job.id)[0].id)
        report = processor.process_pending_occurrences(date(2025, 1, 21))
        assert len(report.completed) == 2
        assert len(repo.list_sessions_for_client(alice.id)) == 2

    def test_processing_leaves_running_timer_alone(self, processor, scheduler, store, repo, clients):
        alice, bob = clients
        running = store.start_session(bob.id)
        scheduler.create_job(make_job(client_id=alice.id))
        processor.process_recurring_jobs(date(2025, 1, 21))
        marker = store.get_active_timer_marker()
        assert marker.session_id == running.id
        assert repo.count_active_sessions() == 1

    def test_unexpected_error_fails_only_that_occurrence(self, repo, store, scheduler, clients):
        alice, _ = clients
        invoices = FlakyInvoices(repo)
        processor = RecurringJobProcessor(repo, store, scheduler, invoices=invoices)
        job = scheduler.create_job(make_job(client_id=alice.id, auto_invoice=True))
        scheduler.generate_occurrences(date(2025, 1, 21))

        report = processor.process_pending_occurrences(date(2025, 1, 21))
        assert len(report.failed) == 1
        assert len(report.completed) == 2

        first = scheduler.list_occurrences(job.id)[0]
        assert first.id == report.failed[0]
        assert first.status == "pending"
        assert first.session_id is not None

    def test_session_rolls_back_when_link_fails(self, processor, scheduler, repo, clients,
                                                monkeypatch):
        alice, _ = clients
        job = scheduler.create_job(make_job(client_id=alice.id))
        scheduler.generate_occurrences(date(2025, 1, 7))
        real_update = repo.update_occurrence

        def failing_link(occurrence_id, status=None, session_id=None, invoice_id=None):
            if session_id is not None:
                raise sqlite3.OperationalError("database is locked")
            real_update(occurrence_id, status=status, session_id=session_id,
                        invoice_id=invoice_id)

        monkeypatch.setattr(repo, "update_occurrence", failing_link)
        report = processor.process_pending_occurrences(date(2025, 1, 7))
        assert len(report.failed) == 1

        occurrence = scheduler.list_occurrences(job.id)[0]
        assert occurrence.status == "pending"
        assert occurrence.session_id is None
        assert repo.list_sessions_for_client(alice.id) == []


class TestSchedulerIsolation:
    def test_one_broken_job_does_not_stop_the_others(self, scheduler, clients, monkeypatch):
        alice, bob = clients
        broken = scheduler.create_job(make_job(client_id=alice.id))
        healthy = scheduler.create_job(make_job(client_id=bob.id, title="Bakery"))
        real_generate = scheduler.generate_for_job

        def generate(job, today):
            if job.id == broken.id:
                raise KeyError("frequency")
            return real_generate(job, today)

        monkeypatch.setattr(scheduler, "generate_for_job", generate)
        generated = scheduler.generate_occurrences(date(2025, 1, 14))
        assert broken.id not in generated
        assert generated[healthy.id] == [date(2025, 1, 7), date(2025, 1, 14)]
        assert scheduler.list_occurrences(broken.id) == []
