"""
Recurring Service — turns recurring jobs into occurrence rows, and
occurrence rows into sessions (and optionally invoices).

Two steps, both safe to re-run:
    1. RecurringJobScheduler.generate_occurrences(): ledger rows per due date.
    2. RecurringJobProcessor.process_pending_occurrences(): one session per
       pending occurrence; a failure on one never blocks the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from hourflow.collaborators import ClientStore, InvoiceStore
from hourflow.data.models import Occurrence, RecurringJob
from hourflow.data.repository import Repository
from hourflow.data.session_store import SessionStore
from hourflow.errors import NotFoundError
from hourflow.services.recurrence import (
    MAX_OCCURRENCES_PER_RUN, compute_due_dates, due_window, seconds_to_hours,
    validate_job,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessingReport:
    """Outcome of one processing pass."""
    generated: int = 0
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class RecurringJobScheduler:
    """Job management plus the idempotent occurrence generator."""

    def __init__(
        self,
        repo: Repository,
        clock: Callable[[], datetime] = datetime.now,
        max_per_run: int = MAX_OCCURRENCES_PER_RUN,
    ) -> None:
        self.repo = repo
        self.clock = clock
        self.max_per_run = max_per_run

    def today(self) -> date:
        return self.clock().date()

    # ── Job management ──────────────────────────────────────────────────────

    def create_job(self, job: RecurringJob) -> RecurringJob:
        validate_job(job)
        created = self.repo.create_recurring_job(job)
        logger.info("Recurring job %d created (%s, client %d)",
                    created.id, created.frequency, created.client_id)
        return created

    def update_job(self, job_id: int, **fields) -> RecurringJob:
        """User edit. The watermark is not editable and is kept as-is."""
        job = self._require_job(job_id)
        validate_job(replace(job, **fields))
        self.repo.update_recurring_job(job_id, **fields)
        return self.repo.get_recurring_job(job_id)

    def pause_job(self, job_id: int) -> RecurringJob:
        return self.update_job(job_id, is_active=False)

    def resume_job(self, job_id: int) -> RecurringJob:
        return self.update_job(job_id, is_active=True)

    def list_jobs(self, active_only: bool = False) -> List[RecurringJob]:
        return self.repo.list_recurring_jobs(active_only=active_only)

    def list_occurrences(self, job_id: int) -> List[Occurrence]:
        return self.repo.list_occurrences(job_id)

    def skip_occurrence(self, occurrence_id: int) -> Occurrence:
        """pending → skipped. The row stays, so the date is never regenerated."""
        occurrence = self.repo.get_occurrence(occurrence_id)
        if occurrence is None:
            raise NotFoundError(f"Occurrence {occurrence_id} not found.")
        if occurrence.status != "pending":
            raise ValueError(
                f"Only pending occurrences can be skipped (status is {occurrence.status!r})."
            )
        self.repo.update_occurrence(occurrence_id, status="skipped")
        return self.repo.get_occurrence(occurrence_id)

    # ── Generation ──────────────────────────────────────────────────────────

    def generate_occurrences(self, today: Optional[date] = None) -> Dict[int, List[date]]:
        """
        Create occurrence rows for every active job up to today.

        Returns {job_id: [newly inserted dates]}. A job that fails is logged
        and skipped; the rest still generate.
        """
        today = today or self.today()
        generated: Dict[int, List[date]] = {}
        for job in self.repo.list_recurring_jobs(active_only=True):
            try:
                dates = self.generate_for_job(job, today)
            except Exception:
                logger.exception("Failed to generate occurrences for job %d", job.id)
                continue
            if dates:
                generated[job.id] = dates
        return generated

    def generate_for_job(self, job: RecurringJob, today: date) -> List[date]:
        from_date, to_date = due_window(job, today)
        dates = compute_due_dates(job, from_date, to_date, limit=self.max_per_run)
        if not dates:
            return []

        with self.repo.transaction():
            inserted = [d for d in dates if self.repo.create_occurrence(job.id, d)]
            self.repo.advance_watermark(job.id, dates[-1])

        if len(dates) == self.max_per_run:
            logger.warning("Job %d hit the %d-occurrence cap; the rest waits for the next run.",
                           job.id, self.max_per_run)
        logger.info("Job %d: %d occurrence(s) generated, watermark %s",
                    job.id, len(inserted), dates[-1].isoformat())
        return inserted

    def _require_job(self, job_id: int) -> RecurringJob:
        job = self.repo.get_recurring_job(job_id)
        if job is None:
            raise NotFoundError(f"Recurring job {job_id} not found.")
        return job


class RecurringJobProcessor:
    """Materializes pending occurrences into sessions and invoices."""

    def __init__(
        self,
        repo: Repository,
        store: SessionStore,
        scheduler: RecurringJobScheduler,
        clients: Optional[ClientStore] = None,
        invoices: Optional[InvoiceStore] = None,
    ) -> None:
        self.repo = repo
        self.store = store
        self.scheduler = scheduler
        self.clients = clients or repo
        self.invoices = invoices or repo

    def process_recurring_jobs(self, today: Optional[date] = None) -> ProcessingReport:
        """Generate, then process. Meant for app foreground / coarse timers."""
        today = today or self.scheduler.today()
        generated = self.scheduler.generate_occurrences(today)
        report = self.process_pending_occurrences(today)
        report.generated = sum(len(dates) for dates in generated.values())
        return report

    def process_pending_occurrences(self, today: Optional[date] = None) -> ProcessingReport:
        today = today or self.scheduler.today()
        report = ProcessingReport()
        jobs: Dict[int, Optional[RecurringJob]] = {}

        for occurrence in self.repo.list_pending_occurrences(today):
            job_id = occurrence.recurring_job_id
            if job_id not in jobs:
                jobs[job_id] = self.repo.get_recurring_job(job_id)
            try:
                self._process_one(occurrence, jobs[job_id])
            except Exception:
                logger.exception("Failed to process occurrence %d (job %d); left pending.",
                                 occurrence.id, job_id)
                report.failed.append(occurrence.id)
                continue
            report.completed.append(occurrence.id)

        if report.completed or report.failed:
            logger.info("Processed occurrences: %d completed, %d failed",
                        len(report.completed), len(report.failed))
        return report

    def _process_one(self, occurrence: Occurrence, job: Optional[RecurringJob]) -> None:
        if job is None:
            raise NotFoundError(f"Recurring job {occurrence.recurring_job_id} not found.")
        client = self.clients.get_client(job.client_id)
        if client is None:
            raise NotFoundError(f"Client {job.client_id} not found.")

        # Each step records its result before the next one runs, so a retry
        # after a partial failure picks up where this attempt stopped.
        session_id = occurrence.session_id
        if session_id is None:
            # The session and its link on the occurrence commit together
            with self.repo.transaction():
                session = self.store.create_manual_entry(
                    job.client_id, job.duration_seconds,
                    occurrence.scheduled_date, job.notes or job.title,
                )
                session_id = session.id
                self.repo.update_occurrence(occurrence.id, session_id=session_id)

        invoice_id = occurrence.invoice_id
        if job.auto_invoice and invoice_id is None:
            hours = seconds_to_hours(job.duration_seconds)
            invoice = self.invoices.create_invoice(
                client.id, hours, round(hours * client.hourly_rate, 2),
                [session_id], client.currency,
            )
            invoice_id = invoice.id
            self.repo.update_occurrence(occurrence.id, invoice_id=invoice_id)

        self.repo.update_occurrence(occurrence.id, status="completed")
        logger.info("Occurrence %d on %s completed (session %d, invoice %s)",
                    occurrence.id, occurrence.scheduled_date.isoformat(),
                    session_id, invoice_id)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Runs recurring jobs ("clean the Smiths' office every other Tuesday")
#   as two idempotent passes: generate dated occurrences, then turn each
#   pending one into a time session and, if asked, an invoice.
#
# Key classes:
#   - RecurringJobScheduler: job edits, pause/resume, skip, and
#     generate_occurrences() which inserts rows + advances the watermark in
#     one transaction per job.
#   - RecurringJobProcessor: per-occurrence isolation; failures are logged
#     and the occurrence stays pending for the next run.
#   - ProcessingReport: what a pass did, for logs and tests.
#
# Data flow:
#   app foreground → process_recurring_jobs() → generate_occurrences() →
#   process_pending_occurrences() → SessionStore.create_manual_entry() →
#   InvoiceStore.create_invoice() → occurrence marked completed.
#
# Interviewer-friendly talking points:
#   1. The occurrence table is an idempotency ledger: unique (job, date),
#      never deleted, so re-running can't double-bill.
#   2. The session and its session_id on the occurrence commit in one
#      transaction, before the invoice step, so a retry never creates a
#      second session.
#   3. The 100-per-run cap bounds one pass; a long-dormant job catches up
#      over several runs instead of stalling app start.
