"""
Seed Data Generator — creates realistic fake data for development and testing.

Run: python scripts/seed_data.py
"""

import random
import sys
from datetime import date, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourflow.data.database import Database
from hourflow.data.models import RecurringJob
from hourflow.data.repository import Repository
from hourflow.data.session_store import SessionStore
from hourflow.services.recurring_service import RecurringJobScheduler


def seed(num_entries: int = 30) -> None:
    db = Database()
    db.connect()
    repo = Repository(db.conn)
    store = SessionStore(repo)
    scheduler = RecurringJobScheduler(repo)

    # ── Clients & geofences ─────────────────────────────────────────────
    clients = [
        ("Harbor Dental", 85.0, 40.7128, -74.0060),
        ("Maple Street HOA", 60.0, 40.7306, -73.9866),
        ("Riverside Bakery", 45.0, 40.6782, -73.9442),
    ]
    client_ids = []
    for name, rate, lat, lon in clients:
        client = repo.create_client(name, hourly_rate=rate)
        repo.upsert_geofence(client.id, lat, lon, radius=150)
        client_ids.append(client.id)

    # ── Manual entries over the last month ──────────────────────────────
    today = date.today()
    for i in range(num_entries):
        store.create_manual_entry(
            random.choice(client_ids),
            random.randint(30, 240) * 60,
            today - timedelta(days=num_entries - i),
            random.choice([None, "Site visit", "Repairs", "Follow-up"]),
        )

    # ── Recurring jobs ──────────────────────────────────────────────────
    scheduler.create_job(RecurringJob(
        client_id=client_ids[0], title="Weekly maintenance", frequency="weekly",
        day_of_week=2, duration_seconds=2 * 3600, auto_invoice=True,
        start_date=today - timedelta(days=28),
    ))
    scheduler.create_job(RecurringJob(
        client_id=client_ids[1], title="Grounds inspection", frequency="biweekly",
        day_of_week=5, duration_seconds=3600,
        start_date=today - timedelta(days=42),
    ))
    scheduler.create_job(RecurringJob(
        client_id=client_ids[2], title="Monthly deep clean", frequency="monthly",
        day_of_month=15, duration_seconds=4 * 3600, auto_invoice=True,
        start_date=today - timedelta(days=90),
    ))

    print(f"Seeded {len(client_ids)} clients, {num_entries} entries, 3 recurring jobs.")
    db.close()


if __name__ == "__main__":
    seed()
