from __future__ import annotations

import asyncio

from autopost.services.platforms import Sent
from autopost.services.store import InMemoryJobStore
from support import FakeClock, ScriptedPlatform, build_engine, connect, seed_due


class InterleavingStore(InMemoryJobStore):
    """Yields after selection so concurrent runs see the same due rows before claiming."""

    async def select_due_jobs(self, **kwargs):
        jobs = await super().select_due_jobs(**kwargs)
        await asyncio.sleep(0)
        return jobs


def test_overlapping_runs_post_each_job_once(clock: FakeClock) -> None:
    store = InterleavingStore()
    connect(store)
    job = seed_due(store, clock)
    platform = ScriptedPlatform(Sent("100"))
    first = build_engine(store, platform, clock=clock)
    second = build_engine(store, platform, clock=clock)

    async def run_both():
        return await asyncio.gather(first.run_once(), second.run_once())

    summaries = asyncio.run(run_both())

    assert sum(summary.processed for summary in summaries) == 2
    assert sum(summary.sent for summary in summaries) == 1
    assert sum(summary.skipped for summary in summaries) == 1
    assert len(platform.calls) == 1
    assert asyncio.run(store.get_job(job.id)).status == "sent"


def test_claim_only_succeeds_from_pending(store: InMemoryJobStore, clock: FakeClock) -> None:
    job = seed_due(store, clock)

    assert asyncio.run(store.claim_job(job.id, now=clock.now)) is True
    assert asyncio.run(store.claim_job(job.id, now=clock.now)) is False
    assert asyncio.run(store.claim_job("missing", now=clock.now)) is False


def test_outcome_only_applies_to_running_rows(store: InMemoryJobStore, clock: FakeClock) -> None:
    job = seed_due(store, clock, status="sent")

    applied = asyncio.run(store.apply_outcome(job.id, now=clock.now, status="failed", last_error="late"))

    assert applied is False
    assert asyncio.run(store.get_job(job.id)).status == "sent"
