"""
Contract tests run against every backend implementation.
"""

from datetime import timedelta

import pytest

from jobengine.constants import BatchCallback
from jobengine.exceptions import FailedJobNotFound
from jobengine.types.batch import Batch
from jobengine.types.envelope import Command, JobEnvelope, new_id

VISIBILITY = 30.0


def make_envelope(clock, queue: str = "default", delay: float = 0.0, **fields) -> JobEnvelope:
    now = clock()
    return JobEnvelope(
        queue=queue,
        payload=Command(type="echo", args={"n": fields.pop("n", 0)}),
        created_at=now,
        available_at=now + delay,
        **fields,
    )


def make_batch(backend, total: int, **fields) -> Batch:
    return Batch(
        id=new_id(),
        name="test",
        total_jobs=total,
        pending_jobs=total,
        created_at=backend.now_datetime(),
        **fields,
    )


class TestEnvelopeOperations:
    """Tests for enqueue, reserve, ack, release, fail."""

    async def test_reserve_returns_oldest_first(self, backend, clock):
        first = await backend.enqueue(make_envelope(clock, n=1))
        clock.advance(1)
        second = await backend.enqueue(make_envelope(clock, n=2))

        reserved = await backend.reserve("default", VISIBILITY)
        assert reserved.id == first.id
        assert reserved.reserved_until == clock() + VISIBILITY

        reserved = await backend.reserve("default", VISIBILITY)
        assert reserved.id == second.id

        assert await backend.reserve("default", VISIBILITY) is None

    async def test_reserve_ties_break_by_insertion_order(self, backend, clock):
        ids = [(await backend.enqueue(make_envelope(clock, n=i))).id for i in range(3)]

        reserved = [(await backend.reserve("default", VISIBILITY)).id for _ in range(3)]

        assert reserved == ids

    async def test_reserve_filters_by_queue(self, backend, clock):
        await backend.enqueue(make_envelope(clock, queue="emails"))

        assert await backend.reserve("default", VISIBILITY) is None
        assert await backend.reserve("emails", VISIBILITY) is not None

    async def test_delayed_envelope_invisible_until_available(self, backend, clock):
        await backend.enqueue(make_envelope(clock, delay=60))

        assert await backend.reserve("default", VISIBILITY) is None

        clock.advance(60)
        assert await backend.reserve("default", VISIBILITY) is not None

    async def test_expired_reservation_is_redelivered(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock))
        await backend.reserve("default", VISIBILITY)

        clock.advance(VISIBILITY - 1)
        assert await backend.reserve("default", VISIBILITY) is None

        clock.advance(1)
        redelivered = await backend.reserve("default", VISIBILITY)
        assert redelivered.id == envelope.id
        assert redelivered.attempts == 0

    async def test_ack_removes_envelope_once(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock))
        await backend.reserve("default", VISIBILITY)

        assert await backend.ack(envelope.id) is True
        assert await backend.ack(envelope.id) is False
        assert await backend.get(envelope.id) is None

    async def test_release_counts_attempts_and_exceptions(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock))
        await backend.reserve("default", VISIBILITY)

        assert await backend.release(envelope.id, 10, count_exception=True)

        stored = await backend.get(envelope.id)
        assert stored.attempts == 1
        assert stored.exceptions == 1
        assert stored.reserved_until is None
        assert stored.available_at == clock() + 10

        await backend.release(envelope.id, 0)
        stored = await backend.get(envelope.id)
        assert stored.attempts == 2
        assert stored.exceptions == 1

    async def test_released_envelope_waits_for_its_delay(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock))
        await backend.reserve("default", VISIBILITY)
        await backend.release(envelope.id, 5)

        assert await backend.reserve("default", VISIBILITY) is None
        clock.advance(5)
        assert (await backend.reserve("default", VISIBILITY)).id == envelope.id

    async def test_fail_moves_envelope_to_failed_store(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock, max_tries=3))
        await backend.reserve("default", VISIBILITY)

        failed = await backend.fail(envelope.id, "RuntimeError: boom")

        assert failed.original_id == envelope.id
        assert failed.exception == "RuntimeError: boom"
        assert failed.envelope.max_tries == 3
        assert await backend.get(envelope.id) is None
        assert await backend.fail(envelope.id, "again") is None
        assert len(await backend.list_failed()) == 1

    async def test_extend_pushes_reservation(self, backend, clock):
        envelope = await backend.enqueue(make_envelope(clock))
        assert await backend.extend(envelope.id, VISIBILITY) is None

        await backend.reserve("default", VISIBILITY)
        clock.advance(20)
        assert await backend.extend(envelope.id, VISIBILITY) == clock() + VISIBILITY

        clock.advance(20)
        assert await backend.reserve("default", VISIBILITY) is None

    async def test_delete_refuses_reserved_envelope(self, backend, clock):
        reserved = await backend.enqueue(make_envelope(clock, n=1))
        await backend.reserve("default", VISIBILITY)
        waiting = await backend.enqueue(make_envelope(clock, n=2))

        assert await backend.delete(reserved.id) is False
        assert await backend.delete(waiting.id) is True
        assert await backend.delete(waiting.id) is False

    async def test_count_pending_excludes_live_reservations(self, backend, clock):
        for i in range(3):
            await backend.enqueue(make_envelope(clock, n=i))
        await backend.enqueue(make_envelope(clock, delay=100))
        await backend.reserve("default", VISIBILITY)

        assert await backend.count_pending("default") == 3
        assert await backend.count_pending("other") == 0

        clock.advance(VISIBILITY)
        assert await backend.count_pending("default") == 4

    async def test_enqueue_stamps_connection_name(self, backend, clock):
        stored = await backend.enqueue(make_envelope(clock))
        assert stored.connection == backend.connection_name


class TestReservationTokens:
    """Settlement guarded on the reservation that issued it."""

    async def _overtaken(self, backend, clock):
        """Reserve as one worker, let the lease lapse and reserve again."""
        await backend.enqueue(make_envelope(clock))
        stale = await backend.reserve("default", 10)
        clock.advance(11)
        current = await backend.reserve("default", VISIBILITY)
        assert current.id == stale.id
        return stale, current

    async def test_stale_release_leaves_new_reservation(self, backend, clock):
        stale, current = await self._overtaken(backend, clock)

        released = await backend.release(
            stale.id, 0, count_exception=True, reserved_until=stale.reserved_until
        )
        assert released is False

        stored = await backend.get(current.id)
        assert stored.attempts == 0
        assert stored.exceptions == 0
        assert stored.reserved_until == current.reserved_until
        assert await backend.reserve("default", VISIBILITY) is None

    async def test_stale_fail_is_refused(self, backend, clock):
        stale, current = await self._overtaken(backend, clock)

        assert await backend.fail(stale.id, "late", reserved_until=stale.reserved_until) is None
        assert await backend.get(current.id) is not None
        assert await backend.list_failed() == []

        failed = await backend.fail(current.id, "ValueError: bad", reserved_until=current.reserved_until)
        assert failed.original_id == current.id

    async def test_stale_extend_is_refused(self, backend, clock):
        stale, current = await self._overtaken(backend, clock)

        assert await backend.extend(stale.id, 600, reserved_until=stale.reserved_until) is None
        assert (await backend.get(current.id)).reserved_until == current.reserved_until

    async def test_current_holder_settles_with_refreshed_token(self, backend, clock):
        await backend.enqueue(make_envelope(clock))
        reserved = await backend.reserve("default", VISIBILITY)

        clock.advance(5)
        token = await backend.extend(reserved.id, VISIBILITY, reserved_until=reserved.reserved_until)
        assert token == clock() + VISIBILITY

        # The token handed out by reserve was replaced by the extension
        assert await backend.release(reserved.id, 0, reserved_until=reserved.reserved_until) is False
        assert await backend.release(reserved.id, 0, reserved_until=token) is True
        assert (await backend.get(reserved.id)).attempts == 1


class TestBatchOperations:
    """Tests for batch counters and callback claims."""

    async def test_counters_reach_zero_once(self, backend):
        batch = await backend.create_batch(make_batch(backend, 2))

        counts = await backend.batch_job_finished(batch.id)
        assert counts.pending_jobs == 1
        assert not counts.finished

        counts = await backend.batch_job_failed(batch.id, "job-2")
        assert counts.pending_jobs == 0
        assert counts.failed_jobs == 1
        assert counts.finished

        assert await backend.batch_job_finished(batch.id) is None

        stored = await backend.get_batch(batch.id)
        assert stored.failed_job_ids == ["job-2"]
        assert stored.finished_at is not None
        assert stored.progress() == 1.0

    async def test_claim_callback_is_compare_and_set(self, backend):
        batch = await backend.create_batch(
            make_batch(backend, 1, callbacks={BatchCallback.THEN: "done"})
        )

        assert await backend.claim_batch_callback(batch.id, BatchCallback.THEN) is True
        assert await backend.claim_batch_callback(batch.id, BatchCallback.THEN) is False
        assert await backend.claim_batch_callback(batch.id, BatchCallback.FINALLY) is True

        stored = await backend.get_batch(batch.id)
        assert set(stored.fired) == {BatchCallback.THEN, BatchCallback.FINALLY}
        assert stored.callbacks == {BatchCallback.THEN: "done"}

    async def test_cancel_batch(self, backend):
        batch = await backend.create_batch(make_batch(backend, 3))

        assert await backend.cancel_batch(batch.id) is True
        assert await backend.cancel_batch(batch.id) is False

        stored = await backend.get_batch(batch.id)
        assert stored.cancelled
        assert stored.pending_jobs == 3

    async def test_enqueue_batch_stores_batch_and_members(self, backend, clock):
        batch = make_batch(backend, 2)
        envelopes = [make_envelope(clock, n=i, batch_id=batch.id) for i in range(2)]

        stored = await backend.enqueue_batch(batch, envelopes)

        assert [e.connection for e in stored] == [backend.connection_name] * 2
        assert (await backend.get_batch(batch.id)).pending_jobs == 2
        reserved = [await backend.reserve("default", VISIBILITY) for _ in range(2)]
        assert [r.id for r in reserved] == [e.id for e in envelopes]
        assert {r.batch_id for r in reserved} == {batch.id}

    async def test_unknown_batch(self, backend):
        assert await backend.get_batch("missing") is None
        assert await backend.batch_job_finished("missing") is None


class TestFailedStore:
    """Tests for failed job store operations."""

    async def _fail_one(self, backend, clock, **fields):
        envelope = await backend.enqueue(make_envelope(clock, **fields))
        await backend.reserve(envelope.queue, VISIBILITY)
        return await backend.fail(envelope.id, "ValueError: bad input")

    async def test_get_by_failed_or_original_id(self, backend, clock):
        failed = await self._fail_one(backend, clock)

        assert (await backend.get_failed(failed.id)).id == failed.id
        assert (await backend.get_failed(failed.original_id)).id == failed.id
        assert await backend.get_failed("missing") is None

    async def test_list_filters_by_queue(self, backend, clock):
        await self._fail_one(backend, clock, queue="emails")
        await self._fail_one(backend, clock, queue="reports")

        assert len(await backend.list_failed()) == 2
        assert [f.queue for f in await backend.list_failed(queue="emails")] == ["emails"]

    async def test_retry_resets_attempts_under_new_id(self, backend, clock):
        failed = await self._fail_one(backend, clock, attempts=2, exceptions=2, max_tries=3)

        envelope = await backend.retry_failed(failed.id)

        assert envelope.id != failed.original_id
        assert envelope.attempts == 0
        assert envelope.exceptions == 0
        assert envelope.max_tries == 3
        assert await backend.get_failed(failed.id) is None
        assert (await backend.reserve("default", VISIBILITY)).id == envelope.id

    async def test_retry_missing_raises(self, backend):
        with pytest.raises(FailedJobNotFound):
            await backend.retry_failed("missing")

    async def test_retry_all(self, backend, clock):
        for _ in range(3):
            await self._fail_one(backend, clock)

        retried = await backend.retry_all_failed()

        assert len(retried) == 3
        assert await backend.list_failed() == []
        assert await backend.count_pending("default") == 3

    async def test_retry_all_pages_through_the_store(self, backend, clock):
        for _ in range(5):
            await self._fail_one(backend, clock)

        retried = await backend.retry_all_failed(page_size=2)

        assert len(retried) == 5
        assert await backend.list_failed() == []
        assert await backend.count_pending("default") == 5

    async def test_forget_and_flush(self, backend, clock):
        first = await self._fail_one(backend, clock)
        await self._fail_one(backend, clock)
        await self._fail_one(backend, clock)

        assert await backend.forget_failed(first.id) is True
        assert await backend.forget_failed(first.id) is False
        assert await backend.flush_failed() == 2
        assert await backend.list_failed() == []

    async def test_prune_before_cutoff(self, backend, clock):
        await self._fail_one(backend, clock)
        clock.advance(7200)
        recent = await self._fail_one(backend, clock)

        pruned = await backend.prune_failed(backend.now_datetime() - timedelta(hours=1))

        assert pruned == 1
        assert [f.id for f in await backend.list_failed()] == [recent.id]
