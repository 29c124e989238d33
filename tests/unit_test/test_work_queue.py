"""
Unit tests for the reconcile work queue.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from rollout_operator.kube_types import AppKey
from rollout_operator.reconciler import ReconcileResult
from rollout_operator.work_queue import ReconcileQueue

SHOP = AppKey(namespace="default", name="shop")
BLOG = AppKey(namespace="default", name="blog")


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestEnqueue:
    """Duplicate triggers collapse; delayed triggers fire later."""

    @pytest.mark.asyncio
    async def test_duplicates_collapse_before_processing(self):
        reconcile = AsyncMock(return_value=ReconcileResult())
        queue = ReconcileQueue(reconcile, workers=1, resync_period=0)

        queue.enqueue(SHOP)
        queue.enqueue(SHOP)
        queue.enqueue(BLOG)
        assert len(queue) == 2

        await queue.start()
        try:
            await queue.join()
        finally:
            await queue.stop()

        assert reconcile.await_count == 2

    @pytest.mark.asyncio
    async def test_delayed_enqueue_fires_later(self):
        reconcile = AsyncMock(return_value=ReconcileResult())
        queue = ReconcileQueue(reconcile, workers=1, resync_period=0)
        await queue.start()
        try:
            queue.enqueue(SHOP, delay=0.05)
            assert reconcile.await_count == 0
            await wait_for(lambda: reconcile.await_count == 1)
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_earlier_delay_wins(self):
        reconcile = AsyncMock(return_value=ReconcileResult())
        queue = ReconcileQueue(reconcile, workers=1, resync_period=0)
        await queue.start()
        try:
            queue.enqueue(SHOP, delay=60)
            queue.enqueue(SHOP, delay=0.02)
            await wait_for(lambda: reconcile.await_count == 1)
        finally:
            await queue.stop()


class TestProcessing:
    @pytest.mark.asyncio
    async def test_requeue_hint_schedules_next_pass(self):
        results = [ReconcileResult(requeue_after=0.01), ReconcileResult()]
        reconcile = AsyncMock(side_effect=results)
        queue = ReconcileQueue(reconcile, workers=1, resync_period=0)
        await queue.start()
        try:
            queue.enqueue(SHOP)
            await wait_for(lambda: reconcile.await_count == 2)
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_errors_are_retried_with_backoff(self):
        reconcile = AsyncMock(side_effect=[RuntimeError("boom"), ReconcileResult()])
        queue = ReconcileQueue(reconcile, workers=1, resync_period=0, error_backoff_base=0.01)
        await queue.start()
        try:
            queue.enqueue(SHOP)
            await wait_for(lambda: reconcile.await_count == 2)
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_one_failing_key_does_not_block_others(self):
        async def reconcile(key):
            if key == SHOP:
                raise RuntimeError("boom")
            return ReconcileResult()

        mock = AsyncMock(side_effect=reconcile)
        queue = ReconcileQueue(mock, workers=1, resync_period=0, error_backoff_base=10)
        await queue.start()
        try:
            queue.enqueue(SHOP)
            queue.enqueue(BLOG)
            await wait_for(lambda: mock.await_count == 2)
        finally:
            await queue.stop()
        assert [call.args[0] for call in mock.await_args_list] == [SHOP, BLOG]

    @pytest.mark.asyncio
    async def test_key_is_never_processed_concurrently(self):
        active = set()
        overlaps = []
        calls = []
        release = asyncio.Event()

        async def reconcile(key):
            if key in active:
                overlaps.append(key)
            active.add(key)
            calls.append(key)
            await release.wait()
            active.discard(key)
            return ReconcileResult()

        queue = ReconcileQueue(reconcile, workers=4, resync_period=0)
        await queue.start()
        try:
            queue.enqueue(SHOP)
            await wait_for(lambda: len(calls) == 1)
            queue.enqueue(SHOP)
            queue.enqueue(SHOP)
            await asyncio.sleep(0.02)
            assert len(calls) == 1
            release.set()
            await wait_for(lambda: len(calls) == 2)
        finally:
            await queue.stop()

        assert overlaps == []

    def test_backoff_is_capped(self):
        queue = ReconcileQueue(AsyncMock(), error_backoff_base=1, error_backoff_max=5)
        assert [queue.backoff(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_enqueues_every_known_key(self):
        reconcile = AsyncMock(return_value=ReconcileResult())
        list_keys = AsyncMock(return_value=[SHOP, BLOG])
        queue = ReconcileQueue(reconcile, list_keys=list_keys, workers=2, resync_period=60)
        await queue.start()
        try:
            await wait_for(lambda: reconcile.await_count == 2)
        finally:
            await queue.stop()
        assert {call.args[0] for call in reconcile.await_args_list} == {SHOP, BLOG}

    @pytest.mark.asyncio
    async def test_resync_survives_listing_errors(self):
        reconcile = AsyncMock(return_value=ReconcileResult())
        list_keys = AsyncMock(side_effect=[RuntimeError("down"), [SHOP]])
        queue = ReconcileQueue(reconcile, list_keys=list_keys, workers=1, resync_period=0.01)
        await queue.start()
        try:
            await wait_for(lambda: reconcile.await_count >= 1)
        finally:
            await queue.stop()
