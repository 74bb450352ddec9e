"""Tests for the fallback poller."""

from __future__ import annotations

import asyncio

import pytest

from resume_sync.stream.polling import Poller


class TestPoller:
    @pytest.mark.asyncio
    async def test_polls_immediately_and_on_interval(self, wait_for):
        calls = []

        async def fetch():
            calls.append(asyncio.get_running_loop().time())

        poller = Poller(fetch, interval=0.02)
        poller.start()
        try:
            await wait_for(lambda: len(calls) >= 3)
        finally:
            poller.stop()
        assert not poller.is_running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, wait_for):
        calls = []
        poller = Poller(lambda: calls.append(1), interval=60)

        poller.start()
        poller.start()
        await wait_for(lambda: calls)
        await asyncio.sleep(0.01)
        poller.stop()

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_polling(self, wait_for):
        calls = []

        async def fetch():
            calls.append(1)
            raise RuntimeError("server hiccup")

        poller = Poller(fetch, interval=0.01)
        poller.start()
        try:
            await wait_for(lambda: len(calls) >= 3)
            assert poller.is_running
        finally:
            poller.stop()

    @pytest.mark.asyncio
    async def test_stop_halts_polling(self):
        calls = []
        poller = Poller(lambda: calls.append(1), interval=0.01)
        poller.start()
        await asyncio.sleep(0)
        poller.stop()
        count = len(calls)

        await asyncio.sleep(0.05)
        assert len(calls) == count
        poller.stop()

    @pytest.mark.asyncio
    async def test_idle_timeout_pauses_until_activity(self, wait_for):
        calls = []
        poller = Poller(lambda: calls.append(1), interval=0.01, idle_timeout=0.05)
        poller.start()
        try:
            await wait_for(lambda: poller.paused)
            assert not poller.is_running
            count = len(calls)
            await asyncio.sleep(0.03)
            assert len(calls) == count

            poller.record_activity()
            assert poller.is_running
            await wait_for(lambda: len(calls) > count)
        finally:
            poller.stop()
        assert not poller.paused
