"""
Tests for the concurrent task group.
"""

import asyncio

import pytest

from core.exceptions import ErrorClassification, PeerUnreachable
from core.task_group import run_all


class TestRunAll:
    """Tests for run_all()."""

    @pytest.mark.asyncio
    async def test_empty(self):
        result = await run_all({})
        assert result.all_ok
        assert result.outcomes == {}

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        finished = []

        async def slow_ok():
            await asyncio.sleep(0.02)
            finished.append("slow")
            return 42

        async def boom():
            raise ValueError("bad input")

        result = await run_all({"slow": slow_ok, "boom": boom})

        assert finished == ["slow"]
        assert result.succeeded == ["slow"]
        assert result.failed == ["boom"]
        assert result.values() == {"slow": 42}
        assert not result.all_ok
        assert result.outcomes["boom"].error_type == "ValueError"
        assert result.to_dict()["failed"]["boom"]["error"] == "bad input"

    @pytest.mark.asyncio
    async def test_per_task_timeout(self):
        async def hangs():
            await asyncio.sleep(5)

        async def quick():
            return "done"

        result = await run_all({"hangs": hangs, "quick": quick}, timeout=0.02)

        assert result.outcomes["hangs"].timed_out
        assert result.outcomes["quick"].value == "done"

    @pytest.mark.asyncio
    async def test_classification(self):
        async def unreachable():
            raise PeerUnreachable("beta")

        result = await run_all({"sync": unreachable})
        assert result.outcomes["sync"].classification == ErrorClassification.TRANSIENT
