"""Unit tests for after-commit callbacks and savepoints in db/connection.py."""
from contextlib import asynccontextmanager

import pytest

from db.connection import _run_after_commit, after_commit, savepoint


class _SessionStub:
    """Enough of an AsyncSession for the callback queue: info and begin_nested."""

    def __init__(self):
        self.info = {}
        self.nested_rollbacks = 0

    @asynccontextmanager
    async def _nested(self):
        try:
            yield
        except Exception:
            self.nested_rollbacks += 1
            raise

    def begin_nested(self):
        return self._nested()


class TestAfterCommit:
    def test_callbacks_run_in_order_once(self):
        session = _SessionStub()
        calls = []
        after_commit(session, lambda: calls.append("a"))
        after_commit(session, lambda: calls.append("b"))

        _run_after_commit(session)
        _run_after_commit(session)

        assert calls == ["a", "b"]

    def test_failing_callback_does_not_stop_the_rest(self):
        session = _SessionStub()
        calls = []

        def boom():
            raise RuntimeError("boom")

        after_commit(session, boom)
        after_commit(session, lambda: calls.append("ran"))

        _run_after_commit(session)

        assert calls == ["ran"]


class TestSavepoint:
    @pytest.mark.asyncio
    async def test_rollback_drops_callbacks_queued_inside(self):
        session = _SessionStub()
        calls = []
        after_commit(session, lambda: calls.append("outer"))

        with pytest.raises(RuntimeError):
            async with savepoint(session):
                after_commit(session, lambda: calls.append("inner"))
                raise RuntimeError("step failed")

        _run_after_commit(session)

        assert session.nested_rollbacks == 1
        assert calls == ["outer"]

    @pytest.mark.asyncio
    async def test_success_keeps_callbacks(self):
        session = _SessionStub()
        calls = []

        async with savepoint(session):
            after_commit(session, lambda: calls.append("inner"))

        _run_after_commit(session)

        assert calls == ["inner"]

    @pytest.mark.asyncio
    async def test_failed_savepoint_leaves_sibling_callbacks(self):
        session = _SessionStub()
        calls = []

        async with savepoint(session):
            after_commit(session, lambda: calls.append("first"))
        with pytest.raises(ValueError):
            async with savepoint(session):
                after_commit(session, lambda: calls.append("second"))
                raise ValueError("rejected")
        async with savepoint(session):
            after_commit(session, lambda: calls.append("third"))

        _run_after_commit(session)

        assert calls == ["first", "third"]
