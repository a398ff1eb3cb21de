"""Tests for ``anybase.core.deadline``: per-call deadlines."""

from __future__ import annotations

import time

import pytest

from anybase.core import deadline as deadlines
from anybase.core.errors import OperationTimeoutError


class TestDeadline:
    def test_unbounded_by_default(self):
        assert deadlines.remaining() is None
        assert deadlines.check("find") is None
        assert deadlines.bounded(10.0) == 10.0

    def test_remaining_inside_block(self):
        with deadlines.deadline(5.0):
            left = deadlines.remaining()
            assert left is not None
            assert 0 < left <= 5.0
        assert deadlines.remaining() is None

    def test_bounded_clips_default(self):
        with deadlines.deadline(1.0):
            assert deadlines.bounded(10.0) <= 1.0
            assert deadlines.bounded(0.5) == 0.5

    def test_nested_never_extends(self):
        with deadlines.deadline(1.0) as outer:
            with deadlines.deadline(60.0) as inner:
                assert inner == outer
            with deadlines.deadline(0.5) as tighter:
                assert tighter < outer

    def test_expired_raises(self):
        with deadlines.deadline(0.001):
            time.sleep(0.01)
            with pytest.raises(OperationTimeoutError, match="find_one"):
                deadlines.check("find_one")

    def test_expired_error_is_retryable(self):
        with deadlines.deadline(0):
            with pytest.raises(OperationTimeoutError) as exc_info:
                deadlines.bounded(1.0)
        assert exc_info.value.retryable is True
