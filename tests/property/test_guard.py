"""Property tests for the per-owner concurrency guard.

For any sequence of acquires and releases, an owner's active count stays
within [0, limit] and an acquire at the limit is rejected. Upload starts
are also capped per sliding window.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from streamflow.services.guard import ConcurrencyGuard, UploadRateLimiter
from streamflow.utils.errors import CapacityError, RateLimitError

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

operations = st.lists(st.sampled_from(["acquire", "release"]), max_size=40)


class TestConcurrencyGuardProperties:
    @settings(max_examples=200)
    @given(limit=st.integers(min_value=1, max_value=5), ops=operations)
    def test_active_count_stays_within_bounds(self, limit: int, ops: list) -> None:
        guard = ConcurrencyGuard()
        expected = 0

        for op in ops:
            if op == "acquire":
                if expected >= limit:
                    with pytest.raises(CapacityError):
                        guard.acquire("owner", limit)
                else:
                    assert guard.acquire("owner", limit) == expected + 1
                    expected += 1
            else:
                guard.release("owner")
                expected = max(0, expected - 1)
            assert 0 <= guard.active("owner") <= limit
            assert guard.active("owner") == expected

    @settings(max_examples=100)
    @given(
        owners=st.lists(st.text(min_size=1, max_size=8), min_size=2, max_size=5, unique=True),
        limit=st.integers(min_value=1, max_value=3),
    )
    def test_owners_are_counted_independently(self, owners: list, limit: int) -> None:
        guard = ConcurrencyGuard()
        for _ in range(limit):
            guard.acquire(owners[0], limit)

        for other in owners[1:]:
            assert guard.acquire(other, limit) == 1


class TestConcurrencyGuard:
    def test_fourth_upload_rejected_until_one_finishes(self) -> None:
        guard = ConcurrencyGuard()
        for _ in range(3):
            guard.acquire("user-1", 3)

        with pytest.raises(CapacityError) as exc_info:
            guard.acquire("user-1", 3)
        assert exc_info.value.limit == 3
        assert "3" in str(exc_info.value)

        guard.release("user-1")
        assert guard.acquire("user-1", 3) == 3

    def test_slot_releases_when_block_raises(self) -> None:
        guard = ConcurrencyGuard()

        with pytest.raises(RuntimeError):
            with guard.slot("user-1", 1) as active:
                assert active == 1
                raise RuntimeError("client disconnected")

        assert guard.active("user-1") == 0

    def test_release_without_acquire_floors_at_zero(self) -> None:
        guard = ConcurrencyGuard()

        assert guard.release("nobody") == 0
        assert guard.active("nobody") == 0

    def test_threaded_acquires_never_exceed_limit(self) -> None:
        guard = ConcurrencyGuard()
        accepted = []
        rejected = []
        barrier = threading.Barrier(10)

        def worker() -> None:
            barrier.wait()
            try:
                accepted.append(guard.acquire("user-1", 3))
            except CapacityError:
                rejected.append(1)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(accepted) == [1, 2, 3]
        assert len(rejected) == 7
        assert guard.active("user-1") == 3


class TestUploadRateLimiter:
    def test_eleventh_upload_in_an_hour_is_rejected(self, clock) -> None:
        limiter = UploadRateLimiter(limit=10, window_seconds=3600, clock=clock)

        for expected in range(1, 11):
            assert limiter.hit("user-1") == expected
            clock.advance(60)

        with pytest.raises(RateLimitError) as exc_info:
            limiter.hit("user-1")

        assert exc_info.value.limit == 10
        # The first upload leaves the window 3600s after it began.
        assert exc_info.value.retry_after == pytest.approx(3600 - 600)
        assert limiter.remaining("user-1") == 0
        assert limiter.hit("user-2") == 1

    def test_window_slides_as_old_uploads_expire(self, clock) -> None:
        limiter = UploadRateLimiter(limit=2, window_seconds=60, clock=clock)
        limiter.hit("user-1")
        clock.advance(30)
        limiter.hit("user-1")

        clock.advance(29)
        with pytest.raises(RateLimitError):
            limiter.hit("user-1")

        clock.advance(1)
        assert limiter.remaining("user-1") == 1
        assert limiter.hit("user-1") == 2

    def test_rate_limit_is_a_capacity_error(self, clock) -> None:
        limiter = UploadRateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.hit("user-1")

        with pytest.raises(CapacityError):
            limiter.hit("user-1")

    @pytest.mark.parametrize("limit, window", [(0, 60), (1, 0), (1, -5)])
    def test_rejects_non_positive_bounds(self, limit: int, window: float) -> None:
        with pytest.raises(ValueError):
            UploadRateLimiter(limit=limit, window_seconds=window)

    @settings(max_examples=100)
    @given(
        limit=st.integers(min_value=1, max_value=5),
        gaps=st.lists(st.integers(min_value=0, max_value=120), max_size=30),
    )
    def test_never_more_than_limit_within_any_window(self, limit: int, gaps: list) -> None:
        now = [T0]
        limiter = UploadRateLimiter(limit=limit, window_seconds=60, clock=lambda: now[0])
        accepted = []

        for gap in gaps:
            now[0] += timedelta(seconds=gap)
            try:
                limiter.hit("user-1")
            except RateLimitError:
                continue
            accepted.append(now[0])

        for i, start in enumerate(accepted):
            in_window = [t for t in accepted[i:] if (t - start).total_seconds() < 60]
            assert len(in_window) <= limit
