from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from newscache.models import PreloadItem, WordPressPost
from newscache.preloader import CachePreloader


async def _wait_until(condition: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was never met")


class GatedPreloader(CachePreloader):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.started: list[str] = []
        self.finished: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.running = 0
        self.max_running = 0

    async def preload_post(self, item: Any) -> None:
        self.started.append(item.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.gates.setdefault(item.id, asyncio.Event()).wait()
        finally:
            self.running -= 1
            self.finished.append(item.id)

    def release(self, post_id: str) -> None:
        self.gates.setdefault(post_id, asyncio.Event()).set()


def _items(count: int) -> list[PreloadItem]:
    return [PreloadItem(id=str(index)) for index in range(count)]


@pytest.mark.asyncio
async def test_five_jobs_with_two_slots_drain_the_queue_one_start_at_a_time() -> None:
    preloader = GatedPreloader()
    run = asyncio.create_task(preloader.preload_posts(_items(5), max_concurrent=2))

    await _wait_until(lambda: len(preloader.started) == 2)
    assert preloader.get_queue_size() == 3
    assert preloader.is_preloading_active() is True

    observed_sizes = [preloader.get_queue_size()]
    for index in range(5):
        preloader.release(str(index))
        expected_started = min(5, index + 3)
        await _wait_until(lambda: len(preloader.started) == expected_started and preloader.running <= 2)
        observed_sizes.append(preloader.get_queue_size())
        assert preloader.running <= 2

    await run

    assert observed_sizes == [3, 2, 1, 0, 0, 0]
    assert preloader.max_running == 2
    assert preloader.started == ["0", "1", "2", "3", "4"]
    assert preloader.get_queue_size() == 0
    assert preloader.is_preloading_active() is False
    assert preloader.stats()["peak_concurrency"] == 2
    assert preloader.stats()["completed"] == 5


@pytest.mark.asyncio
async def test_in_flight_jobs_are_not_counted_as_queued() -> None:
    preloader = GatedPreloader()
    run = asyncio.create_task(preloader.preload_posts(_items(2), max_concurrent=2))

    await _wait_until(lambda: len(preloader.started) == 2)

    assert preloader.get_queue_size() == 0
    assert preloader.active == 2

    preloader.release("0")
    preloader.release("1")
    await run


class FlakyPreloader(CachePreloader):
    def __init__(self, failing: set[str]) -> None:
        super().__init__(max_concurrent=2)
        self.failing = failing
        self.done: list[str] = []

    async def preload_post(self, item: Any) -> None:
        await asyncio.sleep(0.001)
        if item.id in self.failing:
            raise RuntimeError(f"upstream failed for {item.id}")
        self.done.append(item.id)


@pytest.mark.asyncio
async def test_failures_are_logged_per_item_and_do_not_abort_siblings(caplog: pytest.LogCaptureFixture) -> None:
    preloader = FlakyPreloader(failing={"1", "3"})

    with caplog.at_level("WARNING", logger="newscache.preloader"):
        result = await preloader.preload_posts(_items(5))

    assert result is None
    assert sorted(preloader.done) == ["0", "2", "4"]
    assert preloader.stats()["failed"] == 2
    assert "upstream failed for 1" in caplog.text
    assert "upstream failed for 3" in caplog.text


class SyncFailurePreloader(CachePreloader):
    def preload_post(self, item: Any) -> None:  # type: ignore[override]
        raise ValueError("not even a coroutine")


@pytest.mark.asyncio
async def test_override_that_raises_synchronously_only_fails_its_own_job() -> None:
    preloader = SyncFailurePreloader(max_concurrent=2)

    await preloader.preload_posts(_items(3))

    assert preloader.stats()["failed"] == 3
    assert preloader.is_preloading_active() is False


@pytest.mark.asyncio
async def test_second_call_while_running_returns_immediately(caplog: pytest.LogCaptureFixture) -> None:
    preloader = GatedPreloader()
    run = asyncio.create_task(preloader.preload_posts(_items(1), max_concurrent=1))
    await _wait_until(lambda: len(preloader.started) == 1)

    with caplog.at_level("WARNING", logger="newscache.preloader"):
        await preloader.preload_posts(_items(3), max_concurrent=1)

    assert "already in progress" in caplog.text
    assert preloader.started == ["0"]

    preloader.release("0")
    await run


@pytest.mark.asyncio
async def test_batches_run_sequentially_and_queue_holds_all_unstarted_jobs() -> None:
    preloader = GatedPreloader()
    run = asyncio.create_task(
        preloader.preload_posts(_items(4), max_concurrent=3, batch_size=2, delay_between_batches=0)
    )

    await _wait_until(lambda: len(preloader.started) == 2)
    await asyncio.sleep(0.01)
    assert preloader.started == ["0", "1"]
    assert preloader.get_queue_size() == 2

    preloader.release("0")
    preloader.release("1")
    await _wait_until(lambda: len(preloader.started) == 4)
    assert preloader.get_queue_size() == 0

    preloader.release("2")
    preloader.release("3")
    await run


@pytest.mark.asyncio
async def test_empty_input_resolves() -> None:
    preloader = GatedPreloader()

    await preloader.preload_posts([])

    assert preloader.started == []


@pytest.mark.asyncio
async def test_explicit_zero_concurrency_is_rejected() -> None:
    preloader = GatedPreloader(max_concurrent=3)

    with pytest.raises(ValueError):
        await preloader.preload_posts(_items(2), max_concurrent=0)

    assert preloader.started == []
    assert preloader.is_preloading_active() is False


def _post(post_id: str, country: str = "ng") -> WordPressPost:
    return WordPressPost(id=post_id, country=country, categories=["5"], tags=["9"])


@pytest.mark.asyncio
async def test_smart_preload_puts_current_post_first_and_dedupes() -> None:
    preloader = GatedPreloader()
    for post_id in ("10", "11", "12"):
        preloader.release(post_id)

    await preloader.smart_preload(_post("10"), [_post("11"), _post("10"), _post("12")], max_concurrent=1)

    assert preloader.started == ["10", "11", "12"]


class RecordingPreloader(CachePreloader):
    def __init__(self) -> None:
        super().__init__()
        self.items: list[PreloadItem] = []

    async def preload_post(self, item: Any) -> None:
        self.items.append(item)


@pytest.mark.asyncio
async def test_visible_posts_are_mapped_to_preload_items() -> None:
    preloader = RecordingPreloader()

    await preloader.preload_visible_posts([_post("1", "za")])

    assert preloader.items == [PreloadItem(id="1", categories=["5"], tags=["9"], country="za")]


@pytest.mark.asyncio
async def test_default_preload_post_needs_a_wordpress_client() -> None:
    preloader = CachePreloader()

    await preloader.preload_posts(_items(1))

    assert preloader.stats()["failed"] == 1
