import asyncio

import pytest

from services.list_controller import IncrementalListController, ListState
from utils.errors import TransientNetworkError


class PagedSource:
    """Serves slices of a fixed id list the way the query service does."""

    def __init__(self, count=45):
        self.ids = list(range(1, count + 1))
        self.requests = []
        self.fail_next = 0
        self.gate = None

    async def __call__(self, filters, limit, offset):
        self.requests.append((dict(filters), limit, offset))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise TransientNetworkError("HTTP 503")
        ids = self.ids
        if filters.get("even"):
            ids = [i for i in ids if i % 2 == 0]
        total = len(ids)
        if offset >= total:
            offset = 0
        return {
            "items": [{"id": i} for i in ids[offset : offset + limit]],
            "total": total,
            "offset": offset,
            "hasMore": offset + limit < total,
        }


def ids_of(snapshot):
    return [item["id"] for item in snapshot.items]


@pytest.mark.asyncio
class TestIncrementalList:
    async def test_initial_load_and_exhaustion(self):
        source = PagedSource(45)
        controller = IncrementalListController(source, page_size=20)

        first = await controller.start()
        assert first.state == ListState.IDLE
        assert ids_of(first) == list(range(1, 21))

        await controller.load_more()
        last = await controller.load_more()
        assert last.state == ListState.EXHAUSTED
        assert ids_of(last) == list(range(1, 46))

        await controller.load_more()
        assert len(source.requests) == 3

    async def test_scroll_needs_manual_load_first(self):
        source = PagedSource(45)
        controller = IncrementalListController(source, page_size=20)
        await controller.start()

        await controller.on_scroll_near_end()
        assert len(source.requests) == 1

        await controller.load_more()
        assert controller.auto_load_enabled is True

        snapshot = await controller.on_scroll_near_end()
        assert len(source.requests) == 3
        assert snapshot.state == ListState.EXHAUSTED

    async def test_duplicate_ids_are_dropped(self):
        async def overlapping(filters, limit, offset):
            start = max(0, offset - 5)
            return {"items": [{"id": i} for i in range(start + 1, start + limit + 1)], "total": 40, "offset": offset}

        controller = IncrementalListController(overlapping, page_size=20)
        await controller.start()
        snapshot = await controller.load_more()

        assert ids_of(snapshot) == list(range(1, 36))

    async def test_filter_change_resets(self):
        source = PagedSource(45)
        controller = IncrementalListController(source, page_size=20)
        await controller.start()
        await controller.load_more()

        snapshot = await controller.set_filters({"even": True})

        assert ids_of(snapshot) == list(range(2, 41, 2))
        assert controller.auto_load_enabled is False
        assert snapshot.total == 22

    async def test_same_filters_do_not_refetch(self):
        source = PagedSource(10)
        controller = IncrementalListController(source, page_size=20)
        await controller.set_filters({"even": True})
        await controller.set_filters({"even": True})
        assert len(source.requests) == 1

    async def test_superseded_response_is_discarded(self):
        source = PagedSource(45)
        source.gate = asyncio.Event()
        controller = IncrementalListController(source, page_size=20)

        stale = asyncio.create_task(controller.start({}))
        await asyncio.sleep(0)
        fresh = asyncio.create_task(controller.set_filters({"even": True}))
        await asyncio.sleep(0)
        source.gate.set()
        await asyncio.gather(stale, fresh)

        assert ids_of(controller.snapshot()) == list(range(2, 41, 2))
        assert controller.state == ListState.IDLE

    async def test_load_more_ignored_while_loading(self):
        source = PagedSource(45)
        controller = IncrementalListController(source, page_size=20)
        await controller.start()

        source.gate = asyncio.Event()
        pending = asyncio.create_task(controller.load_more())
        await asyncio.sleep(0)
        assert controller.state == ListState.LOADING_MORE

        await controller.load_more()
        source.gate.set()
        await pending

        assert len(source.requests) == 2
        assert ids_of(controller.snapshot()) == list(range(1, 41))

    async def test_error_then_retry(self):
        source = PagedSource(45)
        controller = IncrementalListController(source, page_size=20)
        await controller.start()

        source.fail_next = 1
        failed = await controller.load_more()
        assert failed.state == ListState.ERROR
        assert isinstance(failed.error, TransientNetworkError)
        assert ids_of(failed) == list(range(1, 21))

        await controller.load_more()
        assert len(source.requests) == 2

        recovered = await controller.retry()
        assert recovered.state == ListState.IDLE
        assert recovered.error is None
        assert ids_of(recovered) == list(range(1, 41))
        assert source.requests[-1][2] == 20

    async def test_server_offset_reset_exhausts(self):
        source = PagedSource(5)
        controller = IncrementalListController(source, page_size=2)
        await controller.start()
        controller.offset = 10

        snapshot = await controller.load_more()

        assert snapshot.state == ListState.EXHAUSTED
        assert ids_of(snapshot) == [1, 2]
