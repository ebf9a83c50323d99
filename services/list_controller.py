"""
Incremental list controller.

This module implements the "load more" / infinite-scroll state machine that
a list view drives over the paginated query service. It handles:
- Resetting on mount and on filter changes.
- Appending pages deduplicated by id.
- Gating scroll-triggered loads behind one manual load.
- Discarding responses that belong to a superseded filter.
- Recovering from a failed fetch via retry.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from utils.constants import DEFAULT_LIST_LIMIT

logger = logging.getLogger("pokedex.list_controller")

PageFetcher = Callable[[Dict[str, Any], int, int], Awaitable[Dict[str, Any]]]


class ListState(Enum):
    """Enumeration of controller states."""

    IDLE = "idle"
    LOADING_INITIAL = "loading_initial"
    LOADING_MORE = "loading_more"
    EXHAUSTED = "exhausted"
    ERROR = "error"


@dataclass
class PendingLoad:
    """The request a retry re-issues."""

    initial: bool
    offset: int


@dataclass
class ListSnapshot:
    state: ListState
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    error: Optional[BaseException] = None


class IncrementalListController:
    """
    Drives paginated loading for one list view.

    Args:
        fetch_page: `fetch_page(filters, limit, offset)` returning a dict with
            `items` and `total` (the query service's list shape).
        page_size: Items requested per page.
        id_key: Key used to deduplicate items.
    """

    def __init__(
        self,
        fetch_page: PageFetcher,
        page_size: int = DEFAULT_LIST_LIMIT,
        id_key: str = "id",
    ):
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.id_key = id_key

        self.state = ListState.IDLE
        self.filters: Dict[str, Any] = {}
        self.items: List[Dict[str, Any]] = []
        self.total = 0
        self.offset = 0
        self.error: Optional[BaseException] = None
        self.auto_load_enabled = False

        self._generation = 0
        self._seen_ids = set()
        self._pending: Optional[PendingLoad] = None

    @property
    def is_loading(self) -> bool:
        return self.state in (ListState.LOADING_INITIAL, ListState.LOADING_MORE)

    def snapshot(self) -> ListSnapshot:
        return ListSnapshot(
            state=self.state,
            items=list(self.items),
            total=self.total,
            offset=self.offset,
            error=self.error,
        )

    # ==================== TRANSITIONS ====================

    async def start(self, filters: Optional[Dict[str, Any]] = None) -> ListSnapshot:
        """
        Load the first page, discarding everything accumulated so far.

        Called on mount and whenever the filters change. Any request still in
        flight for the previous filters is ignored when it completes.
        """
        self._generation += 1
        self.filters = dict(filters or {})
        self.items = []
        self._seen_ids = set()
        self.total = 0
        self.offset = 0
        self.error = None
        self.auto_load_enabled = False
        return await self._load(initial=True, offset=0)

    async def set_filters(self, filters: Dict[str, Any]) -> ListSnapshot:
        if self._generation > 0 and filters == self.filters:
            return self.snapshot()
        return await self.start(filters)

    async def load_more(self) -> ListSnapshot:
        """Explicit "load more". Enables scroll-triggered loading afterwards."""
        if self.is_loading or self.state in (ListState.EXHAUSTED, ListState.ERROR):
            return self.snapshot()
        self.auto_load_enabled = True
        return await self._load(initial=False, offset=self.offset)

    async def on_scroll_near_end(self) -> ListSnapshot:
        """Scroll proximity signal; ignored until the first manual load."""
        if not self.auto_load_enabled:
            return self.snapshot()
        return await self.load_more()

    async def retry(self) -> ListSnapshot:
        """Re-issue the request that failed."""
        if self.state != ListState.ERROR or self._pending is None:
            return self.snapshot()
        pending = self._pending
        self.error = None
        return await self._load(initial=pending.initial, offset=pending.offset)

    # ==================== LOADING ====================

    async def _load(self, initial: bool, offset: int) -> ListSnapshot:
        generation = self._generation
        self.state = ListState.LOADING_INITIAL if initial else ListState.LOADING_MORE
        self._pending = PendingLoad(initial=initial, offset=offset)

        try:
            page = await self.fetch_page(dict(self.filters), self.page_size, offset)
        except Exception as e:
            if generation != self._generation:
                return self.snapshot()
            logger.warning(f"List page at offset {offset} failed: {e}")
            self.state = ListState.ERROR
            self.error = e
            return self.snapshot()

        if generation != self._generation:
            logger.debug("Discarded page for superseded filters")
            return self.snapshot()

        self._apply(page, offset)
        return self.snapshot()

    def _apply(self, page: Dict[str, Any], requested_offset: int) -> None:
        self._pending = None
        self.total = int(page.get("total") or 0)

        for item in page.get("items") or []:
            key = item.get(self.id_key)
            if key in self._seen_ids:
                continue
            self._seen_ids.add(key)
            self.items.append(item)

        served_offset = page.get("offset", requested_offset)
        if served_offset != requested_offset:
            # Server reset an out-of-range offset; everything is already loaded
            self.offset = self.total
            self.state = ListState.EXHAUSTED
            return

        self.offset = requested_offset + self.page_size
        if self.offset >= self.total:
            self.state = ListState.EXHAUSTED
        else:
            self.state = ListState.IDLE
