"""Bounded cache for images read by tools, waiting to be shown to the model."""

from __future__ import annotations

import base64
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5


@dataclass
class MediaItem:
    media_id: str
    media_type: str
    data: bytes

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


class MediaCache:
    """LRU of pending media. Oldest entries are evicted past capacity."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._items: OrderedDict[str, MediaItem] = OrderedDict()
        self._counter = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def put(self, media_type: str, data: bytes) -> str:
        with self._lock:
            self._counter += 1
            media_id = f"media_{self._counter}"
            self._items[media_id] = MediaItem(media_id, media_type, data)
            while len(self._items) > self.capacity:
                evicted, _ = self._items.popitem(last=False)
                logger.debug("Media cache full, evicted %s", evicted)
            return media_id

    def get(self, media_id: str) -> MediaItem | None:
        with self._lock:
            item = self._items.get(media_id)
            if item is not None:
                self._items.move_to_end(media_id)
            return item

    def drain(self) -> list[MediaItem]:
        """Remove and return everything, oldest first."""
        with self._lock:
            items = list(self._items.values())
            self._items.clear()
            return items
