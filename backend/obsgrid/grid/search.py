# backend/obsgrid/grid/search.py
import asyncio
import logging
from typing import Iterable, Optional, Protocol

from obsgrid.config import SEARCH_DEBOUNCE_MS
from obsgrid.grid.columns import field_key_for

logger = logging.getLogger(__name__)


class MeasurementCatalog(Protocol):
    async def search(self, taxon_id: int, keyword: Optional[str] = None) -> list: ...


class MeasurementSearch:
    """
    Debounced measurement lookup for the "add measurements" picker.

    Every call takes a generation token and sleeps for the debounce window.
    Only the newest call reaches the catalog, and its result is returned only
    if no newer call (or ``cancel()``) happened while the request was in
    flight. Superseded calls return ``None``.
    """

    def __init__(self, catalog: MeasurementCatalog, debounce_ms: int = SEARCH_DEBOUNCE_MS):
        self.catalog = catalog
        self.debounce_s = max(debounce_ms, 0) / 1000
        self._generation = 0

    def cancel(self) -> None:
        # 入力クリア時: 待機中・通信中の検索結果をすべて捨てる
        self._generation += 1

    async def search(self, taxon_id: int, keyword: str, exclude: Iterable[str] = ()) -> Optional[list]:
        self._generation += 1
        token = self._generation

        await asyncio.sleep(self.debounce_s)
        if token != self._generation:
            return None

        try:
            definitions = await self.catalog.search(taxon_id, keyword or None)
        except Exception as e:
            logger.warning("measurement search for tsn=%s keyword=%r failed: %s", taxon_id, keyword, e)
            definitions = []

        if token != self._generation:
            return None

        skip = set(exclude)
        return [d for d in definitions if field_key_for(d) not in skip]
