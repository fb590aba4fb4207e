# backend/obsgrid/services/catalog/critterbase.py
"""
Taxon measurement catalog (Critterbase ``xref`` API).

The catalog itself is an external service; this module only fetches and
converts its measurement definitions, caching them per TSN for the lifetime
of the client.
"""
import logging
from typing import Optional

import httpx

from obsgrid.config import CATALOG_TIMEOUT_S, CRITTERBASE_API_URL
from obsgrid.schemas.measurement import TaxonMeasurements, definitions_from_catalog

logger = logging.getLogger(__name__)


class CatalogUnavailable(Exception):
    pass


class CritterbaseCatalog:
    def __init__(self, base_url: Optional[str] = None, timeout: float = CATALOG_TIMEOUT_S,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url or CRITTERBASE_API_URL).rstrip("/")
        self._client = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)
        self._cache: dict[int, TaxonMeasurements] = {}

    def close(self) -> None:
        self._client.close()

    def taxon_measurements(self, tsn: int) -> TaxonMeasurements:
        if tsn in self._cache:
            return self._cache[tsn]
        url = f"{self.base_url}/xref/taxon-measurements"
        try:
            resp = self._client.get(url, params={"tsn": tsn})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("measurement lookup failed for tsn=%s: %s", tsn, e)
            raise CatalogUnavailable(f"measurement catalog unavailable for taxon {tsn}") from e
        measurements = definitions_from_catalog(resp.json())
        self._cache[tsn] = measurements
        return measurements

    def search(self, tsn: int, keyword: Optional[str] = None) -> list:
        definitions = self.taxon_measurements(tsn).all()
        if not keyword:
            return definitions
        needle = keyword.strip().lower()
        return [d for d in definitions if needle in d.name.lower()]


_catalog: Optional[CritterbaseCatalog] = None


def get_catalog() -> CritterbaseCatalog:
    # アプリ全体で 1 インスタンス（TSN ごとのキャッシュを共有）
    global _catalog
    if _catalog is None:
        _catalog = CritterbaseCatalog()
    return _catalog
