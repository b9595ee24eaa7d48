from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Tuple

from lankaqr.logging import get_logger
from lankaqr.service.metrics import Metrics
from lankaqr.storage.common import COMPANIES, DocumentStore, branches_path, cashiers_path
from lankaqr.storage.models import Branch, Cashier, Company

logger = get_logger(__name__)


class TenantDirectory:
    """Slug lookups across the company → branch → cashier hierarchy.

    Found entities are cached for ``ttl_ms`` so a burst of guard checks on
    one page load hits the store once; misses are never cached. Hits and
    misses are counted on the injected ``Metrics``.
    """

    def __init__(self, store: DocumentStore, metrics: Metrics, *, ttl_ms: int = 5000) -> None:
        self.store = store
        self.metrics = metrics
        self.ttl_ms = ttl_ms
        self._cache: Dict[Tuple[str, ...], Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _cache_get(self, key: Tuple[str, ...]) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                stored_at, value = entry
                if (time.monotonic() - stored_at) * 1000 < self.ttl_ms:
                    self.metrics.increment_cache_hit()
                    return True, value
                del self._cache[key]
        self.metrics.increment_cache_miss()
        return False, None

    def _cache_put(self, key: Tuple[str, ...], value: Any) -> None:
        if value is None or self.ttl_ms <= 0:
            return
        with self._lock:
            self._cache[key] = (time.monotonic(), value)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    async def company_by_slug(self, slug: str) -> Optional[Company]:
        key = ("company", slug)
        hit, value = self._cache_get(key)
        if hit:
            return value
        doc = await self.store.find_one(COMPANIES, {"slug": slug})
        company = Company.from_document(doc) if doc else None
        self._cache_put(key, company)
        return company

    async def branch_by_slug(self, company_id: str, slug: str) -> Optional[Branch]:
        key = ("branch", company_id, slug)
        hit, value = self._cache_get(key)
        if hit:
            return value
        doc = await self.store.find_one(branches_path(company_id), {"slug": slug})
        branch = Branch.from_document(company_id, doc) if doc else None
        self._cache_put(key, branch)
        return branch

    async def cashier_by_slug(
        self, company_id: str, branch_id: str, slug: str
    ) -> Optional[Cashier]:
        key = ("cashier", company_id, branch_id, slug)
        hit, value = self._cache_get(key)
        if hit:
            return value
        collection = cashiers_path(company_id, branch_id)
        doc = await self.store.find_one(collection, {"slug": slug})
        if doc is None:
            # Older cashier records only carry a username
            doc = await self.store.find_one(collection, {"username": slug})
        cashier = Cashier.from_document(company_id, branch_id, doc) if doc else None
        self._cache_put(key, cashier)
        return cashier

    async def mark_cashier_active(self, company_id: str, branch_id: str, cashier_id: str) -> bool:
        collection = cashiers_path(company_id, branch_id)
        if await self.store.get(collection, cashier_id) is None:
            return False
        await self.store.update(collection, cashier_id, {"status": "active", "updated_at": time.time()})
        self.invalidate()
        return True
