from __future__ import annotations

import logging
from typing import Optional

import requests

from xpos.domain.errors import CatalogUnavailableError, ValidationError
from xpos.domain.models import Currency

log = logging.getLogger("xpos.catalog")


class CurrencyCatalogService:
    """Local mirror of the currency catalog owned by another system.

    The core only reads currencies; ``refresh`` pulls the remote list and
    upserts it by code, falling back to whatever is already mirrored.
    """

    def __init__(self, repo, url: Optional[str] = None, timeout: float = 10.0):
        self.repo = repo
        self.url = url
        self.timeout = timeout

    def _fetch_json(self, url: str):
        r = requests.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def _extract_currencies(self, data) -> list[dict]:
        # accepted shapes: [{...}, ...] or {"currencies": [{...}, ...]}
        items = data.get("currencies") if isinstance(data, dict) else data
        if not isinstance(items, list) or not items:
            raise CatalogUnavailableError(f"Catalog response has no currencies. Raw: {data}")

        parsed = []
        for item in items:
            if not isinstance(item, dict) or not str(item.get("code", "")).strip():
                raise CatalogUnavailableError(f"Catalog entry without a code: {item}")
            code = str(item["code"]).strip().upper()
            parsed.append(
                {
                    "code": code,
                    "name": str(item.get("name") or code),
                    "symbol": str(item.get("symbol") or ""),
                    "active": bool(item.get("active", item.get("is_active", True))),
                }
            )
        return parsed

    def refresh(self) -> list[Currency]:
        last_err = None
        if self.url:
            try:
                data = self._fetch_json(self.url)
                for item in self._extract_currencies(data):
                    self.repo.upsert_currency(item["code"], item["name"], item["symbol"], item["active"])
                currencies = self.repo.list_currencies()
                log.info("catalog_refreshed url=%s count=%s", self.url, len(currencies))
                return currencies
            except (requests.RequestException, ValueError, ValidationError, CatalogUnavailableError) as e:
                last_err = e
                log.warning("catalog_source_failed url=%s error=%s", self.url, e)

        cached = self.repo.list_currencies()
        if cached:
            log.warning("catalog_fallback_cached count=%s", len(cached))
            return cached

        raise CatalogUnavailableError(f"Currency catalog fetch failed and nothing is cached. Last error: {last_err}")

    def list_currencies(self, active_only: bool = True) -> list[Currency]:
        return self.repo.list_currencies(active_only=active_only)

    def get_by_code(self, code: str) -> Optional[Currency]:
        return self.repo.get_currency_by_code(code)
