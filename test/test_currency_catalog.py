from pathlib import Path

import pytest
import requests

from xpos.domain.errors import CatalogUnavailableError
from xpos.repositories.sqlite_repo import SqliteRepository
from xpos.services.currency_catalog import CurrencyCatalogService

URL = "https://catalog.example.invalid/currencies.json"


def _repo(tmp_path: Path) -> SqliteRepository:
    repo = SqliteRepository(tmp_path / "catalog.db")
    repo.init_db()
    return repo


def test_refresh_upserts_remote_catalog_by_code(tmp_path: Path):
    repo = _repo(tmp_path)
    repo.add_currency("USD", "Dollar", "$")
    catalog = CurrencyCatalogService(repo, url=URL)
    catalog._fetch_json = lambda _url: {  # type: ignore[attr-defined]
        "currencies": [
            {"code": "usd", "name": "US Dollar", "symbol": "$"},
            {"code": "JPY", "name": "Yen", "symbol": "¥", "active": False},
        ]
    }

    currencies = catalog.refresh()

    assert [(c.code, c.name, c.active) for c in currencies] == [("JPY", "Yen", 0), ("USD", "US Dollar", 1)]
    assert [c.code for c in catalog.list_currencies()] == ["USD"]
    assert catalog.get_by_code("jpy").symbol == "¥"


def test_refresh_accepts_plain_list_payload(tmp_path: Path):
    repo = _repo(tmp_path)
    catalog = CurrencyCatalogService(repo, url=URL)
    catalog._fetch_json = lambda _url: [{"code": "EUR", "name": "Euro", "symbol": "€", "is_active": True}]  # type: ignore[attr-defined]

    assert [c.code for c in catalog.refresh()] == ["EUR"]


def test_refresh_falls_back_to_cached_catalog_when_remote_fails(tmp_path: Path):
    repo = _repo(tmp_path)
    repo.add_currency("ARS", "Peso", "$")
    catalog = CurrencyCatalogService(repo, url=URL)

    def fail(_url: str):
        raise requests.RequestException("network down")

    catalog._fetch_json = fail  # type: ignore[attr-defined]

    assert [c.code for c in catalog.refresh()] == ["ARS"]


def test_refresh_falls_back_when_payload_is_malformed(tmp_path: Path):
    repo = _repo(tmp_path)
    repo.add_currency("ARS", "Peso", "$")
    catalog = CurrencyCatalogService(repo, url=URL)
    catalog._fetch_json = lambda _url: {"rates": {"usd": 1}}  # type: ignore[attr-defined]

    assert [c.code for c in catalog.refresh()] == ["ARS"]


def test_refresh_without_remote_or_cache_raises(tmp_path: Path):
    repo = _repo(tmp_path)
    catalog = CurrencyCatalogService(repo, url=URL)

    def fail(_url: str):
        raise requests.ConnectionError("offline")

    catalog._fetch_json = fail  # type: ignore[attr-defined]

    with pytest.raises(CatalogUnavailableError, match="nothing is cached"):
        catalog.refresh()
