from typing import Any, Dict, List

import httpx
import pytest

from slalom_core import DataStore, StorageFailure
from slalom_core import store as store_module


def _roster_row(racer_id: str, race_id: str = "race-1", team_id: str = "t1") -> Dict[str, Any]:
    return {"race_id": race_id, "team_id": team_id, "racer_id": racer_id, "class": "Varsity", "start_order": 1}


def test_local_put_get_delete() -> None:
    store = DataStore()

    assert store.put("rosters", _roster_row("a")) is True
    assert store.put("rosters", _roster_row("a"), if_absent=True) is False
    assert store.get("rosters", {"race_id": "race-1", "team_id": "t1", "racer_id": "a"})["class"] == "Varsity"

    row = store.get("rosters", {"race_id": "race-1", "team_id": "t1", "racer_id": "a"})
    row["class"] = "changed"
    assert store.get("rosters", {"race_id": "race-1", "team_id": "t1", "racer_id": "a"})["class"] == "Varsity"

    store.delete("rosters", {"race_id": "race-1", "team_id": "t1", "racer_id": "a", "class": "ignored"})
    assert store.get("rosters", {"race_id": "race-1", "team_id": "t1", "racer_id": "a"}) is None


def test_key_validation() -> None:
    store = DataStore()
    with pytest.raises(ValueError):
        store.put("unknown", {"id": 1})
    with pytest.raises(ValueError):
        store.put("rosters", {"race_id": "race-1", "team_id": "t1"})
    with pytest.raises(ValueError):
        store.query("rosters", {"racer_id": "a"})


def test_query_pages_by_sort_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SLALOM_PAGE_SIZE", "2")
    store = DataStore()
    for bib in (12, 3, 100, 1, 7):
        store.put("start_lists", {"race_id": "race-1", "bib": bib})
    store.put("start_lists", {"race_id": "race-2", "bib": 5})

    page = store.query("start_lists", {"race_id": "race-1"})
    assert [row["bib"] for row in page.items] == [1, 3]
    assert page.next_token == 2

    page = store.query("start_lists", {"race_id": "race-1"}, start=page.next_token)
    assert [row["bib"] for row in page.items] == [7, 12]

    assert [row["bib"] for row in store.query_all("start_lists", {"race_id": "race-1"})] == [1, 3, 7, 12, 100]
    assert len(store.scan("start_lists")) == 6


def test_local_json_mirror(tmp_path) -> None:
    DataStore(data_dir=tmp_path).put("teams", {"team_id": "t1", "name": "Alpha"})

    assert (tmp_path / "teams.json").exists()
    assert DataStore(data_dir=tmp_path).get("teams", {"team_id": "t1"}) == {"team_id": "t1", "name": "Alpha"}


def test_data_dir_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("SLALOM_DATA_DIR", str(tmp_path))
    DataStore().put("races", {"race_id": "race-1"})
    assert (tmp_path / "races.json").exists()


def test_write_failure_raises_storage_failure(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = DataStore(data_dir=blocker)
    with pytest.raises(StorageFailure):
        store.put("teams", {"team_id": "t1"})


# ----------------------------------------------------------------------
# Supabase backend


class _DummyResponse:
    def __init__(self, payload: Any = None, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://example.supabase.co")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("error", request=request, response=response)

    def json(self) -> Any:
        return self._payload


class _DummyClient:
    calls: List[Dict[str, Any]] = []
    rows: List[Dict[str, Any]] = []
    post_status = 201

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_DummyClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]) -> _DummyResponse:
        self.calls.append({"method": "GET", "endpoint": endpoint, "params": params, "headers": headers})
        return _DummyResponse(self.rows)

    def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]) -> _DummyResponse:
        self.calls.append({"method": "POST", "endpoint": endpoint, "params": params, "json": json, "headers": headers})
        return _DummyResponse(status_code=self.post_status)

    def delete(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]) -> _DummyResponse:
        self.calls.append({"method": "DELETE", "endpoint": endpoint, "params": params, "headers": headers})
        return _DummyResponse()


@pytest.fixture
def remote(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co/")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")
    monkeypatch.setenv("SUPABASE_ROSTERS_TABLE", "race_rosters")
    monkeypatch.setattr(_DummyClient, "calls", [])
    monkeypatch.setattr(_DummyClient, "rows", [])
    monkeypatch.setattr(_DummyClient, "post_status", 201)
    monkeypatch.setattr(store_module.httpx, "Client", _DummyClient)
    return DataStore()


def test_remote_query_filters_and_orders(remote: DataStore) -> None:
    _DummyClient.rows = [_roster_row("a"), "junk"]

    page = remote.query("rosters", {"race_id": "race-1", "team_id": "t1"}, limit=1)

    call = _DummyClient.calls[0]
    assert call["endpoint"] == "https://example.supabase.co/rest/v1/race_rosters"
    assert call["params"]["race_id"] == "eq.race-1"
    assert call["params"]["team_id"] == "eq.t1"
    assert call["params"]["order"] == "race_id.asc,team_id.asc,racer_id.asc"
    assert call["params"]["limit"] == 1
    assert call["headers"]["apikey"] == "test-key"
    assert [row["racer_id"] for row in page.items] == ["a"]
    assert page.next_token == 1


def test_remote_put_upserts(remote: DataStore) -> None:
    assert remote.put("rosters", _roster_row("a")) is True

    call = _DummyClient.calls[0]
    assert call["params"]["on_conflict"] == "race_id,team_id,racer_id"
    assert call["headers"]["Prefer"] == "resolution=merge-duplicates,return=minimal"
    assert call["json"]["racer_id"] == "a"


def test_remote_conditional_put_conflict(remote: DataStore) -> None:
    _DummyClient.post_status = 409
    assert remote.put("rosters", _roster_row("a"), if_absent=True) is False
    assert "on_conflict" not in _DummyClient.calls[0]["params"]

    _DummyClient.post_status = 500
    with pytest.raises(StorageFailure):
        remote.put("rosters", _roster_row("a"))


def test_remote_delete_uses_key_filters(remote: DataStore) -> None:
    remote.delete("start_lists", {"race_id": "race-1", "bib": 4, "racer_name": "ignored"})

    call = _DummyClient.calls[0]
    assert call["method"] == "DELETE"
    assert call["params"] == {"race_id": "eq.race-1", "bib": "eq.4"}
