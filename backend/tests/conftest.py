from typing import Callable, Dict

import pytest

from slalom_core import DataStore

ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_ROSTERS_TABLE",
    "SLALOM_DATA_DIR",
    "SLALOM_PAGE_SIZE",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def store() -> DataStore:
    """In-memory store with three teams and three races."""

    data = DataStore()
    data.put("teams", {"team_id": "t1", "name": "Alpha HS", "non_league": False})
    data.put("teams", {"team_id": "t2", "name": "Bravo HS", "non_league": False})
    data.put("teams", {"team_id": "t3", "name": "Guest Academy", "non_league": True})
    data.put("races", {"race_id": "race-1", "name": "Opener", "location": "Meadows", "date": "2026-01-10", "type": "Slalom", "locked": False, "independent": False})
    data.put("races", {"race_id": "race-2", "name": "Second", "location": "Skibowl", "date": "2026-01-24", "type": "Giant Slalom", "locked": False, "independent": False})
    data.put("races", {"race_id": "race-locked", "name": "Final", "location": "Timberline", "date": "2026-02-14", "type": "Slalom", "locked": True, "independent": False})
    return data


@pytest.fixture
def make_racer(store: DataStore) -> Callable[..., Dict[str, str]]:
    def _make(racer_id: str, team_id: str, gender: str, base_class: str, name: str = "") -> Dict[str, str]:
        record = {
            "racer_id": racer_id,
            "team_id": team_id,
            "name": name or f"Racer {racer_id}",
            "gender": gender,
            "class": base_class,
        }
        store.put("racers", record)
        return record

    return _make
