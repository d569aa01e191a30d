import pytest
from fastapi.testclient import TestClient

from app import main as main_module


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, store, make_racer) -> TestClient:
    for index in range(1, 7):
        make_racer(f"f{index}", "t1", "Female", "Varsity", name=f"Skier {index}")
    make_racer("p1", "t1", "Female", "Provisional", name="Pat Prov")
    monkeypatch.setattr(main_module, "store", lambda: store)
    return TestClient(main_module.app)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_directory_and_races(client: TestClient) -> None:
    teams = client.get("/teams").json()["teams"]
    assert [team["teamId"] for team in teams] == ["t1", "t2", "t3"]
    assert teams[2]["nonLeague"] is True
    assert client.get("/teams/t9").status_code == 404

    races = client.get("/races").json()["races"]
    assert [race["raceId"] for race in races] == ["race-1", "race-2", "race-locked"]
    assert client.get("/races/missing").status_code == 404


def test_update_race_validation(client: TestClient) -> None:
    response = client.patch("/races/race-2", json={"locked": True, "name": "Renamed"})
    assert response.status_code == 200
    assert response.json()["locked"] is True
    assert response.json()["name"] == "Renamed"

    assert client.patch("/races/race-2", json={}).status_code == 400
    assert client.patch("/races/race-2", json={"date": "24/01/2026"}).status_code == 400


def test_roster_flow(client: TestClient) -> None:
    for index in range(1, 6):
        response = client.post("/races/race-1/roster/t1/add", json={"racerId": f"f{index}"})
        assert response.status_code == 201

    body = response.json()
    assert body["raceId"] == "race-1"
    assert [(entry["racerId"], entry["class"], entry["startOrder"]) for entry in body["entries"]][-1] == ("f5", "Varsity", 5)

    over_cap = client.post("/races/race-1/roster/t1/add", json={"racerId": "f6"})
    assert over_cap.status_code == 400
    assert "capped" in over_cap.json()["detail"]

    duplicate = client.post("/races/race-1/roster/t1/add", json={"racerId": "f1"})
    assert duplicate.status_code == 409

    alternate = client.post("/races/race-1/roster/t1/add", json={"racerId": "f6", "class": "Varsity Alternate"})
    assert alternate.json()["entries"][-1]["class"] == "Varsity Alternate"

    moved = client.post("/races/race-1/roster/t1/move", json={"racerId": "f6", "direction": "up"})
    entries = {entry["racerId"]: entry for entry in moved.json()["entries"]}
    assert (entries["f6"]["class"], entries["f6"]["startOrder"]) == ("Varsity", 5)
    assert entries["f5"]["class"] == "Varsity Alternate"

    client.post("/races/race-1/roster/t1/add", json={"racerId": "p1"})
    locked = client.patch("/races/race-1/roster/t1/entry/p1", json={"class": "Varsity"})
    assert locked.status_code == 400

    removed = client.delete("/races/race-1/roster/t1/entry/f1")
    assert [entry["racerId"] for entry in removed.json()["entries"]].count("f1") == 0

    copied = client.post("/races/race-2/roster/t1/copy", json={"fromRaceId": "race-1"})
    assert len(copied.json()["entries"]) == len(removed.json()["entries"])

    counts = client.post("/races/roster-counts", json={"raceIds": ["race-1", "race-2"], "teamIds": ["t1"]})
    assert counts.json()["counts"]["race-2"]["t1"] == len(copied.json()["entries"])


def test_locked_race_returns_423(client: TestClient) -> None:
    response = client.post("/races/race-locked/roster/t1/add", json={"racerId": "f1"})
    assert response.status_code == 423
    assert client.post("/races/race-locked/start-list/generate").status_code == 423
    assert client.delete("/races/race-locked").status_code == 423


def test_start_list_and_results(client: TestClient) -> None:
    client.post("/races/race-1/roster/t1/add", json={"racerId": "f1"})
    client.post("/races/race-1/roster/t1/add", json={"racerId": "f2"})

    assert client.post("/races/race-1/start-list/excluded", json={"excludedBibs": [1]}).json()["excludedBibs"] == [1]
    generated = client.post("/races/race-1/start-list/generate").json()
    assert [entry["bib"] for entry in generated["entries"]] == [2, 3]
    assert generated["excludedBibs"] == [1]
    assert "Female" in generated["drawOrder"]
    assert client.get("/races/race-1/start-list/excluded").json()["excludedBibs"] == [1]

    xml = (
        "<CurrentSex>F</CurrentSex>"
        "<Comp><Bib>2</Bib><Name>{}</Name><CompClass>V</CompClass>"
        "<Time1><Status>1</Status><MicroStart>1000000</MicroStart><MicroFinish>1250000</MicroFinish></Time1></Comp>"
    ).format(generated["entries"][0]["racerName"])
    results = client.post("/races/race-1/results", json={"xml": xml})
    assert results.status_code == 200
    body = results.json()
    assert body["entries"][0]["run1TimeSec"] == 0.25
    assert body["entries"][0]["totalPoints"] == 100
    assert body["issues"] == []
    assert [group["class"] for group in body["groups"]][:2] == ["Varsity", "Varsity"]

    fetched = client.get("/races/race-1/results").json()
    assert fetched["entries"] == body["entries"]
    assert client.post("/races/race-1/results", json={"xml": ""}).status_code == 400

    copied = client.post("/races/race-2/start-list/copy", json={"fromRaceId": "race-1"})
    assert [entry["bib"] for entry in copied.json()["entries"]] == [2, 3]


def test_delete_race_cascades(client: TestClient, store) -> None:
    client.post("/races/race-1/roster/t1/add", json={"racerId": "f1"})
    client.post("/races/race-1/start-list/generate")

    assert client.delete("/races/race-1").status_code == 200
    assert store.query_all("rosters", {"race_id": "race-1", "team_id": "t1"}) == []
    assert store.query_all("start_lists", {"race_id": "race-1"}) == []
    assert client.get("/races/race-1").status_code == 404
