import json
import logging

import pytest
import requests

from world_games_map import data_download
from world_games_map.data_download import DataSourceError, DatasetCache, DatasetManager

GAMES = [
    {"Country": "A", "Value": 1, "Unit": "million", "Chart": "Users by Market", "Name": "Total"},
    {"Country": "A", "Value": 5, "Unit": "billion", "Chart": "Revenue by Market", "Name": "Total"},
    {"Country": "B", "Value": 3, "Unit": "thousand", "Chart": "Users by Market", "Name": "Mobile Games"},
]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def data_dir(tmp_path, features):
    (tmp_path / "countries.geojson").write_text(
        json.dumps({"type": "FeatureCollection", "features": features})
    )
    (tmp_path / "countries_games.json").write_text(json.dumps(GAMES))
    (tmp_path / "countries.json").write_text(json.dumps([{"Country": "A", "GDP": "$1,000"}]))
    return tmp_path


def test_cache_returns_fresh_entry():
    clock = FakeClock()
    cache = DatasetCache(ttl=3600, clock=clock)
    loads = []

    def loader():
        loads.append(1)
        return len(loads)

    assert cache.get("games", loader) == 1
    clock.now += 3599
    assert cache.get("games", loader) == 1
    assert len(loads) == 1


def test_cache_refreshes_expired_entry_on_read():
    clock = FakeClock()
    cache = DatasetCache(ttl=3600, clock=clock)
    values = iter(["old", "new"])

    assert cache.get("games", lambda: next(values)) == "old"
    clock.now += 3601
    assert "games" not in cache
    assert cache.get("games", lambda: next(values)) == "new"


def test_cache_keeps_entry_when_loader_fails():
    clock = FakeClock()
    cache = DatasetCache(ttl=10, clock=clock)
    cache.get("games", lambda: "cached")
    clock.now += 11

    def failing():
        raise DataSourceError("down")

    with pytest.raises(DataSourceError):
        cache.get("games", failing)
    assert len(cache) == 1


def test_cache_is_bounded():
    clock = FakeClock()
    cache = DatasetCache(ttl=100, maxsize=2, clock=clock)

    cache.get("a", lambda: 1)
    clock.now += 1
    cache.get("b", lambda: 2)
    clock.now += 1
    cache.get("c", lambda: 3)

    assert len(cache) == 2
    assert "a" not in cache
    assert "c" in cache


def test_cache_invalidate():
    cache = DatasetCache()
    cache.get("a", lambda: 1)
    cache.get("b", lambda: 2)

    cache.invalidate("a")
    assert "a" not in cache and "b" in cache
    cache.invalidate()
    assert len(cache) == 0


def test_cache_rejects_bad_arguments():
    with pytest.raises(ValueError):
        DatasetCache(ttl=-1)
    with pytest.raises(ValueError):
        DatasetCache(maxsize=0)


def test_manager_reads_local_files(data_dir):
    dm = DatasetManager(data_dir=str(data_dir))

    features = dm.get_geo_features()
    assert [f["properties"]["Country"] for f in features] == ["A", "B", "C"]
    assert dm.get_country_records() == [{"Country": "A", "GDP": "$1,000"}]
    assert dm.get_game_records() == GAMES


def test_manager_caches_datasets(data_dir):
    dm = DatasetManager(data_dir=str(data_dir))
    first = dm.get_game_records()

    (data_dir / "countries_games.json").write_text("[]")
    assert dm.get_game_records() == first

    dm.invalidate(data_download.GAME_RECORDS)
    assert dm.get_game_records() == []


def test_manager_filters_game_records(data_dir):
    dm = DatasetManager(data_dir=str(data_dir))

    users = dm.get_game_records(chart="Users by Market")
    assert [r["Country"] for r in users] == ["A", "B"]

    mobile = dm.get_game_records(chart="Users by Market", name="Mobile Games")
    assert mobile == [GAMES[2]]


def test_manager_country_game_records(data_dir):
    dm = DatasetManager(data_dir=str(data_dir))

    assert dm.get_country_game_records("A") == GAMES[:2]
    assert dm.get_country_game_records("B") == [GAMES[2]]
    assert dm.get_country_game_records("Z") == []


def test_manager_missing_file_raises(tmp_path):
    dm = DatasetManager(data_dir=str(tmp_path))

    with pytest.raises(DataSourceError):
        dm.get_game_records()


def test_manager_rejects_invalid_json(data_dir):
    (data_dir / "countries_games.json").write_text("{not json")
    dm = DatasetManager(data_dir=str(data_dir))

    with pytest.raises(DataSourceError):
        dm.get_game_records()


def test_manager_rejects_non_list_records(data_dir, caplog):
    (data_dir / "countries_games.json").write_text(json.dumps({"Country": "A"}))
    dm = DatasetManager(data_dir=str(data_dir))

    with caplog.at_level(logging.ERROR), pytest.raises(DataSourceError):
        dm.get_game_records()

    assert "Expected a list of records for countriesGamesData" in caplog.text


def test_manager_rejects_invalid_geojson(data_dir, caplog):
    (data_dir / "countries.geojson").write_text(json.dumps({"type": "Point", "coordinates": [0, 0]}))
    dm = DatasetManager(data_dir=str(data_dir))

    with caplog.at_level(logging.ERROR), pytest.raises(DataSourceError):
        dm.get_geo_features()

    assert "Invalid GeoJSON feature collection for geoJsonCountries" in caplog.text


def test_manager_fetches_over_http(features):
    session = FakeSession(
        {
            "http://store/api/countries-geojson": FakeResponse(features),
            "http://store/api/countries-games": FakeResponse(GAMES),
        }
    )
    dm = DatasetManager(base_url="http://store/", session=session)

    assert len(dm.get_geo_features()) == 3
    assert dm.get_game_records() == GAMES
    dm.get_game_records(chart="Users by Market")
    assert session.calls == [
        "http://store/api/countries-geojson",
        "http://store/api/countries-games",
    ]


def test_manager_surfaces_http_failures():
    session = FakeSession(
        {
            "http://store/api/countries-games": FakeResponse(None, status=500),
            "http://store/api/countries": requests.ConnectionError("refused"),
        }
    )
    dm = DatasetManager(base_url="http://store", session=session)

    with pytest.raises(DataSourceError):
        dm.get_game_records()
    with pytest.raises(DataSourceError):
        dm.get_country_records()


def test_manager_unknown_dataset(data_dir):
    dm = DatasetManager(data_dir=str(data_dir))

    with pytest.raises(KeyError):
        dm.get("unknown")


def test_game_metric_key():
    assert data_download.game_metric_key("Users by Market", "Total") == "Users by Market for Total"
    assert data_download.game_metric_key(None, None) == " for "
