# Standard library
import json
import logging
import os
import time

# Third-party libraries
import geojson
import importlib_resources
import requests

# Local package import
from world_games_map import data_utils

logging.basicConfig(level=logging.INFO, force=True)

WARNING = "\033[31m"
RESET = "\033[0m"

GEO_FEATURES = "geoJsonCountries"
COUNTRY_RECORDS = "allCountries"
GAME_RECORDS = "countriesGamesData"


class DataSourceError(Exception):
    """Raised when a dataset cannot be fetched or parsed."""


class DatasetCache:
    def __init__(self, ttl: float = 3600, maxsize: int = 16, clock=time.time):
        """
        A bounded cache whose entries expire `ttl` seconds after they are loaded.

        Expiry is checked on read: an expired or missing entry is reloaded
        through the loader passed to `get`.

        Args:
            ttl (float, optional): Seconds an entry stays fresh. Defaults to 3600.
            maxsize (int, optional): Maximum number of entries. Defaults to 16.
            clock (callable, optional): Time source, in seconds.

        Raises:
            ValueError: If `ttl` is negative or `maxsize` is not positive.
        """
        if ttl < 0:
            raise ValueError("`ttl` must not be negative.")
        if maxsize <= 0:
            raise ValueError("`maxsize` must be a positive integer.")

        self.ttl = ttl
        self.maxsize = maxsize
        self.clock = clock
        self._entries = {}

    def __contains__(self, key) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry["expires"] >= self.clock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key, loader):
        entry = self._entries.get(key)
        if entry is not None and entry["expires"] >= self.clock():
            return entry["value"]

        logging.info(f"Refreshing cached dataset '{key}'...")
        value = loader()

        if key not in self._entries and len(self._entries) >= self.maxsize:
            oldest = min(self._entries, key=lambda k: self._entries[k]["expires"])
            del self._entries[oldest]

        self._entries[key] = {"value": value, "expires": self.clock() + self.ttl}
        return value

    def invalidate(self, key=None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class DatasetManager:
    def __init__(
        self,
        base_url: str = None,
        data_dir: str = None,
        config_file: str = None,
        cache_ttl: float = None,
        session: requests.Session = None,
    ):
        """
        Fetches the geographic, country and game datasets and caches them.

        Exactly one source is used: `base_url` (a document store exposed over
        HTTP) if given, otherwise local JSON files under `data_dir`.

        Args:
            base_url (str, optional): Base URL of the data API.
            data_dir (str, optional): Directory holding the dataset files.
                Defaults to "data" in the working directory.
            config_file (str, optional): Path to a YAML data configuration file.
                If None, the default config in the package is used.
            cache_ttl (float, optional): Cache lifetime in seconds. Overrides the config.
            session (requests.Session, optional): Session used for HTTP requests.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
        """
        self.base_url = base_url
        self.data_dir = data_dir or os.path.join(os.getcwd(), "data")
        self.config_file = self._resolve_config_path(config_file, "data_config.yaml")
        self.config = data_utils.read_config(self.config_file)
        self.session = session or requests.Session()

        cache_config = self.config["cache"]
        self.cache = DatasetCache(
            ttl=cache_config["ttl"] if cache_ttl is None else cache_ttl,
            maxsize=cache_config["maxsize"],
        )

    def _resolve_config_path(self, provided_path, filename):
        resources = importlib_resources.files("world_games_map")
        return provided_path or resources.joinpath("configs", filename)

    def _dataset_config(self, dataset: str) -> dict:
        if dataset not in self.config["datasets"]:
            raise KeyError(f"Dataset '{dataset}' not found in data configuration")
        return self.config["datasets"][dataset]

    def _fetch_url(self, dataset: str):
        endpoint = self._dataset_config(dataset)["endpoint"]
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        logging.info(f"Downloading {url}...")
        response = self.session.get(url, timeout=self.config["request_timeout"])
        response.raise_for_status()
        return response.json()

    def _read_file(self, dataset: str):
        path = os.path.join(self.data_dir, self._dataset_config(dataset)["file"])

        logging.info(f"Reading {os.path.basename(path)}...")
        with open(path, "r") as file:
            return json.load(file)

    def load(self, dataset: str):
        """
        Fetches a dataset from its source, bypassing the cache.

        Raises:
            DataSourceError: If the dataset cannot be fetched or is malformed.
        """
        config = self._dataset_config(dataset)
        try:
            if self.base_url is not None:
                data = self._fetch_url(dataset)
            else:
                data = self._read_file(dataset)
        except (requests.RequestException, OSError, ValueError) as e:
            logging.error(f"{WARNING}Failed to retrieve {dataset}: {e}{RESET}")
            raise DataSourceError(f"Failed to retrieve {dataset}: {e}") from e

        if config.get("geojson"):
            return self._validate_geojson(dataset, data)

        if not isinstance(data, list):
            message = f"Expected a list of records for {dataset}, got {type(data).__name__}"
            logging.error(f"{WARNING}{message}{RESET}")
            raise DataSourceError(message)
        return data

    def _validate_geojson(self, dataset: str, data) -> list:
        # Documents may arrive as a bare list of features
        if isinstance(data, list):
            data = {"type": "FeatureCollection", "features": data}

        collection = geojson.loads(json.dumps(data))
        if not isinstance(collection, geojson.FeatureCollection) or not collection.is_valid:
            message = f"Invalid GeoJSON feature collection for {dataset}"
            logging.error(f"{WARNING}{message}{RESET}")
            raise DataSourceError(message)

        return data["features"]

    def get(self, dataset: str):
        return self.cache.get(dataset, lambda: self.load(dataset))

    def get_geo_features(self) -> list:
        return self.get(GEO_FEATURES)

    def get_country_records(self) -> list:
        return self.get(COUNTRY_RECORDS)

    def get_game_records(self, chart: str = None, name: str = None) -> list:
        """
        Returns game records, optionally filtered by chart type and content.

        Args:
            chart (str, optional): Chart type, e.g. "Revenue by Market".
            name (str, optional): Content, e.g. "Mobile Games".

        Returns:
            list: Matching game records.
        """
        records = self.get(GAME_RECORDS)

        fields = self.config["game_filter"]
        if chart:
            records = [r for r in records if r.get(fields["chart_field"]) == chart]
        if name:
            records = [r for r in records if r.get(fields["name_field"]) == name]

        return records

    def get_country_game_records(self, country: str) -> list:
        """Returns every game record for one country, in stored order."""
        return [r for r in self.get(GAME_RECORDS) if r.get("Country") == country]

    def invalidate(self, dataset: str = None) -> None:
        self.cache.invalidate(dataset)


def game_metric_key(chart: str, name: str) -> str:
    return f"{chart or ''} for {name or ''}"
