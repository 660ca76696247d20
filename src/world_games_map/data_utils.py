import os
import math
import yaml
import logging

import numpy as np
import pandas as pd
import geopandas as gpd

logging.basicConfig(level=logging.INFO)

UNIT_MULTIPLIERS = (
    ("million", 1_000_000),
    ("thousand", 1_000),
    ("billion", 1_000_000_000),
)
STRIP_CHARS = str.maketrans("", "", "%$,")


def normalize_unit(value, unit: str) -> float:
    """
    Converts a magnitude and its unit suffix into a raw number.

    Args:
        value (float | int): The magnitude, e.g. 2 for "2 million".
        unit (str): Free-text unit; only the substrings "million", "thousand"
            and "billion" are recognised, checked in that order.

    Returns:
        float: The scaled value, or 0 if the result is not a finite number.
    """
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0

    unit = unit or ""
    for keyword, multiplier in UNIT_MULTIPLIERS:
        if keyword in unit:
            value = value * multiplier
            break

    if not math.isfinite(value):
        return 0

    return value


def parse_number(value):
    """
    Converts a metric value into a float.

    Display strings such as "12.3%" or "$4,500" are stripped of `%`, `$` and
    thousands separators; a string that still fails to parse yields 0.
    Numbers are returned as floats. Anything else (None, NaN, other types)
    returns None so callers can drop it from a sample set.
    """
    if isinstance(value, str):
        try:
            parsed = float(value.translate(STRIP_CHARS))
        except ValueError:
            return 0
        return parsed if not math.isnan(parsed) else 0

    if isinstance(value, (bool, np.bool_)):
        return None

    if isinstance(value, (int, float, np.integer, np.floating)):
        if math.isnan(value):
            return None
        return float(value)

    return None


def resolve_metric_key(key: str) -> str:
    """Strip the URL-encoded `%25` marker some metric keys carry."""
    if key and "%" in key:
        return key.replace("25", "", 1)
    return key


def _to_geodataframe(features) -> gpd.GeoDataFrame:
    """Build a GeoDataFrame from a FeatureCollection dict or a list of features."""
    if isinstance(features, gpd.GeoDataFrame):
        return features.copy()

    if isinstance(features, dict):
        features = features.get("features", [])

    features = list(features)
    if len(features) == 0:
        return gpd.GeoDataFrame(
            {"Country": [], "Value": [], "Unit": []}, geometry=[], crs="EPSG:4326"
        )

    return gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")


def merge_features(features, games) -> gpd.GeoDataFrame:
    """
    Joins geographic features with game records by country name.

    Each feature receives the `Value` and `Unit` of the first game record whose
    `Country` equals the feature's `Country`. Features without a match get
    `Value=0` and `Unit=""`. Output has the same length and order as
    `features`; neither input is modified.

    Args:
        features (list | dict | gpd.GeoDataFrame): GeoJSON features, a
            FeatureCollection, or an existing GeoDataFrame.
        games (list): Game records with at least `Country`, `Value` and `Unit`.

    Returns:
        gpd.GeoDataFrame: The merged feature set.

    Raises:
        KeyError: If the features have no `Country` property.
    """
    merged = _to_geodataframe(features)
    if "Country" not in merged.columns:
        raise KeyError("Features must carry a `Country` property.")

    merged = merged.drop(columns=[c for c in ("Value", "Unit") if c in merged.columns])

    games = pd.DataFrame(list(games))
    for column in ("Country", "Value", "Unit"):
        if column not in games.columns:
            games[column] = pd.Series(dtype=object)

    # First record per country wins
    lookup = games[["Country", "Value", "Unit"]].drop_duplicates("Country", keep="first")
    lookup = lookup.set_index("Country")

    merged["Value"] = merged["Country"].map(lookup["Value"])
    merged["Value"] = pd.to_numeric(merged["Value"], errors="coerce").fillna(0)
    merged["Unit"] = merged["Country"].map(lookup["Unit"]).fillna("").astype(str)

    return merged


def read_config(config_file: str) -> dict:
    """
    Reads a YAML configuration file and returns its contents as a dictionary.

    Args:
        config_file (str): Path to the YAML configuration file.

    Returns:
        dict: Parsed configuration data as a dictionary.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        yaml.YAMLError: If the YAML file contains invalid syntax or cannot be parsed.
    """

    # Check if the file exists before trying to open
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Config file not found: {config_file}")

    try:
        with open(config_file, "r") as file:
            config = yaml.safe_load(file)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML file: {e}")

    return config
