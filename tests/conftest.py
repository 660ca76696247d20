import pytest


def _square(x: float, y: float) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[[x, y], [x + 1, y], [x + 1, y + 1], [x, y + 1], [x, y]]],
    }


def make_feature(country: str, x: float = 0, **properties) -> dict:
    return {
        "type": "Feature",
        "geometry": _square(x, 0),
        "properties": {"Country": country, **properties},
    }


@pytest.fixture
def features():
    return [
        make_feature("A", 0, pop=100),
        make_feature("B", 2, pop=200),
        make_feature("C", 4, pop=300),
    ]


@pytest.fixture
def games():
    return [{"Country": "B", "Value": 2, "Unit": "million"}]
