import copy
import html
import math
import logging
from dataclasses import dataclass, asdict
from decimal import Context, Decimal, ROUND_HALF_UP

import importlib_resources
import numpy as np
import pandas as pd
import folium
from jinja2 import Template

from world_games_map import data_utils

logging.basicConfig(level=logging.INFO)

NBINS = 7
PALETTE = ["11", "33", "55", "77", "99", "CC", "FF"]
DEFAULT_GRADES = [0, 10, 25, 40, 55, 70, 90, 100]

POSITIONS = {
    "topright": "top: 10px; right: 10px;",
    "topleft": "top: 10px; left: 60px;",
    "bottomright": "bottom: 30px; right: 10px;",
    "bottomleft": "bottom: 30px; left: 10px;",
}
BOX_CSS = (
    "position: fixed; z-index: 9999; padding: 6px 8px; font: 14px/16px Arial, sans-serif; "
    "background: rgba(255, 255, 255, 0.8); box-shadow: 0 0 15px rgba(0, 0, 0, 0.2); "
    "border-radius: 5px;"
)
SWATCH_CSS = "width: 18px; height: 18px; float: left; margin-right: 8px; opacity: 0.7;"


def create_dynamic_grades(values, nbins: int = NBINS, default: list = None) -> list:
    """
    Computes equal-interval bin boundaries for a set of samples.

    Args:
        values (iterable): Numeric samples. Non-finite values are ignored.
        nbins (int, optional): Number of sub-intervals. Defaults to 7.
        default (list, optional): Boundaries returned when no samples remain.
            Defaults to `DEFAULT_GRADES`.

    Returns:
        list: `nbins` boundaries `min + i * (max - min) / nbins`, or a copy of
            the default sequence when `values` is empty.

    Raises:
        ValueError: If `nbins` is not a positive integer.
    """
    if nbins <= 0:
        raise ValueError("`nbins` must be a positive integer.")

    values = np.asarray(list(values), dtype=float)
    values = values[np.isfinite(values)]

    if values.size == 0:
        return list(DEFAULT_GRADES if default is None else default)

    vmin, vmax = values.min(), values.max()
    interval = (vmax - vmin) / nbins

    return [float(vmin + i * interval) for i in range(nbins)]


def get_level(value: float, grades: list, palette: list = PALETTE) -> str:
    """Return the palette code of the highest boundary `value` exceeds."""
    top = min(len(grades), len(palette)) - 1
    for i in range(top, 0, -1):
        if value > grades[i]:
            return palette[i]
    return palette[0]


def get_color(
    country_value: float,
    game_value: float,
    legend_mode: bool = False,
    country_grades: list = None,
    game_grades: list = None,
    palette: list = PALETTE,
) -> str:
    """
    Encodes a country metric and a game metric into one `#RR00BB` color.

    The country level drives the red channel and the game level the blue
    channel. A zero game value leaves blue at `00`; a zero country value
    leaves red at `00`. In legend mode the country arguments are ignored and
    only the blue channel is set.

    Args:
        country_value (float): Value of the selected country metric.
        game_value (float): Unit-normalized game value.
        legend_mode (bool, optional): Render a game-only swatch. Defaults to False.
        country_grades (list, optional): Country bin boundaries.
        game_grades (list, optional): Game bin boundaries.
        palette (list, optional): Seven intensity codes, lowest first.

    Returns:
        str: The composite color.
    """
    if legend_mode:
        return "#0000" + get_level(game_value, game_grades, palette)

    country_code = get_level(country_value, country_grades, palette)
    if game_value == 0:
        return "#" + country_code + "0000"

    game_code = get_level(game_value, game_grades, palette)
    if country_value == 0:
        return "#0000" + game_code

    return "#" + country_code + "00" + game_code


def format_grade(value: float, precision: int = 1) -> str:
    """Format a boundary with half-up rounding, e.g. 128.571 -> "128.6"."""
    value = Decimal(repr(float(value)))
    quantum = Decimal(1).scaleb(-precision)
    context = Context(prec=max(28, value.adjusted() + precision + 2))
    return str(value.quantize(quantum, rounding=ROUND_HALF_UP, context=context))


def grade_label(grades: list, index: int, precision: int = 1) -> str:
    lower = format_grade(grades[index], precision)
    if index + 1 < len(grades):
        return f"{lower}–{format_grade(grades[index + 1], precision)}"
    return f"{lower}+"


def game_metric_label(game_key: str, missing: str = "N/A") -> str:
    if not game_key or game_key == " for ":
        return missing
    if "%" in game_key:
        return game_key.replace("%", "", 1)
    return game_key


def _properties(feature) -> dict:
    """Property bag of a GeoJSON feature, a GeoDataFrame row, or a plain dict."""
    if isinstance(feature, pd.Series):
        return feature.to_dict()
    if isinstance(feature, dict) and isinstance(feature.get("properties"), dict):
        return feature["properties"]
    return dict(feature)


def _is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value == ""


@dataclass
class FeatureStyle:
    fill_color: str
    stroke_color: str
    stroke_width: float
    stroke_opacity: float
    fill_opacity: float
    dash_pattern: str

    def to_leaflet(self) -> dict:
        """Path options as Leaflet (and folium style functions) expect them."""
        return {
            "fillColor": self.fill_color,
            "color": self.stroke_color,
            "weight": self.stroke_width,
            "opacity": self.stroke_opacity,
            "fillOpacity": self.fill_opacity,
            "dashArray": self.dash_pattern,
        }


@dataclass
class LegendEntry:
    color: str
    label: str


@dataclass
class InfoModel:
    country_name: str
    country_metric_label: str
    country_metric_value: object
    game_metric_label: str
    game_metric_value: object
    game_metric_unit: str


class InfoPanel:
    """Hover panel showing the metrics of the feature under the pointer."""

    def __init__(self, config: dict, country_key: str = "", game_key: str = ""):
        self.config = config
        self.country_key = country_key
        self.game_key = game_key
        self.model = None
        self._callbacks = []

    def on_update(self, callback) -> None:
        self._callbacks.append(callback)

    def set_keys(self, country_key: str, game_key: str) -> None:
        self.country_key = country_key
        self.game_key = game_key

    def update(self, feature=None):
        """
        Shows `feature`'s metrics, or the placeholder prompt when None.

        Returns:
            InfoModel | None: The new model; None means placeholder.
        """
        missing = self.config["missing_value"]

        if feature is None:
            self.model = None
        else:
            properties = _properties(feature)
            country_label = data_utils.resolve_metric_key(self.country_key) or missing
            country_value = properties.get(country_label)
            self.model = InfoModel(
                country_name=properties.get("Country"),
                country_metric_label=country_label,
                country_metric_value=missing if _is_missing(country_value) else country_value,
                game_metric_label=game_metric_label(self.game_key, missing),
                game_metric_value=properties.get("Value", missing),
                game_metric_unit=properties.get("Unit") or "",
            )

        for callback in self._callbacks:
            callback(self.model)

        return self.model

    def to_html(self) -> str:
        title = f"<h4>{html.escape(self.config['info_title'])}</h4>"
        if self.model is None:
            return title + html.escape(self.config["placeholder"])

        model = self.model
        return title + (
            f"<b>{html.escape(str(model.country_name))}</b><br/>"
            f"{html.escape(model.country_metric_label)}: "
            f"{html.escape(str(model.country_metric_value))}<br/>"
            f"{html.escape(model.game_metric_label)}: "
            f"{html.escape(f'{model.game_metric_value} {model.game_metric_unit}')}"
        )


class Legend:
    def __init__(self, config: dict):
        self.config = config
        self.country_entries = []
        self.game_entries = []

    def update(self, country_entries: list, game_entries: list) -> None:
        self.country_entries = list(country_entries)
        self.game_entries = list(game_entries)

    def to_html(self) -> str:
        def rows(entries):
            return "".join(
                f'<i style="background:{entry.color}; {SWATCH_CSS}"></i> '
                f"{html.escape(entry.label)}<br>"
                for entry in entries
            )

        return (
            f"<h4>{html.escape(self.config['country_legend_title'])}</h4>"
            + rows(self.country_entries)
            + f"<h4>{html.escape(self.config['game_legend_title'])}</h4>"
            + rows(self.game_entries)
        )


class InfoControl(folium.MacroElement):
    """
    Info panel box that its parent GeoJson layer fills on pointer enter/leave.

    The browser-side rendering follows `InfoPanel.to_html`: the hovered
    feature's country metric (or the missing marker), its game value and
    unit, and the placeholder prompt once the pointer leaves.
    """

    _template = Template(
        """
        {% macro html(this, kwargs) %}
        <div id="{{ this.get_name() }}" style="{{ this.css }}">{{ this.content }}</div>
        {% endmacro %}

        {% macro script(this, kwargs) %}
        (function() {
            var box = document.getElementById({{ this.get_name()|tojson }});
            var labels = {{ this.labels|tojson }};

            function esc(text) {
                return String(text)
                    .replace(/&/g, "&amp;").replace(/</g, "&lt;").replace(/>/g, "&gt;")
                    .replace(/"/g, "&quot;").replace(/'/g, "&#x27;");
            }

            function render(props) {
                var content = "<h4>" + esc(labels.title) + "</h4>";
                if (!props) {
                    box.innerHTML = content + esc(labels.placeholder);
                    return;
                }
                var value = props[labels.country];
                if (value === null || value === undefined || value === "") {
                    value = labels.missing;
                }
                var gameValue = ("Value" in props) ? props.Value : labels.missing;
                box.innerHTML = content
                    + "<b>" + esc(props.Country) + "</b><br/>"
                    + esc(labels.country) + ": " + esc(value) + "<br/>"
                    + esc(labels.game) + ": " + esc(gameValue + " " + (props.Unit || ""));
            }

            {{ this._parent.get_name() }}.on("mouseover", function(e) {
                render((e.propagatedFrom || e.layer).feature.properties);
            });
            {{ this._parent.get_name() }}.on("mouseout", function() {
                render(null);
            });
        })();
        {% endmacro %}
        """
    )

    def __init__(self, panel: InfoPanel, position: str = "topright"):
        super().__init__()
        self._name = "InfoControl"

        config = panel.config
        missing = config["missing_value"]
        self.css = f"{BOX_CSS} {POSITIONS[position]}"
        self.content = panel.to_html()
        self.labels = {
            "title": config["info_title"],
            "placeholder": config["placeholder"],
            "missing": missing,
            "country": data_utils.resolve_metric_key(panel.country_key) or missing,
            "game": game_metric_label(panel.game_key, missing),
        }


def _unchanged(previous, current) -> bool:
    if previous is current:
        return True
    if isinstance(previous, pd.DataFrame) and isinstance(current, pd.DataFrame):
        return previous.equals(current)
    if isinstance(previous, (list, tuple, dict)) and isinstance(current, (list, tuple, dict)):
        return previous == current
    return False


class ChoroplethRenderer:
    def __init__(self, map_config_file: str = None):
        """
        Initializes a ChoroplethRenderer instance.

        Args:
            map_config_file (str, optional): Path to a YAML map configuration file.
                If None, the default config in the package is used.

        Raises:
            FileNotFoundError: If the map configuration file does not exist.
        """
        resources = importlib_resources.files("world_games_map")
        if map_config_file is None:
            map_config_file = resources.joinpath("configs", "map_config.yaml")

        self.map_config_file = map_config_file
        self.info = None
        self.legend_panel = None
        self.refresh()

        self.info = InfoPanel(self.map_config["panel"])
        self.legend_panel = Legend(self.map_config["panel"])

        self.merged = data_utils.merge_features([], [])
        self.country_key = ""
        self.game_key = ""
        self.country_grades = self.default_grades
        self.game_grades = self.default_grades
        self.layer_version = 0
        self._data_inputs = None

        self._update_legend()

    def refresh(self) -> dict:
        """
        Loads or reloads the map configuration from the YAML file.

        Returns:
            dict: The parsed map configuration.
        """
        self.map_config = data_utils.read_config(self.map_config_file)

        if self.info is not None:
            self.info.config = self.map_config["panel"]
            self.legend_panel.config = self.map_config["panel"]

        return self.map_config

    def update(self, key: str, kwargs: dict) -> None:
        """
        Updates a specific section of the map configuration with new values.

        Raises:
            KeyError: If the specified key does not exist in the current map configuration.
            TypeError: If `kwargs` is not a dictionary.
        """
        if not isinstance(kwargs, dict):
            raise TypeError(f"`config` must be a dictionary, got {type(kwargs).__name__}")

        if key not in self.map_config:
            raise KeyError(f"Key '{key}' not found in map configuration")

        self.map_config[key].update(kwargs)

    @property
    def palette(self) -> list:
        return self.map_config["classification"]["palette"]

    @property
    def default_grades(self) -> list:
        return list(self.map_config["classification"]["default_grades"])

    @property
    def layer_name(self) -> str:
        return f"{self.country_key}-{self.game_key}-{self.layer_version}"

    # --- Recompute-on-change driver ---

    def set_data(self, features, games) -> bool:
        """
        Merges new features and game records and reclassifies both metrics.

        Returns:
            bool: False if the inputs equal the previous ones and nothing was recomputed.
        """
        if self._data_inputs is not None and all(
            _unchanged(previous, current)
            for previous, current in zip(self._data_inputs, (features, games))
        ):
            return False

        self._data_inputs = (copy.deepcopy(features), copy.deepcopy(games))
        self.merged = data_utils.merge_features(features, games)
        logging.info(f"Merged {len(self.merged)} features with game data.")

        self.country_grades = self._classify(self.country_samples())
        self.game_grades = self._classify(self.game_samples())
        self.layer_version += 1
        self._update_legend()

        return True

    def set_country_metric(self, key: str) -> bool:
        if key == self.country_key:
            return False

        self.country_key = key
        self.info.set_keys(self.country_key, self.game_key)
        self.country_grades = self._classify(self.country_samples())
        self.layer_version += 1
        self._update_legend()
        logging.info(f"Country metric set to: {key}")

        return True

    def set_game_metric(self, key: str) -> bool:
        if key == self.game_key:
            return False

        self.game_key = key
        self.info.set_keys(self.country_key, self.game_key)
        self.layer_version += 1
        logging.info(f"Game metric set to: {key}")

        return True

    def _classify(self, samples: list) -> list:
        config = self.map_config["classification"]
        return create_dynamic_grades(samples, config["nbins"], self.default_grades)

    # --- Per-feature values ---

    def country_samples(self) -> list:
        key = data_utils.resolve_metric_key(self.country_key)
        if not key or key not in self.merged.columns:
            return []

        samples = [data_utils.parse_number(value) for value in self.merged[key]]
        return [sample for sample in samples if sample is not None]

    def game_samples(self) -> list:
        return [
            data_utils.normalize_unit(value, unit)
            for value, unit in zip(self.merged["Value"], self.merged["Unit"])
        ]

    def country_value(self, feature) -> float:
        properties = _properties(feature)
        value = data_utils.parse_number(
            properties.get(data_utils.resolve_metric_key(self.country_key))
        )
        if value is None or not math.isfinite(value):
            return 0
        return value

    def game_value(self, feature) -> float:
        properties = _properties(feature)
        return data_utils.normalize_unit(properties.get("Value"), properties.get("Unit"))

    def get_color(self, country_value: float, game_value: float, legend_mode: bool = False) -> str:
        return get_color(
            country_value,
            game_value,
            legend_mode,
            self.country_grades,
            self.game_grades,
            self.palette,
        )

    # --- Styles and hover ---

    def _build_style(self, fill_color: str, key: str) -> FeatureStyle:
        return FeatureStyle(fill_color=fill_color, **self.map_config[key])

    def style(self, feature) -> FeatureStyle:
        fill_color = self.get_color(self.country_value(feature), self.game_value(feature))
        return self._build_style(fill_color, "style")

    def highlight_style(self, feature) -> FeatureStyle:
        fill_color = self.get_color(self.country_value(feature), self.game_value(feature))
        return self._build_style(fill_color, "highlight_style")

    def highlight(self, feature) -> FeatureStyle:
        """Pointer-enter: show the feature in the info panel and return its highlight style."""
        self.info.update(feature)
        return self.highlight_style(feature)

    def reset_highlight(self, feature) -> FeatureStyle:
        """Pointer-leave: clear the info panel and restore the default style."""
        self.info.update(None)
        return self.style(feature)

    # --- Legend ---

    def legend(self) -> dict:
        precision = self.map_config["classification"]["precision"]
        grades = self.country_grades
        game_grades = self.game_grades

        country_entries = [
            LegendEntry(self.get_color(grade + 1, grades[0]), grade_label(grades, i, precision))
            for i, grade in enumerate(grades)
        ]
        game_entries = [
            LegendEntry(
                self.get_color(grade + 1, grade + 1, legend_mode=True),
                grade_label(game_grades, i, precision),
            )
            for i, grade in enumerate(game_grades)
        ]

        return {"country": country_entries, "game": game_entries}

    def _update_legend(self) -> None:
        entries = self.legend()
        self.legend_panel.update(entries["country"], entries["game"])

    # --- Folium surface ---

    def _tooltip(self):
        missing = self.map_config["panel"]["missing_value"]
        country_key = data_utils.resolve_metric_key(self.country_key)

        fields, aliases = ["Country"], ["Country: "]
        if country_key and country_key in self.merged.columns:
            fields.append(country_key)
            aliases.append(f"{country_key}: ")
        fields += ["Value", "Unit"]
        aliases += [f"{game_metric_label(self.game_key, missing)}: ", "Unit: "]

        return folium.GeoJsonTooltip(fields=fields, aliases=aliases)

    def _overlay(self, content: str, position: str) -> folium.Element:
        return folium.Element(
            f'<div style="{BOX_CSS} {POSITIONS[position]}">{content}</div>'
        )

    def to_folium(self) -> folium.Map:
        """
        Builds a fresh interactive map of the current merged feature set.

        Every call produces a new map and feature layer; nothing from a
        previous render is reused.

        Returns:
            folium.Map: Map with the bivariate feature layer, info panel and legend.
        """
        config = self.map_config["folium"]

        m = folium.Map(
            location=config["location"],
            zoom_start=config["zoom_start"],
            min_zoom=config["min_zoom"],
            tiles=config["tiles"],
            attr=config["attribution"],
        )

        if len(self.merged) > 0:
            layer = folium.GeoJson(
                self.merged.to_json(),
                name=self.layer_name,
                style_function=lambda feature: self.style(feature).to_leaflet(),
                highlight_function=lambda feature: self.highlight_style(feature).to_leaflet(),
                tooltip=self._tooltip(),
            )
            InfoControl(self.info, config["info_position"]).add_to(layer)
            layer.add_to(m)
            m.keep_in_front(layer)
        else:
            m.get_root().html.add_child(
                self._overlay(self.info.to_html(), config["info_position"])
            )

        m.get_root().html.add_child(
            self._overlay(self.legend_panel.to_html(), config["legend_position"])
        )
        folium.LayerControl().add_to(m)

        logging.info(f"Rendered layer {self.layer_name}.")
        return m

    def save(self, path: str) -> str:
        self.to_folium().save(path)
        logging.info(f"Map saved to {path}.")
        return path

    def info_model(self) -> dict:
        return None if self.info.model is None else asdict(self.info.model)
