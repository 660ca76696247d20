import logging
import ipywidgets as widgets
from IPython.display import display, clear_output

# Local package import
from world_games_map import data_download


class MapControls:
    def __init__(self, renderer, dm=None, default_country_metric: str = None):
        """
        Sidebar controls driving a ChoroplethRenderer.

        Args:
            renderer (ChoroplethRenderer): Renderer to update on selection changes.
            dm (DatasetManager, optional): When given, game records are refetched
                filtered by the selected chart and content.
            default_country_metric (str, optional): Initially selected country metric.
        """
        self.renderer = renderer
        self.dm = dm
        self.output = widgets.Output()
        config = renderer.map_config

        country_options = [("Select Country Data", "")] + [
            (label, key) for key, label in config["country_metrics"].items()
        ]
        self.country_metric = widgets.Dropdown(
            options=country_options,
            value=default_country_metric or "",
            description="Country data:",
            style={"description_width": "initial"},
        )
        self.game_chart = widgets.Dropdown(
            options=[("Select Game Data Type", "")]
            + [(chart, chart) for chart in config["game_charts"]],
            value="",
            description="Game data type:",
            style={"description_width": "initial"},
        )
        self.game_content = widgets.Dropdown(
            options=[("Select Game Data Content", "")]
            + [(content, content) for content in config["game_contents"]],
            value="",
            description="Game data content:",
            style={"description_width": "initial"},
        )
        self.hide_sidebar = widgets.Checkbox(value=False, description="Hide sidebar")

        self.country_metric.observe(self._on_country_metric_change, names="value")
        self.game_chart.observe(self._on_game_change, names="value")
        self.game_content.observe(self._on_game_change, names="value")
        self.hide_sidebar.observe(self._on_hide_sidebar_change, names="value")

        if default_country_metric:
            self.renderer.set_country_metric(default_country_metric)

        self._build_layout()

    @property
    def game_key(self) -> str:
        return data_download.game_metric_key(self.game_chart.value, self.game_content.value)

    def _on_country_metric_change(self, change):
        """Reclassify the country metric and redraw."""
        if self.renderer.set_country_metric(change["new"]):
            self.render()

    def _on_game_change(self, change):
        """Refetch game records for the new chart/content and redraw."""
        chart, name = self.game_chart.value, self.game_content.value
        if self.dm is not None:
            features = self.dm.get_geo_features()
            games = self.dm.get_game_records(chart=chart or None, name=name or None)
            self.renderer.set_data(features, games)

        self.renderer.set_game_metric(self.game_key)
        self.render()

    def _on_hide_sidebar_change(self, change):
        self.selectors.layout.display = "none" if change["new"] else None

    def render(self):
        """Replace the displayed map with a freshly built one."""
        with self.output:
            clear_output(wait=True)
            logging.info(f"Rendering layer: {self.renderer.layer_name}")
            display(self.renderer.to_folium())

    def _build_layout(self):
        """Assemble widget layout."""
        self.selectors = widgets.VBox(
            [
                widgets.HTML("<h3>Sort by Country Data</h3>"),
                self.country_metric,
                widgets.HTML("<h3>Sort by Game Data Type</h3>"),
                self.game_chart,
                widgets.HTML("<h3>Sort by Game Data Content</h3>"),
                self.game_content,
            ]
        )
        self.controls = widgets.VBox(
            [widgets.HTML("<h1>World Wide Games</h1>"), self.selectors, self.hide_sidebar]
        )

    def show(self):
        """Display the interactive widget."""
        display(self.controls, self.output)
        self.render()
