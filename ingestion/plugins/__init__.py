"""Source plugins: one per configured `plugin` name in collectors.yml."""

from ..collector.source_config import SourceConfig
from .base import SourcePlugin
from .github_prs import GithubPrsPlugin
from .jsearch import JSearchPlugin
from .mock_source import MockPlugin

PLUGINS: dict[str, type[SourcePlugin]] = {
    MockPlugin.plugin_name: MockPlugin,
    JSearchPlugin.plugin_name: JSearchPlugin,
    GithubPrsPlugin.plugin_name: GithubPrsPlugin,
}


def get_plugin(config: SourceConfig) -> SourcePlugin:
    """
    Instantiate the plugin a source is configured with.

    Raises:
        ValueError: If the plugin name is unknown or the plugin rejects its params
    """
    try:
        plugin_cls = PLUGINS[config.plugin]
    except KeyError:
        raise ValueError(f"Unknown plugin '{config.plugin}' for source '{config.name}'") from None
    return plugin_cls(config)


__all__ = ["SourcePlugin", "PLUGINS", "get_plugin", "MockPlugin", "JSearchPlugin", "GithubPrsPlugin"]
