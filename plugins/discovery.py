"""
Plugin discovery from disk.

Plugins are discovered from $CHATWRAP_HOME/plugins/, one directory each:
  - PLUGIN.yaml  (manifest: id, name, version, permissions, settings, ...)
  - plugin.py    (either ``create_plugin(manifest)`` returning a Plugin, or a
                  ``Plugin`` subclass exported as ``plugin_class``)

A broken directory is logged and skipped; it never stops discovery of the
others.
"""

import importlib.util
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError

from plugins.base import Plugin, PluginManifest

logger = logging.getLogger(__name__)

MANIFEST_FILE = "PLUGIN.yaml"
HANDLER_FILE = "plugin.py"


def load_plugin_dir(plugin_dir: Path) -> Optional[Plugin]:
    """Load one plugin directory, or return None if it is not usable."""
    manifest_path = plugin_dir / MANIFEST_FILE
    handler_path = plugin_dir / HANDLER_FILE
    if not manifest_path.exists() or not handler_path.exists():
        return None

    try:
        raw = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.warning("Skipping %s: invalid %s (%s)", plugin_dir.name, MANIFEST_FILE, e)
        return None
    if not raw or not isinstance(raw, dict):
        logger.warning("Skipping %s: invalid %s", plugin_dir.name, MANIFEST_FILE)
        return None

    try:
        manifest = PluginManifest.model_validate(raw)
    except ValidationError as e:
        logger.warning("Skipping %s: manifest does not validate: %s", plugin_dir.name, e)
        return None

    spec = importlib.util.spec_from_file_location(f"chatwrap_plugin_{manifest.id.replace('-', '_')}", handler_path)
    if spec is None or spec.loader is None:
        logger.warning("Skipping %s: could not load %s", manifest.id, HANDLER_FILE)
        return None

    try:
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    except Exception as e:
        logger.warning("Skipping %s: error importing %s: %s", manifest.id, HANDLER_FILE, e)
        return None

    factory = getattr(module, "create_plugin", None)
    plugin_class = getattr(module, "plugin_class", None)
    try:
        if callable(factory):
            plugin = factory(manifest)
        elif isinstance(plugin_class, type) and issubclass(plugin_class, Plugin):
            plugin_class.manifest = manifest
            plugin = plugin_class()
        else:
            logger.warning("Skipping %s: no create_plugin() or plugin_class found", manifest.id)
            return None
    except Exception as e:
        logger.warning("Skipping %s: failed to construct plugin: %s", manifest.id, e)
        return None

    if not isinstance(plugin, Plugin):
        logger.warning("Skipping %s: factory did not return a Plugin", manifest.id)
        return None

    logger.info("Discovered plugin '%s' (%s)", manifest.id, plugin_dir)
    return plugin


def discover_plugins(plugins_dir: Path) -> List[Plugin]:
    """Load every usable plugin under ``plugins_dir``, sorted by directory name."""
    if not plugins_dir.exists():
        return []

    plugins = []
    for plugin_dir in sorted(plugins_dir.iterdir()):
        if not plugin_dir.is_dir():
            continue
        plugin = load_plugin_dir(plugin_dir)
        if plugin is not None:
            plugins.append(plugin)
    return plugins
