"""
Plugin Manager

Registers plugins, tracks which are enabled, and dispatches hooks to them.

Dispatch rules:
  - Plugins run in registration order, one at a time; each hook is awaited
    before the next plugin is called.
  - before_send_message / after_receive_message are folds: each plugin gets
    the previous plugin's output. Returning None means "no change".
  - on_message_edit / on_thread_create / on_settings_change are
    notifications; return values are ignored.
  - A hook that raises is logged and skipped. It never stops the remaining
    plugins or the caller's pipeline.

Plugin settings for every plugin are persisted together under a single key
in the key-value store, so they survive independently of any session.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Mapping, Optional

from chatwrap_constants import PLUGIN_SETTINGS_KEY
from conversation.models import Message
from conversation.storage import KeyValueStore
from plugins.base import Plugin, PluginContext, PluginHookError, PluginNotFoundError

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 50


class PluginManager:
    """
    Registry and hook dispatcher for chat plugins.

    Usage:
        manager = PluginManager(storage=MemoryStore())
        await manager.register_plugin(PromptTemplatesPlugin(storage=store))
        await manager.enable_plugin("prompt-templates")
        content = await manager.execute_before_send_message("/template ...")
    """

    def __init__(self, storage: Optional[KeyValueStore] = None):
        self._storage = storage
        self._plugins: "OrderedDict[str, Plugin]" = OrderedDict()
        self._enabled: set = set()
        self._context = PluginContext()
        self._settings_lock = asyncio.Lock()
        self._recent_errors: Deque[PluginHookError] = deque(maxlen=MAX_RECENT_ERRORS)

    # -- Context ---------------------------------------------------------------

    @property
    def context(self) -> PluginContext:
        return self._context

    def set_context(self, context: PluginContext) -> None:
        self._context = context

    @property
    def recent_errors(self) -> List[PluginHookError]:
        """Most recent hook failures, oldest first."""
        return list(self._recent_errors)

    # -- Registration ----------------------------------------------------------

    async def register_plugin(self, plugin: Plugin) -> None:
        """Install and register ``plugin``. Re-registering an id is a no-op."""
        plugin_id = plugin.id
        if plugin_id in self._plugins:
            logger.debug("Plugin %s already registered", plugin_id)
            return

        stored = await self._load_all_settings()
        if plugin_id in stored and isinstance(stored[plugin_id], dict):
            plugin.apply_settings(plugin.manifest.validate_settings(stored[plugin_id], strict=False))

        try:
            await plugin.on_install()
        except Exception as e:
            logger.error("Failed to register plugin %s: %s", plugin_id, e)
            raise

        self._plugins[plugin_id] = plugin
        logger.info("Plugin %s registered successfully", plugin.manifest.name)

    async def unregister_plugin(self, plugin_id: str) -> None:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return

        try:
            await self.disable_plugin(plugin_id)
            await plugin.on_uninstall()
        except Exception as e:
            logger.error("Failed to unregister plugin %s: %s", plugin_id, e)
            raise

        del self._plugins[plugin_id]
        logger.info("Plugin %s unregistered successfully", plugin.manifest.name)

    async def enable_plugin(self, plugin_id: str) -> None:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(plugin_id)
        if plugin_id in self._enabled:
            return

        try:
            await plugin.on_enable()
        except Exception as e:
            logger.error("Failed to enable plugin %s: %s", plugin_id, e)
            raise

        self._enabled.add(plugin_id)
        logger.info("Plugin %s enabled", plugin.manifest.name)

    async def disable_plugin(self, plugin_id: str) -> None:
        """Disable ``plugin_id``. Unknown or already-disabled ids are a no-op."""
        plugin = self._plugins.get(plugin_id)
        if plugin is None or plugin_id not in self._enabled:
            return

        try:
            await plugin.on_disable()
        except Exception as e:
            logger.error("Failed to disable plugin %s: %s", plugin_id, e)
            raise

        self._enabled.discard(plugin_id)
        logger.info("Plugin %s disabled", plugin.manifest.name)

    # -- Dispatch ----------------------------------------------------------------

    def _active_hooks(self, hook_name: str):
        """Snapshot of (plugin_id, bound hook) for enabled plugins, in order."""
        hooks = []
        for plugin_id, plugin in list(self._plugins.items()):
            if plugin_id not in self._enabled:
                continue
            fn = plugin.hook(hook_name)
            if fn is not None:
                hooks.append((plugin_id, fn))
        return hooks

    def _record_failure(self, plugin_id: str, hook_name: str, error: Exception) -> None:
        failure = PluginHookError(plugin_id, hook_name, error)
        self._recent_errors.append(failure)
        logger.error("%s", failure, exc_info=error)

    async def execute_before_send_message(self, content: str) -> str:
        modified = content
        for plugin_id, fn in self._active_hooks("before_send_message"):
            try:
                result = fn(modified, self._context)
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception as e:
                self._record_failure(plugin_id, "before_send_message", e)
                continue
            if result is not None:
                modified = result
        return modified

    async def execute_after_receive_message(self, message: Message) -> Message:
        modified = message
        for plugin_id, fn in self._active_hooks("after_receive_message"):
            try:
                result = fn(modified, self._context)
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception as e:
                self._record_failure(plugin_id, "after_receive_message", e)
                continue
            if result is not None:
                modified = result
        return modified

    async def _notify(self, hook_name: str, *args: Any) -> None:
        for plugin_id, fn in self._active_hooks(hook_name):
            try:
                result = fn(*args, self._context)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._record_failure(plugin_id, hook_name, e)

    async def execute_on_message_edit(self, message_id: str, new_content: str) -> None:
        await self._notify("on_message_edit", message_id, new_content)

    async def execute_on_thread_create(self, thread_id: str) -> None:
        await self._notify("on_thread_create", thread_id)

    async def execute_on_settings_change(self, new_settings: Mapping[str, Any]) -> None:
        await self._notify("on_settings_change", dict(new_settings))

    # -- Queries -----------------------------------------------------------------

    def get_plugin(self, plugin_id: str) -> Optional[Plugin]:
        return self._plugins.get(plugin_id)

    def get_all_plugins(self) -> List[Plugin]:
        return list(self._plugins.values())

    def get_enabled_plugins(self) -> List[Plugin]:
        return [p for pid, p in self._plugins.items() if pid in self._enabled]

    def is_plugin_enabled(self, plugin_id: str) -> bool:
        return plugin_id in self._enabled

    # -- Settings ----------------------------------------------------------------

    def get_plugin_settings(self, plugin_id: str) -> Dict[str, Any]:
        plugin = self._plugins.get(plugin_id)
        return plugin.settings if plugin else {}

    async def update_plugin_settings(self, plugin_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and merge ``patch`` into a plugin's settings, then persist.

        Raises PluginNotFoundError for unknown ids and PluginSettingsError
        when the patch does not match the declared schema.
        """
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(plugin_id)

        clean = plugin.manifest.validate_settings(patch)
        async with self._settings_lock:
            plugin.apply_settings(clean)
            all_settings = await self._load_all_settings()
            all_settings[plugin_id] = plugin.settings
            await self._save_all_settings(all_settings)
        return plugin.settings

    async def _load_all_settings(self) -> Dict[str, Dict[str, Any]]:
        if self._storage is None:
            return {}
        try:
            stored = await self._storage.get(PLUGIN_SETTINGS_KEY)
        except Exception as e:
            logger.warning("Failed to load plugin settings: %s", e)
            return {}
        return stored if isinstance(stored, dict) else {}

    async def _save_all_settings(self, all_settings: Dict[str, Dict[str, Any]]) -> None:
        if self._storage is None:
            return
        await self._storage.set(PLUGIN_SETTINGS_KEY, all_settings)

