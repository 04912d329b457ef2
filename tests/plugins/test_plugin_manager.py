"""Tests for plugins/manager.py: registration, hook folds, settings.

Covers:
- register is idempotent and runs on_install; failing install aborts
- enable/disable lifecycle, unknown ids, disable no-op
- before_send / after_receive folds in registration order
- a raising hook is isolated and recorded in recent_errors
- settings validation and persistence under one key
"""

from unittest.mock import AsyncMock

import pytest

from chatwrap_constants import PLUGIN_SETTINGS_KEY
from conversation.models import Message
from conversation.storage import MemoryStore
from plugins.base import (
    Plugin,
    PluginContext,
    PluginManifest,
    PluginNotFoundError,
    PluginSettingsError,
)
from plugins.manager import PluginManager


def _manifest(plugin_id, settings=None):
    return PluginManifest(
        id=plugin_id,
        name=plugin_id.title(),
        version="1.0.0",
        settings=settings or [],
    )


class SuffixPlugin(Plugin):
    """Appends its suffix to outgoing text and incoming replies."""

    def __init__(self, plugin_id, suffix, settings=None):
        self.manifest = _manifest(plugin_id)
        super().__init__(settings)
        self.suffix = suffix
        self.seen = []

    async def before_send_message(self, content, context):
        self.seen.append(content)
        return content + self.suffix

    async def after_receive_message(self, message, context):
        return message.model_copy(update={"content": message.content + self.suffix})


class BrokenPlugin(Plugin):
    manifest = _manifest("broken")

    async def before_send_message(self, content, context):
        raise RuntimeError("kaboom")

    async def after_receive_message(self, message, context):
        raise RuntimeError("kaboom")

    async def on_thread_create(self, thread_id, context):
        raise RuntimeError("kaboom")


class PassivePlugin(Plugin):
    """Returns None from every fold hook (meaning: no change)."""

    manifest = _manifest("passive")

    async def before_send_message(self, content, context):
        return None


class SyncPlugin(Plugin):
    """Implements its hooks as plain functions."""

    manifest = _manifest("sync")

    def __init__(self):
        super().__init__()
        self.created = []

    def before_send_message(self, content, context):
        return content + "!"

    def after_receive_message(self, message, context):
        return message.model_copy(update={"content": message.content.upper()})

    def on_thread_create(self, thread_id, context):
        self.created.append(thread_id)


class ConfigurablePlugin(Plugin):
    manifest = _manifest(
        "configurable",
        settings=[
            {"key": "enabled", "name": "Enabled", "type": "boolean", "default": True},
            {"key": "level", "name": "Level", "type": "number", "default": 1, "minimum": 0, "maximum": 10},
            {
                "key": "mode",
                "name": "Mode",
                "type": "select",
                "default": "fast",
                "options": [{"label": "Fast", "value": "fast"}, {"label": "Slow", "value": "slow"}],
            },
        ],
    )


async def _enabled(manager, *plugins):
    for plugin in plugins:
        await manager.register_plugin(plugin)
        await manager.enable_plugin(plugin.id)


# ---------------------------------------------------------------------------
# Registration & lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_register_calls_on_install_once(self):
        manager = PluginManager()
        plugin = PassivePlugin()
        plugin.on_install = AsyncMock()
        await manager.register_plugin(plugin)
        await manager.register_plugin(plugin)
        plugin.on_install.assert_awaited_once()
        assert manager.get_all_plugins() == [plugin]

    @pytest.mark.asyncio
    async def test_failing_install_aborts_registration(self):
        manager = PluginManager()
        plugin = PassivePlugin()
        plugin.on_install = AsyncMock(side_effect=RuntimeError("no disk"))
        with pytest.raises(RuntimeError):
            await manager.register_plugin(plugin)
        assert manager.get_plugin("passive") is None

    @pytest.mark.asyncio
    async def test_enable_unknown_raises(self):
        with pytest.raises(PluginNotFoundError):
            await PluginManager().enable_plugin("missing")

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled_is_noop(self):
        manager = PluginManager()
        plugin = PassivePlugin()
        plugin.on_disable = AsyncMock()
        await manager.register_plugin(plugin)

        await manager.disable_plugin("passive")
        await manager.disable_plugin("never-registered")

        plugin.on_disable.assert_not_awaited()
        assert not manager.is_plugin_enabled("passive")

    @pytest.mark.asyncio
    async def test_enable_then_disable(self):
        manager = PluginManager()
        plugin = PassivePlugin()
        plugin.on_enable = AsyncMock()
        plugin.on_disable = AsyncMock()
        await _enabled(manager, plugin)
        await manager.enable_plugin("passive")
        plugin.on_enable.assert_awaited_once()
        assert manager.get_enabled_plugins() == [plugin]

        await manager.disable_plugin("passive")
        plugin.on_disable.assert_awaited_once()
        assert manager.get_enabled_plugins() == []

    @pytest.mark.asyncio
    async def test_unregister_disables_and_uninstalls(self):
        manager = PluginManager()
        plugin = PassivePlugin()
        plugin.on_uninstall = AsyncMock()
        await _enabled(manager, plugin)

        await manager.unregister_plugin("passive")
        await manager.unregister_plugin("passive")

        plugin.on_uninstall.assert_awaited_once()
        assert manager.get_plugin("passive") is None
        assert not manager.is_plugin_enabled("passive")


# ---------------------------------------------------------------------------
# Hook dispatch
# ---------------------------------------------------------------------------


class TestFolds:
    @pytest.mark.asyncio
    async def test_before_send_runs_in_registration_order(self):
        manager = PluginManager()
        a, b = SuffixPlugin("a", "-A"), SuffixPlugin("b", "-B")
        await _enabled(manager, a, b)

        result = await manager.execute_before_send_message("hi")

        assert result == "hi-A-B"
        assert b.seen == ["hi-A"]

    @pytest.mark.asyncio
    async def test_failing_plugin_is_skipped(self):
        manager = PluginManager()
        b = SuffixPlugin("b", "-B")
        await _enabled(manager, BrokenPlugin(), b)

        result = await manager.execute_before_send_message("hi")

        assert result == "hi-B"
        assert b.seen == ["hi"]
        errors = manager.recent_errors
        assert len(errors) == 1
        assert errors[0].plugin_id == "broken"
        assert errors[0].hook == "before_send_message"

    @pytest.mark.asyncio
    async def test_none_means_unchanged(self):
        manager = PluginManager()
        await _enabled(manager, PassivePlugin())
        assert await manager.execute_before_send_message("same") == "same"

    @pytest.mark.asyncio
    async def test_disabled_plugins_are_not_called(self):
        manager = PluginManager()
        a = SuffixPlugin("a", "-A")
        await manager.register_plugin(a)
        assert await manager.execute_before_send_message("hi") == "hi"
        assert a.seen == []

    @pytest.mark.asyncio
    async def test_after_receive_fold(self):
        manager = PluginManager()
        await _enabled(manager, SuffixPlugin("a", "-A"), BrokenPlugin(), SuffixPlugin("b", "-B"))
        message = Message(role="assistant", content="reply", thread_id="thread-1")

        result = await manager.execute_after_receive_message(message)

        assert result.content == "reply-A-B"
        assert message.content == "reply"

    @pytest.mark.asyncio
    async def test_plain_function_hooks(self):
        manager = PluginManager()
        plugin = SyncPlugin()
        await _enabled(manager, plugin, SuffixPlugin("a", "-A"))
        message = Message(role="assistant", content="reply", thread_id="thread-1")

        assert await manager.execute_before_send_message("hi") == "hi!-A"
        assert (await manager.execute_after_receive_message(message)).content == "REPLY-A"
        await manager.execute_on_thread_create("thread-1")

        assert plugin.created == ["thread-1"]
        assert manager.recent_errors == []

    @pytest.mark.asyncio
    async def test_notifications_isolate_failures(self):
        manager = PluginManager()
        listener = PassivePlugin()
        listener.on_thread_create = AsyncMock()
        await _enabled(manager, BrokenPlugin(), listener)
        context = PluginContext(active_thread_id="thread-1")
        manager.set_context(context)

        await manager.execute_on_thread_create("thread-1")

        listener.on_thread_create.assert_awaited_once_with("thread-1", context)
        assert manager.recent_errors[-1].hook == "on_thread_create"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    @pytest.mark.asyncio
    async def test_defaults_from_manifest(self):
        manager = PluginManager()
        await manager.register_plugin(ConfigurablePlugin())
        assert manager.get_plugin_settings("configurable") == {"enabled": True, "level": 1, "mode": "fast"}

    @pytest.mark.asyncio
    async def test_update_persists_under_one_key(self):
        store = MemoryStore()
        manager = PluginManager(storage=store)
        await manager.register_plugin(ConfigurablePlugin())

        settings = await manager.update_plugin_settings("configurable", {"level": 5})

        assert settings["level"] == 5
        stored = await store.get(PLUGIN_SETTINGS_KEY)
        assert stored == {"configurable": {"enabled": True, "level": 5, "mode": "fast"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "patch",
        [{"level": 11}, {"level": "high"}, {"enabled": "yes"}, {"mode": "medium"}, {"unknown": 1}],
    )
    async def test_invalid_patch_rejected(self, patch):
        store = MemoryStore()
        manager = PluginManager(storage=store)
        await manager.register_plugin(ConfigurablePlugin())

        with pytest.raises(PluginSettingsError):
            await manager.update_plugin_settings("configurable", patch)

        assert manager.get_plugin_settings("configurable")["level"] == 1
        assert await store.get(PLUGIN_SETTINGS_KEY) is None

    @pytest.mark.asyncio
    async def test_update_unknown_plugin(self):
        with pytest.raises(PluginNotFoundError):
            await PluginManager().update_plugin_settings("missing", {})

    @pytest.mark.asyncio
    async def test_stored_settings_applied_on_register(self):
        store = MemoryStore()
        await store.set(PLUGIN_SETTINGS_KEY, {"configurable": {"level": 7, "mode": "bogus"}})
        manager = PluginManager(storage=store)

        await manager.register_plugin(ConfigurablePlugin())

        # Invalid stored values are dropped, valid ones kept
        assert manager.get_plugin_settings("configurable") == {"enabled": True, "level": 7, "mode": "fast"}
