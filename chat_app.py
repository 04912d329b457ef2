"""Composition root for the chat core.

Builds the client, plugin manager, storage and conversation store as
explicit instances and wires them together. Nothing here is a module-level
singleton; an application may build as many ChatApp objects as it needs.

Usage:
    app = await create_chat_app()
    reply = await app.store.send_message("Hello")
    await app.aclose()
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from chatwrap_config import (
    build_client_options,
    build_default_settings,
    enabled_plugin_ids,
    get_chatwrap_home,
    load_config,
)
from client.model_client import ClientOptions, ModelClient
from conversation.storage import ChatStorage, KeyValueStore, MemoryStore
from conversation.store import ConversationStore
from plugins.base import Plugin
from plugins.discovery import discover_plugins
from plugins.manager import PluginManager
from plugins.templates import PromptTemplatesPlugin
from plugins.translator import AutoTranslatorPlugin, HttpTranslator, ModelTranslator

logger = logging.getLogger(__name__)


@dataclass
class ChatApp:
    client: ModelClient
    plugins: PluginManager
    storage: ChatStorage
    store: ConversationStore
    translator: Optional[HttpTranslator] = None
    discovered: List[str] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.client.aclose()
        if self.translator is not None:
            await self.translator.aclose()


async def create_chat_app(
    config: Optional[Dict[str, Any]] = None,
    kv_store: Optional[KeyValueStore] = None,
    client_options: Optional[ClientOptions] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    plugins_dir: Optional[Path] = None,
) -> ChatApp:
    """Build and initialize a ChatApp.

    Args:
        config: parsed config.yaml; loaded from CHATWRAP_HOME when None
        kv_store: durable key-value backend; an in-memory store when None
        client_options: overrides the options derived from config/env
        transport: httpx transport for the model API (tests inject a mock)
        plugins_dir: where to discover third-party plugins;
            $CHATWRAP_HOME/plugins when None
    """
    if config is None:
        config = load_config()
    kv_store = kv_store if kv_store is not None else MemoryStore()

    client = ModelClient(client_options or build_client_options(config), transport=transport)
    manager = PluginManager(storage=kv_store)
    storage = ChatStorage(kv_store)

    plugins_section = config.get("plugins") if isinstance(config.get("plugins"), dict) else {}
    translator_url = plugins_section.get("translator_url")
    translator = HttpTranslator(translator_url) if translator_url else None

    builtins: List[Plugin] = [
        PromptTemplatesPlugin(storage=kv_store),
        AutoTranslatorPlugin(translator=translator, fallback=ModelTranslator(client)),
    ]
    discovered = discover_plugins(plugins_dir or get_chatwrap_home() / "plugins")
    for plugin in builtins + discovered:
        await manager.register_plugin(plugin)

    for plugin_id in enabled_plugin_ids(config):
        if manager.get_plugin(plugin_id) is None:
            logger.warning("Enabled plugin %s is not installed", plugin_id)
            continue
        await manager.enable_plugin(plugin_id)

    store = ConversationStore(client, manager, storage, default_settings=build_default_settings(config))
    await store.initialize()

    return ChatApp(
        client=client,
        plugins=manager,
        storage=storage,
        store=store,
        translator=translator,
        discovered=[p.id for p in discovered],
    )
