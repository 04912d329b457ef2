"""Tests for chat_app.py: wiring the chat core end to end."""

import textwrap

import pytest

from client.model_client import ClientOptions
from conversation.storage import MemoryStore
from chat_app import create_chat_app
from tests.fakes.fake_model_api import FakeModelAPI


async def _app(tmp_path, config=None, api=None, kv=None):
    return await create_chat_app(
        config=config or {},
        kv_store=kv,
        client_options=ClientOptions(api_key="test-key"),
        transport=(api or FakeModelAPI()).transport,
        plugins_dir=tmp_path / "plugins",
    )


class TestCreateChatApp:
    @pytest.mark.asyncio
    async def test_builtins_registered_and_store_ready(self, tmp_path):
        app = await _app(tmp_path)
        try:
            ids = [p.id for p in app.plugins.get_all_plugins()]
            assert ids == ["prompt-templates", "auto-translator"]
            assert app.plugins.get_enabled_plugins() == []
            assert app.store.active_thread is not None
        finally:
            await app.aclose()

    @pytest.mark.asyncio
    async def test_template_plugin_enabled_from_config(self, tmp_path):
        api = FakeModelAPI()
        config = {"plugins": {"enabled": ["prompt-templates", "not-installed"]}, "chat": {"context_window": 4}}
        app = await _app(tmp_path, config=config, api=api)
        try:
            assert app.store.session.settings.context_window == 4
            await app.store.send_message("/template explain-concept concept=entropy level=expert")
            sent = api.last_body["messages"][-1]["content"]
            assert sent.startswith("Explain entropy at a expert level.")
        finally:
            await app.aclose()

    @pytest.mark.asyncio
    async def test_discovered_plugins_registered(self, tmp_path):
        plugin_dir = tmp_path / "plugins" / "shout"
        plugin_dir.mkdir(parents=True)
        (plugin_dir / "PLUGIN.yaml").write_text("id: shout\nname: Shout\nversion: 1.0.0\n", encoding="utf-8")
        (plugin_dir / "plugin.py").write_text(
            textwrap.dedent(
                """\
                from plugins.base import Plugin


                class Shout(Plugin):
                    async def before_send_message(self, content, context):
                        return content.upper()


                plugin_class = Shout
                """
            ),
            encoding="utf-8",
        )
        api = FakeModelAPI()
        app = await _app(tmp_path, config={"plugins": {"enabled": ["shout"]}}, api=api)
        try:
            assert app.discovered == ["shout"]
            await app.store.send_message("quiet please")
            assert app.store.active_thread.messages[0].content == "QUIET PLEASE"
        finally:
            await app.aclose()

    @pytest.mark.asyncio
    async def test_resumes_session_from_shared_store(self, tmp_path):
        kv = MemoryStore()
        first = await _app(tmp_path, kv=kv)
        await first.store.send_message("Hello")
        await first.aclose()

        second = await _app(tmp_path, kv=kv)
        try:
            assert second.store.session.id == first.store.session.id
            assert second.store.active_thread.title == "Hello"
        finally:
            await second.aclose()
