"""Auto-translator plugin.

Translates outgoing user messages and/or incoming assistant messages into a
target language. Source language detection is a script-range heuristic:
Hangul -> ko, kana -> ja, Han ideographs -> zh, anything else -> en.

Translation goes through a ``Translator`` collaborator. When a dedicated
service is configured (``HttpTranslator``) it is tried first and the model API
itself (``ModelTranslator``) is the fallback. A failed translation never
breaks the chat: the hook returns the message unchanged.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from chatwrap_constants import TRANSLATION_MODEL
from client.errors import ApiError
from client.model_client import MessageRequest, ModelClient
from conversation.models import Message, MessageMetadata
from plugins.base import Plugin, PluginContext, PluginManifest

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "ko": "한국어",
    "en": "English",
    "ja": "日本語",
    "zh": "中文",
    "es": "Español",
    "fr": "Français",
    "de": "Deutsch",
}

_HANGUL_RE = re.compile(r"[\u1100-\u11ff\u3130-\u318f\uac00-\ud7af]")
_KANA_RE = re.compile(r"[\u3040-\u309f\u30a0-\u30ff]")
_HAN_RE = re.compile(r"[\u4e00-\u9fff]")


class TranslationError(Exception):
    pass


class Translator(Protocol):
    async def translate(self, text: str, from_lang: str, to_lang: str) -> str: ...


def detect_language(text: str) -> str:
    if _HANGUL_RE.search(text):
        return "ko"
    # Kana before Han: Japanese text mixes both
    if _KANA_RE.search(text):
        return "ja"
    if _HAN_RE.search(text):
        return "zh"
    return "en"


class HttpTranslator:
    """Dedicated translation service: POST {text, from, to} -> {translatedText}."""

    def __init__(self, url: str, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def translate(self, text: str, from_lang: str, to_lang: str) -> str:
        try:
            response = await self._client.post(self.url, json={"text": text, "from": from_lang, "to": to_lang})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TranslationError(f"Translation service unavailable: {e}") from e

        translated = data.get("translatedText") if isinstance(data, dict) else None
        if not translated:
            raise TranslationError("Translation service returned no text")
        return translated

    async def aclose(self) -> None:
        await self._client.aclose()


class ModelTranslator:
    """Uses the chat model itself as a translator."""

    def __init__(self, client: ModelClient, model: str = TRANSLATION_MODEL):
        self._client = client
        self.model = model

    async def translate(self, text: str, from_lang: str, to_lang: str) -> str:
        source = LANGUAGE_NAMES.get(from_lang, from_lang)
        target = LANGUAGE_NAMES.get(to_lang, to_lang)
        prompt = (
            f"Please translate the following text from {source} to {target}. "
            f"Only provide the translation, no additional commentary:\n\n{text}"
        )
        request = MessageRequest(
            messages=[{"role": "user", "content": prompt}],
            model=self.model,
            temperature=0.3,
            max_tokens=2000,
        )
        try:
            response = await self._client.send_message(request)
        except ApiError as e:
            raise TranslationError(f"Model translation failed: {e}") from e
        if not response.text:
            raise TranslationError("Model translation returned no text")
        return response.text


class AutoTranslatorPlugin(Plugin):
    manifest = PluginManifest(
        id="auto-translator",
        name="Auto Translator",
        version="1.0.0",
        description="Automatically translate messages between languages",
        author="chatwrap",
        icon="🌐",
        permissions=[
            {"type": "read_messages", "description": "Read messages to detect language"},
            {"type": "modify_messages", "description": "Add translations to messages"},
            {"type": "network_access", "description": "Access translation services"},
        ],
        settings=[
            {
                "key": "autoDetect",
                "name": "Auto Detect Language",
                "type": "boolean",
                "description": "Automatically detect message language",
                "default": True,
            },
            {
                "key": "targetLanguage",
                "name": "Target Language",
                "type": "select",
                "description": "Language to translate to",
                "default": "ko",
                "options": [{"label": name, "value": code} for code, name in LANGUAGE_NAMES.items()],
            },
            {
                "key": "translateUserMessages",
                "name": "Translate User Messages",
                "type": "boolean",
                "description": "Translate user messages to target language",
                "default": False,
            },
            {
                "key": "translateAssistantMessages",
                "name": "Translate Assistant Messages",
                "type": "boolean",
                "description": "Translate assistant messages to target language",
                "default": True,
            },
            {
                "key": "showOriginal",
                "name": "Show Original Text",
                "type": "boolean",
                "description": "Show original text alongside translation",
                "default": True,
            },
        ],
    )

    def __init__(
        self,
        translator: Optional[Translator] = None,
        fallback: Optional[Translator] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(settings)
        self._translator = translator
        self._fallback = fallback

    # -- Hooks -------------------------------------------------------------------

    async def before_send_message(self, content: str, context: PluginContext) -> Optional[str]:
        if not self.get_setting("translateUserMessages", False):
            return None

        target = self.get_setting("targetLanguage", "ko")
        source = self._source_language(content, context)
        if source == target:
            return None

        try:
            translation = await self.translate_text(content, source, target)
        except TranslationError as e:
            logger.warning("Translation failed, sending original text: %s", e)
            return None
        return self._with_original(translation, content, source)

    async def after_receive_message(self, message: Message, context: PluginContext) -> Message:
        if message.role != "assistant" or not self.get_setting("translateAssistantMessages", True):
            return message

        target = self.get_setting("targetLanguage", "ko")
        source = self._source_language(message.content, context)
        if source == target:
            return message

        try:
            translation = await self.translate_text(message.content, source, target)
        except TranslationError as e:
            logger.warning("Translation failed, keeping original reply: %s", e)
            return message

        metadata: Dict[str, Any] = message.metadata.model_dump() if message.metadata else {}
        metadata.update(
            original_content=message.content,
            original_language=source,
            translated_language=target,
        )
        return message.model_copy(
            update={
                "content": self._with_original(translation, message.content, source),
                "metadata": MessageMetadata.model_validate(metadata),
            }
        )

    # -- Translation -------------------------------------------------------------

    def _source_language(self, text: str, context: PluginContext) -> str:
        if self.get_setting("autoDetect", True) or context.settings is None:
            return detect_language(text)
        return context.settings.language

    def _with_original(self, translation: str, original: str, source: str) -> str:
        if not self.get_setting("showOriginal", True):
            return translation
        return f"{translation}\n\n---\n*Original ({source}):* {original}"

    async def translate_text(self, text: str, from_lang: str, to_lang: str) -> str:
        """Try the dedicated translator, then the fallback. Raises TranslationError."""
        translators = [t for t in (self._translator, self._fallback) if t is not None]
        if not translators:
            raise TranslationError("No translator configured")

        last_error: Optional[TranslationError] = None
        for translator in translators:
            try:
                return await translator.translate(text, from_lang, to_lang)
            except TranslationError as e:
                logger.info("%s failed: %s", type(translator).__name__, e)
                last_error = e
            except Exception as e:
                logger.info("%s failed: %s", type(translator).__name__, e)
                last_error = TranslationError(str(e) or type(e).__name__)
                last_error.__cause__ = e
        raise last_error

    async def translate_message(self, message: Message, target_language: str) -> str:
        """Manual translation of a single message (e.g. from a UI action)."""
        source = detect_language(message.content)
        if source == target_language:
            return message.content
        return await self.translate_text(message.content, source, target_language)

    @staticmethod
    def get_supported_languages() -> List[Dict[str, str]]:
        return [{"code": code, "name": name} for code, name in LANGUAGE_NAMES.items()]
