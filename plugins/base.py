"""Plugin contract: manifest, settings schema, hook context and base class.

A plugin subclasses ``Plugin``, declares a ``PluginManifest`` and implements
any subset of the async hooks below. The manager looks hooks up by name, so a
plugin that only rewrites outgoing text defines ``before_send_message`` and
nothing else.

Hooks:
  - before_send_message(content, ctx)         -> str | None   (None = unchanged)
  - after_receive_message(message, ctx)       -> Message | None
  - on_message_edit(message_id, content, ctx) -> None
  - on_thread_create(thread_id, ctx)          -> None
  - on_settings_change(patch, ctx)            -> None

Settings declared in the manifest are a tagged union on ``type``
(boolean / number / select / string). Stored values are checked against that
schema before a plugin ever sees them.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field

from conversation.models import Message, Settings

logger = logging.getLogger(__name__)

HOOK_NAMES = (
    "before_send_message",
    "after_receive_message",
    "on_message_edit",
    "on_thread_create",
    "on_settings_change",
)


class PluginHookError(Exception):
    """A plugin hook raised. Always caught at the dispatch boundary."""

    def __init__(self, plugin_id: str, hook: str, original: BaseException):
        super().__init__(f"Plugin {plugin_id} {hook} hook failed: {original}")
        self.plugin_id = plugin_id
        self.hook = hook
        self.original = original


class PluginNotFoundError(Exception):
    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin {plugin_id} not found")
        self.plugin_id = plugin_id


class PluginSettingsError(ValueError):
    """A settings value does not match the plugin's declared schema."""


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

class PluginPermission(BaseModel):
    type: Literal["read_messages", "modify_messages", "access_files", "network_access", "storage_access"]
    description: str = ""


class _SettingBase(BaseModel):
    key: str
    name: str
    description: str = ""
    required: bool = False


class BooleanSetting(_SettingBase):
    type: Literal["boolean"]
    default: bool = False

    def check(self, value: Any) -> bool:
        if not isinstance(value, bool):
            raise PluginSettingsError(f"{self.key} must be a boolean, got {value!r}")
        return value


class NumberSetting(_SettingBase):
    type: Literal["number"]
    default: float = 0
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def check(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise PluginSettingsError(f"{self.key} must be a number, got {value!r}")
        if self.minimum is not None and value < self.minimum:
            raise PluginSettingsError(f"{self.key} must be >= {self.minimum}")
        if self.maximum is not None and value > self.maximum:
            raise PluginSettingsError(f"{self.key} must be <= {self.maximum}")
        return value


class SelectOption(BaseModel):
    label: str
    value: Any


class SelectSetting(_SettingBase):
    type: Literal["select"]
    default: Any = None
    options: List[SelectOption] = Field(default_factory=list)

    def check(self, value: Any) -> Any:
        allowed = [option.value for option in self.options]
        if value not in allowed:
            raise PluginSettingsError(f"{self.key} must be one of {allowed}, got {value!r}")
        return value


class StringSetting(_SettingBase):
    type: Literal["string"]
    default: str = ""

    def check(self, value: Any) -> str:
        if not isinstance(value, str):
            raise PluginSettingsError(f"{self.key} must be a string, got {value!r}")
        if self.required and not value:
            raise PluginSettingsError(f"{self.key} is required")
        return value


PluginSetting = Annotated[
    Union[BooleanSetting, NumberSetting, SelectSetting, StringSetting],
    Field(discriminator="type"),
]


class PluginManifest(BaseModel):
    id: str
    name: str
    version: str
    description: str = ""
    author: str = ""
    icon: Optional[str] = None
    permissions: List[PluginPermission] = Field(default_factory=list)
    settings: List[PluginSetting] = Field(default_factory=list)

    def setting(self, key: str) -> Optional[Union[BooleanSetting, NumberSetting, SelectSetting, StringSetting]]:
        for setting in self.settings:
            if setting.key == key:
                return setting
        return None

    def defaults(self) -> Dict[str, Any]:
        return {setting.key: setting.default for setting in self.settings}

    def validate_settings(self, values: Mapping[str, Any], strict: bool = True) -> Dict[str, Any]:
        """Check ``values`` against the declared schema.

        With ``strict`` the first bad key raises PluginSettingsError; otherwise
        bad keys are dropped with a warning (used when loading stored data).
        """
        clean: Dict[str, Any] = {}
        for key, value in values.items():
            setting = self.setting(key)
            try:
                if setting is None:
                    raise PluginSettingsError(f"{self.id} has no setting named {key!r}")
                clean[key] = setting.check(value)
            except PluginSettingsError as e:
                if strict:
                    raise
                logger.warning("Dropping stored setting for plugin %s: %s", self.id, e)
        return clean


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PluginContext:
    """Read-only view of the conversation handed to every hook."""

    messages: Tuple[Message, ...] = ()
    settings: Optional[Settings] = None
    active_thread_id: Optional[str] = None
    session_id: Optional[str] = None


class Plugin:
    """Base class for plugins. Subclasses set ``manifest`` and define hooks.

    Hooks may be coroutine functions or plain functions.
    """

    manifest: PluginManifest

    def __init__(self, settings: Optional[Mapping[str, Any]] = None):
        self._settings: Dict[str, Any] = self.manifest.defaults()
        if settings:
            self._settings.update(self.manifest.validate_settings(settings))

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def settings(self) -> Dict[str, Any]:
        return dict(self._settings)

    # -- Lifecycle (override as needed) ---------------------------------------

    async def on_install(self) -> None:
        pass

    async def on_uninstall(self) -> None:
        pass

    async def on_enable(self) -> None:
        pass

    async def on_disable(self) -> None:
        pass

    # -- Settings helpers -----------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        value = self._settings.get(key)
        return default if value is None else value

    def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = value

    def apply_settings(self, values: Mapping[str, Any]) -> None:
        self._settings.update(values)

    def hook(self, name: str):
        """Return the bound hook ``name`` if this plugin implements it."""
        if name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook {name!r}")
        return getattr(self, name, None)
