"""Shared constants for chatwrap.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_ENDPOINT = "/messages"

DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
PROBE_MODEL = "claude-3-haiku-20240307"
TRANSLATION_MODEL = "claude-3-haiku-20240307"
AVAILABLE_MODELS = (
    "claude-3-5-sonnet-20241022",
    "claude-3-opus-20240229",
    "claude-3-haiku-20240307",
)

API_KEY_ENV_VARS = ("CLAUDE_API_KEY", "ANTHROPIC_API_KEY")

# Durable key namespaces in the key-value persistence collaborator
SESSIONS_KEY_PREFIX = "sessions/"
SESSIONS_INDEX_KEY = "sessions-index"
ACTIVE_SESSION_KEY = "active-session"
PLUGIN_SETTINGS_KEY = "plugin-settings"
CUSTOM_TEMPLATES_KEY = "custom-templates"
