"""Configuration loading, validation and logging setup.

Resolution order for every value: environment variable, then
``$CHATWRAP_HOME/config.yaml``, then the built-in default.

config.yaml layout (all sections optional):

    client:
      base_url: https://api.anthropic.com/v1
      timeout: 60
      retry_attempts: 3
      retry_delay: 1.0
    chat:
      model: claude-3-5-sonnet-20241022
      temperature: 0.7
      context_window: 20
    plugins:
      enabled: [prompt-templates]
      translator_url: https://translate.example.com/api
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from chatwrap_constants import API_KEY_ENV_VARS, AVAILABLE_MODELS
from client.model_client import ClientOptions
from conversation.models import Settings

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "chatwrap.log"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""
    pass


def get_chatwrap_home() -> Path:
    return Path(os.getenv("CHATWRAP_HOME", Path.home() / ".chatwrap"))


def _load_env_file(path: Path) -> None:
    try:
        load_dotenv(dotenv_path=path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=path, encoding="latin-1")


def load_environment(project_dir: Optional[Path] = None) -> None:
    """Load ~/.chatwrap/.env first, then the project .env as a fallback.

    Variables already set in the environment are never overridden.
    """
    user_env = get_chatwrap_home() / ".env"
    if user_env.exists():
        _load_env_file(user_env)
    project_env = (project_dir or Path.cwd()) / ".env"
    if project_env.exists():
        _load_env_file(project_env)


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read config.yaml. A missing or unreadable file yields ``{}``."""
    config_path = path or get_chatwrap_home() / "config.yaml"
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable config %s: %s", config_path, e)
        return {}
    if not isinstance(config, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", config_path)
        return {}
    return config


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def resolve_api_key() -> Optional[str]:
    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


def _env_number(name: str, cast, fallback):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return fallback
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigValidationError(f"{name} must be a number, got {raw!r}") from e


def build_client_options(config: Optional[Dict[str, Any]] = None) -> ClientOptions:
    """ClientOptions from the ``client:`` section with environment overrides."""
    section = _section(config or {}, "client")
    api_key = resolve_api_key()
    if not api_key:
        raise ConfigValidationError(
            "No API key configured. Set " + " or ".join(API_KEY_ENV_VARS)
        )

    defaults = ClientOptions(api_key=api_key)
    try:
        options = ClientOptions(
            api_key=api_key,
            base_url=os.getenv("CHATWRAP_BASE_URL") or section.get("base_url") or defaults.base_url,
            timeout=_env_number("CHATWRAP_TIMEOUT", float, float(section.get("timeout", defaults.timeout))),
            retry_attempts=_env_number(
                "CHATWRAP_RETRY_ATTEMPTS", int, int(section.get("retry_attempts", defaults.retry_attempts))
            ),
            retry_delay=_env_number(
                "CHATWRAP_RETRY_DELAY", float, float(section.get("retry_delay", defaults.retry_delay))
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid client section in config.yaml: {e}") from e

    if options.timeout <= 0:
        raise ConfigValidationError("timeout must be positive")
    if options.retry_attempts < 1:
        raise ConfigValidationError("retry_attempts must be at least 1")
    if options.retry_delay < 0:
        raise ConfigValidationError("retry_delay must not be negative")
    return options


def build_default_settings(config: Optional[Dict[str, Any]] = None) -> Settings:
    """Default chat Settings with the ``chat:`` section merged over them."""
    try:
        return Settings().merged(_section(config or {}, "chat"))
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid chat section in config.yaml: {e}") from e


def enabled_plugin_ids(config: Optional[Dict[str, Any]] = None) -> List[str]:
    enabled = _section(config or {}, "plugins").get("enabled") or []
    return [str(plugin_id) for plugin_id in enabled]


# =============================================================================
# Validation
# =============================================================================

def validate_api_keys() -> List[Tuple[str, bool, str]]:
    """Check the model API key variables.

    Returns:
        List of (key_name, is_set, message) tuples
    """
    results = []
    for name in API_KEY_ENV_VARS:
        if os.getenv(name):
            results.append((name, True, "Configured"))
        else:
            results.append((name, False, "Not set"))
    return results


def validate_chatwrap_home() -> Tuple[bool, str]:
    """Validate the CHATWRAP_HOME directory.

    Returns:
        (is_valid, message) tuple
    """
    home = get_chatwrap_home()
    if not home.exists():
        return (False, f"{home} does not exist")

    config_file = home / "config.yaml"
    if not config_file.exists():
        return (True, f"Valid but no config.yaml at {config_file}")

    plugins_dir = home / "plugins"
    if not plugins_dir.exists():
        return (True, "Valid with no plugins directory")

    plugin_count = len(list(plugins_dir.glob("*/PLUGIN.yaml")))
    return (True, f"Valid with {plugin_count} plugins")


def validate_model_config(model: str) -> Tuple[bool, str]:
    """Validate that a model name is one the client knows about.

    Returns:
        (is_valid, message) tuple
    """
    if not model:
        return (False, "No model specified")
    if model not in AVAILABLE_MODELS:
        return (False, f"Unknown model: {model}")
    return (True, f"Model: {model}")


def run_validation(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Run all validation checks.

    Returns:
        Dictionary with validation results
    """
    if config is None:
        config = load_config()
    model = _section(config, "chat").get("model") or Settings().model

    results = {
        "api_keys": validate_api_keys(),
        "chatwrap_home": validate_chatwrap_home(),
        "model": validate_model_config(model),
        "errors": [],
        "warnings": [],
    }

    if not any(is_set for _, is_set, _ in results["api_keys"]):
        results["errors"].append("No model API key configured")

    home_valid, home_msg = results["chatwrap_home"]
    if not home_valid:
        results["warnings"].append(f"CHATWRAP_HOME issue: {home_msg}")

    model_valid, model_msg = results["model"]
    if not model_valid:
        results["errors"].append(model_msg)

    results["is_valid"] = len(results["errors"]) == 0
    return results


# =============================================================================
# Logging
# =============================================================================

def setup_logging(verbose: bool = False, log_to_file: bool = False) -> None:
    """Configure root logging for an application embedding the chat core."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        # Keep third-party libraries at WARNING level to reduce noise
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)
        logging.getLogger('asyncio').setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        logging.getLogger('httpx').setLevel(logging.ERROR)
        logging.getLogger('httpcore').setLevel(logging.ERROR)

    if log_to_file:
        log_dir = get_chatwrap_home() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)
