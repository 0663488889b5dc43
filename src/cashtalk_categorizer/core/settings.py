import os
from collections.abc import Callable
from typing import TypeVar

from dotenv import find_dotenv, load_dotenv

from cashtalk_categorizer.logger import get_logger

logger = get_logger(__name__)

N = TypeVar("N", int, float)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}
_EXTERNAL_ENV_KEYS: set[str] = set()

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "MAPPINGS_BACKEND",
    "MAPPINGS_URL",
    "MAPPINGS_API_KEY",
    "FEEDBACK_THRESHOLD",
    "INCOME_INCREASE_THRESHOLD",
    "RETRY_DELAY_SECONDS",
    "PENDING_FEEDBACK_TTL",
    "PENDING_FEEDBACK_MAX",
)

DEFAULT_FEEDBACK_THRESHOLD = 0.7
DEFAULT_INCOME_INCREASE_THRESHOLD = 3000.0
DEFAULT_RETRY_DELAY_SECONDS = 3.0
DEFAULT_PENDING_FEEDBACK_TTL = 7 * 24 * 3600
DEFAULT_PENDING_FEEDBACK_MAX = 500


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _strip_inline_comment(raw_value: str) -> str:
    quote: str | None = None
    escaped = False
    for index, char in enumerate(raw_value):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char in {'"', "'"}:
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        elif char == "#" and quote is None:
            return raw_value[:index].rstrip()
    return raw_value


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) < 2 or raw_value[0] != raw_value[-1] or raw_value[0] not in {'"', "'"}:
        return raw_value
    quote = raw_value[0]
    value = raw_value[1:-1]
    return value.replace(f"\\{quote}", quote).replace("\\\\", "\\")


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``KEY: value`` lines, ignoring comments and blank values."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            cleaned = _strip_inline_comment(raw_value).strip()
            if not key or not cleaned:
                continue
            value = _unquote_value(cleaned)
            if value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES
    global _EXTERNAL_ENV_KEYS

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _EXTERNAL_ENV_KEYS = set(os.environ.keys())

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        if path and path not in {".", "./"}:
            os.makedirs(path, exist_ok=True)


def _env_number(name: str, default: N, cast: Callable[[str], N], min_value: N | None) -> N:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s=%s is below %s, using default %s.", name, raw, min_value, default)
        return default
    return value


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    return _env_number(name, default, int, min_value)


def get_env_float(name: str, default: float = 0.0, min_value: float | None = None) -> float:
    return _env_number(name, default, float, min_value)


def feedback_threshold() -> float:
    return get_env_float("FEEDBACK_THRESHOLD", DEFAULT_FEEDBACK_THRESHOLD, min_value=0.0)


def income_increase_threshold() -> float:
    return get_env_float(
        "INCOME_INCREASE_THRESHOLD",
        DEFAULT_INCOME_INCREASE_THRESHOLD,
        min_value=0.0,
    )


def retry_delay_seconds() -> float:
    return get_env_float("RETRY_DELAY_SECONDS", DEFAULT_RETRY_DELAY_SECONDS, min_value=0.0)


def pending_feedback_ttl() -> int:
    return get_env_int("PENDING_FEEDBACK_TTL", DEFAULT_PENDING_FEEDBACK_TTL, min_value=0)


def pending_feedback_max() -> int:
    return get_env_int("PENDING_FEEDBACK_MAX", DEFAULT_PENDING_FEEDBACK_MAX, min_value=1)


_SENSITIVE_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    sensitive = any(marker in name.upper() for marker in _SENSITIVE_MARKERS)
    if not sensitive and not sanitized.startswith("eyJ"):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)
