import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from cashtalk_categorizer.core import settings
from cashtalk_categorizer.logger import get_logger

ValueType = Literal["string", "int", "float"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    description: str
    placeholder: str
    category: str
    value_type: ValueType = "string"
    sensitive: bool = False
    options: tuple[str, ...] | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None
    restart_required: bool = False


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField(
        key="FEEDBACK_THRESHOLD",
        label="Feedback Threshold",
        description="Confidence (0-1) below which a category guess asks for feedback.",
        placeholder="0.7",
        category="Classification",
        value_type="float",
        min_value=0.0,
        max_value=1.0,
    ),
    ConfigField(
        key="INCOME_INCREASE_THRESHOLD",
        label="Income Increase Threshold",
        description="Salary amount from which an income is recorded as an income increase.",
        placeholder="3000",
        category="Classification",
        value_type="float",
        min_value=0.0,
    ),
    ConfigField(
        key="PENDING_FEEDBACK_TTL",
        label="Pending Feedback TTL",
        description="Seconds an unanswered feedback request is kept.",
        placeholder="604800",
        category="Classification",
        value_type="int",
        min_value=0,
    ),
    ConfigField(
        key="PENDING_FEEDBACK_MAX",
        label="Pending Feedback Limit",
        description="Maximum number of words waiting for feedback. Oldest are dropped first.",
        placeholder="500",
        category="Classification",
        value_type="int",
        min_value=1,
    ),
    ConfigField(
        key="MAPPINGS_BACKEND",
        label="Mappings Backend",
        description="Where category mappings and transactions are stored.",
        placeholder="local",
        category="Persistence",
        options=("local", "rest"),
        restart_required=True,
    ),
    ConfigField(
        key="MAPPINGS_URL",
        label="Mappings URL",
        description="Base URL of the REST persistence service (no trailing slash).",
        placeholder="https://project.example.co",
        category="Persistence",
    ),
    ConfigField(
        key="MAPPINGS_API_KEY",
        label="Mappings API Key",
        description="API key sent to the REST persistence service.",
        placeholder="ey...",
        category="Persistence",
        sensitive=True,
    ),
    ConfigField(
        key="RETRY_DELAY_SECONDS",
        label="Retry Delay",
        description="Seconds to wait before retrying a failed persistence call.",
        placeholder="3",
        category="Persistence",
        value_type="float",
        min_value=0.0,
    ),
    ConfigField(
        key="DATA_DIR",
        label="Data Directory",
        description="Directory for learned weights and local mappings.",
        placeholder="/app/data",
        category="Storage",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_DIR",
        label="Log Directory",
        description="Directory for application logs (app.log).",
        placeholder="/app/logs",
        category="Storage",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_LEVEL",
        label="Log Level",
        description="Logging verbosity for the application.",
        placeholder="INFO",
        category="Storage",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        restart_required=True,
    ),
)

CONFIG_TEMPLATE = """# CashTalk Categorizer configuration
# These settings only take effect when the same environment variable is not set.
# Remove the leading "#" to enable a setting here.

# Confidence below which a category guess asks for feedback (0-1)
# FEEDBACK_THRESHOLD:

# Salary amount recorded as an income increase
# INCOME_INCREASE_THRESHOLD:

# Seconds an unanswered feedback request is kept
# PENDING_FEEDBACK_TTL:

# Maximum number of words waiting for feedback
# PENDING_FEEDBACK_MAX:

# Persistence backend (local or rest)
# MAPPINGS_BACKEND:

# REST persistence base URL
# MAPPINGS_URL:

# REST persistence API key
# MAPPINGS_API_KEY:

# Seconds before retrying a failed persistence call
# RETRY_DELAY_SECONDS:

# Data directory (adaptive.json, mappings.json)
# DATA_DIR:

# Log directory (app.log)
# LOG_DIR:

# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
# LOG_LEVEL:
"""


_CONFIG_LINE = re.compile(r"^\s*#?\s*([A-Z][A-Z0-9_]*)\s*:")
_QUOTE_TRIGGERS = (":", "#", '"', "'")

_NUMBER_PARSERS: dict[str, tuple[Callable[[str], float | int], str]] = {
    "int": (int, "Must be a whole number."),
    "float": (float, "Must be a number."),
}


def get_config_path() -> str | None:
    return settings.get_config_path() or os.path.join(os.getcwd(), "config", settings.CONFIG_FILENAME)


def _sections() -> dict[str, list[ConfigField]]:
    sections: dict[str, list[ConfigField]] = {}
    for field in CONFIG_FIELDS:
        sections.setdefault(field.category, []).append(field)
    return sections


def _describe_field(field: ConfigField, file_values: dict[str, str], error: str | None) -> dict[str, object]:
    env_override = settings.is_env_override(field.key)
    value = os.getenv(field.key, "") if env_override else file_values.get(field.key, "")
    return {
        "key": field.key,
        "label": field.label,
        "description": field.description,
        "placeholder": "Set via environment variable" if env_override else field.placeholder,
        "value": "" if field.sensitive else value,
        "value_type": field.value_type,
        "options": field.options,
        "env_override": env_override,
        "sensitive": field.sensitive,
        "restart_required": field.restart_required,
        "error": error,
    }


def build_config_context(
    *,
    field_errors: dict[str, str] | None = None,
) -> dict[str, object]:
    """Every editable setting grouped by section. Secrets are never echoed back."""
    config_path = get_config_path()
    file_values = settings.read_config_file(config_path)
    errors = field_errors or {}
    sections = [
        {
            "name": name,
            "fields": [_describe_field(field, file_values, errors.get(field.key)) for field in fields],
        }
        for name, fields in _sections().items()
    ]
    return {
        "config_path": config_path or "Not configured",
        "sections": sections,
        "env_override_count": sum(settings.is_env_override(field.key) for field in CONFIG_FIELDS),
    }


def _check_range(field: ConfigField, parsed: float | int) -> str | None:
    if field.min_value is not None and parsed < field.min_value:
        return f"Must be at least {field.min_value}."
    if field.max_value is not None and parsed > field.max_value:
        return f"Must be at most {field.max_value}."
    return None


def _validate_value(field: ConfigField, raw_value: str) -> tuple[str, str | None]:
    value = raw_value.strip()
    if not value:
        return "", None
    if "\n" in value or "\r" in value:
        return value, "Value must be a single line."

    if field.options:
        normalized = value.upper() if field.options[0].isupper() else value.lower()
        if normalized in field.options:
            return normalized, None
        return value, f"Must be one of: {', '.join(field.options)}."

    parser = _NUMBER_PARSERS.get(field.value_type)
    if parser is None:
        return value, None
    cast, message = parser
    try:
        parsed = cast(value)
    except ValueError:
        return value, message
    error = _check_range(field, parsed)
    return (value, error) if error else (str(parsed), None)


def apply_config_updates(values: dict[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """
    Validate submitted settings, then write them to the config file and to
    the process environment. Keys pinned by the real environment are
    skipped. Nothing is written when any value is invalid.
    """
    errors: dict[str, str] = {}
    updates: dict[str, str] = {}
    editable = (
        field for field in CONFIG_FIELDS
        if field.key in values and not settings.is_env_override(field.key)
    )
    for field in editable:
        cleaned, error = _validate_value(field, values[field.key])
        if error:
            errors[field.key] = error
        else:
            updates[field.key] = cleaned
    if errors:
        return errors, {}

    _write_config_file(updates)
    for key, value in updates.items():
        if value:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)
    logger.info("[CONFIG] Saved %s setting(s): %s", len(updates), ", ".join(sorted(updates)))
    return {}, updates


def _merge_config_lines(lines: list[str], updates: dict[str, str]) -> list[str]:
    merged = list(lines)
    positions: dict[str, int] = {}
    for index, line in enumerate(merged):
        match = _CONFIG_LINE.match(line)
        if match and match.group(1) in updates:
            positions.setdefault(match.group(1), index)

    for key, value in updates.items():
        line = f"{key}: {_format_yaml_value(value)}" if value else f"# {key}:"
        if key in positions:
            merged[positions[key]] = line
        else:
            merged.append(line)
    return merged


def _write_config_file(updates: dict[str, str]) -> None:
    config_path = get_config_path()
    if not config_path:
        raise RuntimeError("No configuration path available.")

    if os.path.exists(config_path):
        with open(config_path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    else:
        lines = CONFIG_TEMPLATE.splitlines()
        os.makedirs(os.path.dirname(config_path) or ".", exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(_merge_config_lines(lines, updates)).rstrip("\n") + "\n")


def apply_runtime_updates(app: Any, updates: dict[str, str]) -> None:
    if not updates:
        return
    state = getattr(app, "state", None)
    if state is None:
        return

    if "FEEDBACK_THRESHOLD" in updates:
        _refresh_threshold(getattr(state, "service", None), getattr(state, "store", None))

    if {"PENDING_FEEDBACK_TTL", "PENDING_FEEDBACK_MAX"} & updates.keys():
        _refresh_pending_limits(getattr(state, "service", None))

    if "INCOME_INCREASE_THRESHOLD" in updates:
        _refresh_router(getattr(state, "router", None))

    if "RETRY_DELAY_SECONDS" in updates:
        _refresh_retry_delay(getattr(state, "mapping_store", None), getattr(state, "persistence", None))

    if {"MAPPINGS_URL", "MAPPINGS_API_KEY"} & updates.keys():
        _refresh_backend(getattr(state, "backend", None))


def _refresh_threshold(service: Any, store: Any) -> None:
    from cashtalk_categorizer.manager import CategorizerService
    from cashtalk_categorizer.services.store import TransactionStore

    threshold = settings.feedback_threshold()
    if isinstance(service, CategorizerService):
        service.set_threshold(threshold)
    if isinstance(store, TransactionStore):
        store.threshold = threshold


def _refresh_pending_limits(service: Any) -> None:
    from cashtalk_categorizer.manager import CategorizerService

    if not isinstance(service, CategorizerService):
        return
    service.engine.pending_ttl = settings.pending_feedback_ttl()
    service.engine.pending_max = settings.pending_feedback_max()
    logger.info(
        "[CONFIG] Pending feedback limits set to %ss / %s entries.",
        service.engine.pending_ttl,
        service.engine.pending_max,
    )


def _refresh_router(router: Any) -> None:
    from cashtalk_categorizer.services.router import TransactionRouter

    if not isinstance(router, TransactionRouter):
        return
    router.income_increase_threshold = settings.income_increase_threshold()
    logger.info("[CONFIG] Income increase threshold set to %.2f.", router.income_increase_threshold)


def _refresh_retry_delay(mapping_store: Any, persistence: Any) -> None:
    from cashtalk_categorizer.services.mapping_store import MappingStore
    from cashtalk_categorizer.services.persistence import TransactionPersistence

    delay = settings.retry_delay_seconds()
    if isinstance(mapping_store, MappingStore):
        mapping_store.retry_delay = delay
    if isinstance(persistence, TransactionPersistence):
        persistence.retry_delay = delay
    logger.info("[CONFIG] Retry delay set to %.1fs.", delay)


def _refresh_backend(backend: Any) -> None:
    from cashtalk_categorizer.integration.persistence import RestBackend

    if not isinstance(backend, RestBackend):
        return
    backend.refresh()
    logger.info("[CONFIG] REST persistence client refreshed.")


def _format_yaml_value(value: str) -> str:
    if value != value.strip() or any(marker in value for marker in _QUOTE_TRIGGERS):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value
