from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from cashtalk_categorizer.core import configuration, settings
from cashtalk_categorizer.integration.persistence import LocalBackend, RestBackend
from cashtalk_categorizer.logger import get_logging_config
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.services.mapping_store import MappingStore
from cashtalk_categorizer.services.persistence import TransactionPersistence

FIELDS = {field.key: field for field in configuration.CONFIG_FIELDS}


@pytest.mark.parametrize(
    ("key", "raw", "expected"),
    [
        ("FEEDBACK_THRESHOLD", " 0.25 ", ("0.25", None)),
        ("FEEDBACK_THRESHOLD", "abc", ("abc", "Must be a number.")),
        ("FEEDBACK_THRESHOLD", "-1", ("-1", "Must be at least 0.0.")),
        ("PENDING_FEEDBACK_MAX", "0", ("0", "Must be at least 1.")),
        ("PENDING_FEEDBACK_MAX", "2.5", ("2.5", "Must be a whole number.")),
        ("PENDING_FEEDBACK_TTL", "3600", ("3600", None)),
        ("LOG_LEVEL", "debug", ("DEBUG", None)),
        ("MAPPINGS_BACKEND", "REST", ("rest", None)),
        ("MAPPINGS_URL", "", ("", None)),
        ("MAPPINGS_URL", "http://a\nb", ("http://a\nb", "Value must be a single line.")),
    ],
)
def test_validate_value(key: str, raw: str, expected: tuple[str, str | None]) -> None:
    assert configuration._validate_value(FIELDS[key], raw) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", ""),
        ("plain", "plain"),
        ("http://db.test", '"http://db.test"'),
        (" padded", '" padded"'),
        ('say "hi"', '"say \\"hi\\""'),
    ],
)
def test_format_yaml_value(value: str, expected: str) -> None:
    assert configuration._format_yaml_value(value) == expected


def test_apply_config_updates_writes_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("# FEEDBACK_THRESHOLD:\nLOG_LEVEL: INFO\n", encoding="utf-8")
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))
    monkeypatch.setenv("FEEDBACK_THRESHOLD", "0.7")
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("MAPPINGS_URL", "")

    errors, updates = configuration.apply_config_updates(
        {"FEEDBACK_THRESHOLD": "0.6", "LOG_LEVEL": "", "MAPPINGS_URL": "http://db.test"}
    )

    assert errors == {}
    assert updates == {"FEEDBACK_THRESHOLD": "0.6", "LOG_LEVEL": "", "MAPPINGS_URL": "http://db.test"}
    content = config_path.read_text(encoding="utf-8").splitlines()
    assert content == ["FEEDBACK_THRESHOLD: 0.6", "# LOG_LEVEL:", 'MAPPINGS_URL: "http://db.test"']
    assert settings.read_config_file(str(config_path)) == {
        "FEEDBACK_THRESHOLD": "0.6",
        "MAPPINGS_URL": "http://db.test",
    }
    assert settings.feedback_threshold() == 0.6


def test_apply_config_updates_skips_environment_overrides(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))
    monkeypatch.setattr(settings, "_EXTERNAL_ENV_KEYS", {"FEEDBACK_THRESHOLD"})
    monkeypatch.setenv("FEEDBACK_THRESHOLD", "0.9")
    monkeypatch.setenv("PENDING_FEEDBACK_MAX", "500")

    errors, updates = configuration.apply_config_updates({"FEEDBACK_THRESHOLD": "0.1", "PENDING_FEEDBACK_MAX": "20"})

    assert errors == {}
    assert updates == {"PENDING_FEEDBACK_MAX": "20"}
    assert settings.feedback_threshold() == 0.9
    assert settings.pending_feedback_max() == 20

    context = configuration.build_config_context()
    fields = {field["key"]: field for section in context["sections"] for field in section["fields"]}
    assert fields["FEEDBACK_THRESHOLD"]["env_override"] is True
    assert fields["FEEDBACK_THRESHOLD"]["value"] == "0.9"
    assert context["env_override_count"] == 1


def test_apply_config_updates_reports_all_errors(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))

    errors, updates = configuration.apply_config_updates({"RETRY_DELAY_SECONDS": "soon", "LOG_LEVEL": "LOUD"})

    assert set(errors) == {"RETRY_DELAY_SECONDS", "LOG_LEVEL"}
    assert updates == {}
    assert not config_path.exists()


def test_apply_runtime_updates_refreshes_components(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = CategorizerService(data_dir=str(tmp_path), threshold=0.7)
    backend = LocalBackend()
    mapping_store = MappingStore(backend, retry_delay=3)
    persistence = TransactionPersistence(backend, retry_delay=3)
    rest_backend = MagicMock(spec=RestBackend)
    state = SimpleNamespace(
        service=service,
        store=None,
        router=None,
        mapping_store=mapping_store,
        persistence=persistence,
        backend=rest_backend,
    )
    monkeypatch.setenv("FEEDBACK_THRESHOLD", "0.4")
    monkeypatch.setenv("PENDING_FEEDBACK_TTL", "60")
    monkeypatch.setenv("PENDING_FEEDBACK_MAX", "10")
    monkeypatch.setenv("RETRY_DELAY_SECONDS", "0.5")

    configuration.apply_runtime_updates(
        SimpleNamespace(state=state),
        {
            "FEEDBACK_THRESHOLD": "0.4",
            "PENDING_FEEDBACK_TTL": "60",
            "PENDING_FEEDBACK_MAX": "10",
            "RETRY_DELAY_SECONDS": "0.5",
            "MAPPINGS_API_KEY": "new",
        },
    )

    assert service.threshold == 0.4
    assert service.engine.threshold == 0.4
    assert service.engine.pending_ttl == 60
    assert service.engine.pending_max == 10
    assert mapping_store.retry_delay == 0.5
    assert persistence.retry_delay == 0.5
    rest_backend.refresh.assert_called_once_with()


def test_apply_runtime_updates_without_state() -> None:
    configuration.apply_runtime_updates(object(), {"FEEDBACK_THRESHOLD": "0.4"})
    configuration.apply_runtime_updates(SimpleNamespace(state=SimpleNamespace()), {})


def test_get_env_float_falls_back_on_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RETRY_DELAY_SECONDS", "later")
    assert settings.retry_delay_seconds() == settings.DEFAULT_RETRY_DELAY_SECONDS

    monkeypatch.setenv("RETRY_DELAY_SECONDS", "-2")
    assert settings.retry_delay_seconds() == settings.DEFAULT_RETRY_DELAY_SECONDS

    monkeypatch.delenv("RETRY_DELAY_SECONDS")
    assert settings.retry_delay_seconds() == settings.DEFAULT_RETRY_DELAY_SECONDS


def test_mask_env_value() -> None:
    assert settings._mask_env_value("MAPPINGS_API_KEY", "abcdefgh") == "ab...gh"
    assert settings._mask_env_value("MAPPINGS_API_KEY", "abc") == "****"
    assert settings._mask_env_value("LOG_LEVEL", "INFO") == "INFO"


def test_logging_config_adds_file_handler(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = get_logging_config()

    assert config["loggers"][""]["level"] == "DEBUG"
    assert config["loggers"][""]["handlers"] == ["console", "file"]
    assert config["handlers"]["file"]["filename"] == str(tmp_path / "logs" / "app.log")
    assert (tmp_path / "logs").is_dir()
