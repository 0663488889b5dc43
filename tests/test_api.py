import datetime as dt
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from cashtalk_categorizer.core import configuration
from cashtalk_categorizer.integration.persistence import LocalBackend
from cashtalk_categorizer.main import app
from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.services.categorization import CategorizationPipeline
from cashtalk_categorizer.services.mapping_store import MappingStore
from cashtalk_categorizer.services.persistence import TransactionPersistence
from cashtalk_categorizer.services.router import TransactionRouter
from cashtalk_categorizer.services.store import TransactionStore

client = TestClient(app)

STATE_KEYS = ("service", "store", "router", "mapping_store", "persistence", "pipeline")


@pytest.fixture
def pipeline(tmp_path) -> Generator[CategorizationPipeline, None, None]:
    originals = {key: getattr(app.state, key) for key in STATE_KEYS if hasattr(app.state, key)}

    backend = LocalBackend(str(tmp_path / "mappings.json"))
    service = CategorizerService(data_dir=str(tmp_path), threshold=0.7, today=lambda: dt.date(2024, 5, 15))
    mapping_store = MappingStore(backend, retry_delay=0)
    store = TransactionStore(mapping_store=mapping_store, threshold=0.7)
    router = TransactionRouter(store, service, mapping_store, income_increase_threshold=3000)
    persistence = TransactionPersistence(backend, retry_delay=0)
    pipeline = CategorizationPipeline(
        service=service,
        router=router,
        store=store,
        mapping_store=mapping_store,
        persistence=persistence,
    )
    app.state.service = service
    app.state.store = store
    app.state.router = router
    app.state.mapping_store = mapping_store
    app.state.persistence = persistence
    app.state.pipeline = pipeline
    yield pipeline

    for key in STATE_KEYS:
        if key in originals:
            setattr(app.state, key, originals[key])
        elif hasattr(app.state, key):
            delattr(app.state, key)


def test_classify(pipeline: CategorizationPipeline) -> None:
    response = client.post("/classify", json={"text": "ho speso 45 euro al supermercato"})
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == 0
    assert data["transaction"]["type"] == "EXPENSE"
    assert data["transaction"]["amount"] == 45.0
    assert data["transaction"]["category"] == "Cibo"
    assert data["transaction"]["confidence"] == "high"
    assert data["needs_feedback"] is False


def test_classify_smart(pipeline: CategorizationPipeline) -> None:
    response = client.post(
        "/classify",
        json={"text": "ho pagato 5 euro da xyzcafe", "user_id": "user-1", "smart": True},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["needs_feedback"] is True
    assert data["confidence_score"] < 0.7


def test_missing_pipeline_returns_500() -> None:
    had_pipeline = hasattr(app.state, "pipeline")
    original = getattr(app.state, "pipeline", None)
    app.state.pipeline = None
    try:
        response = client.post("/classify", json={"text": "ho speso 10 euro"})
    finally:
        if had_pipeline:
            app.state.pipeline = original
        else:
            delattr(app.state, "pipeline")
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_feedback_flow(pipeline: CategorizationPipeline) -> None:
    first = client.post("/classify", json={"text": "ho pagato 5 euro da xyzcafe", "user_id": "user-1"}).json()
    assert first["transaction"]["category"] == "Altro"

    response = client.post(
        "/feedback",
        json={"transaction_id": first["id"], "category": "Cibo", "user_id": "user-1"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "success", "success": True}

    again = client.post("/classify", json={"text": "ho pagato 9 euro da xyzcafe", "user_id": "user-1"}).json()
    assert again["transaction"]["category"] == "Cibo"
    assert again["transaction"]["metadata"]["source"] == "direct_mapping"


def test_feedback_for_unknown_transaction(pipeline: CategorizationPipeline) -> None:
    response = client.post("/feedback", json={"transaction_id": 7, "category": "Cibo", "user_id": "user-1"})
    assert response.status_code == 200
    assert response.json() == {"status": "failed", "success": False}


def test_word_feedback_and_pending(pipeline: CategorizationPipeline) -> None:
    client.post("/classify", json={"text": "ho pagato 5 euro da xyzcafe"})
    pending = client.get("/feedback/pending").json()
    assert [entry["word"] for entry in pending] == ["xyzcafe"]

    response = client.post(
        "/feedback/word",
        json={"word": " XYZCafe ", "suggested_category": "Altro", "is_correct": False, "correct_category": "Cibo"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["word"] == "xyzcafe"
    assert data["weights"] == {"Cibo": pytest.approx(1.0)}
    assert client.get("/feedback/pending").json() == []


@pytest.mark.parametrize(
    "payload",
    [
        {"word": "  ", "suggested_category": "Cibo", "is_correct": True},
        {"word": "xyzcafe", "suggested_category": "Cibo", "is_correct": False},
    ],
)
def test_word_feedback_validation(pipeline: CategorizationPipeline, payload: dict) -> None:
    response = client.post("/feedback/word", json=payload)
    assert response.status_code == 400


def test_clear_models(pipeline: CategorizationPipeline) -> None:
    pipeline.service.process_word_feedback("xyzcafe", "Altro", False, "Cibo")
    response = client.post("/clear-models")
    assert response.status_code == 200
    assert pipeline.service.engine.learned_guess("xyzcafe") is None


def test_list_transactions_by_type(pipeline: CategorizationPipeline) -> None:
    client.post("/classify", json={"text": "ho speso 10 euro per una pizza"})
    client.post("/classify", json={"text": "ricevuto stipendio di 5000"})

    everything = client.get("/transactions").json()
    assert [item["id"] for item in everything] == [0, 1]

    increases = client.get("/transactions", params={"type": "INCOME_INCREASE"}).json()
    assert len(increases) == 1
    assert increases[0]["id"] == 1
    assert increases[0]["transaction"]["amount"] == 5000.0

    assert client.get("/transactions", params={"type": "BOGUS"}).status_code == 422


def test_suggest(pipeline: CategorizationPipeline) -> None:
    response = client.get("/suggest", params={"description": "biglietto trenitalia"})
    assert response.status_code == 200
    assert response.json()["category"] == "Trasporto"

    assert client.get("/suggest", params={"description": "  "}).status_code == 400


def test_receipts(pipeline: CategorizationPipeline) -> None:
    response = client.post(
        "/receipts",
        json={
            "merchant": "Esselunga",
            "items": [{"name": "pane", "price": 2.0}, {"name": "latte", "price": 1.5}],
            "date": "2024-05-10",
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["transaction"]["category"] == "Cibo"
    assert data["transaction"]["amount"] == 3.5
    assert data["transaction"]["date"] == "2024-05-10"
    assert data["transaction"]["metadata"]["source"] == "receipt_image"

    assert client.post("/receipts", json={}).status_code == 400


def test_sync(pipeline: CategorizationPipeline) -> None:
    response = client.post("/sync")
    assert response.status_code == 200
    assert response.json() == {"synced": 0, "pending": 0}


def test_get_config(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("FEEDBACK_THRESHOLD: 0.8\nMAPPINGS_API_KEY: secret\n", encoding="utf-8")
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))

    data = client.get("/config").json()
    fields = {field["key"]: field for section in data["sections"] for field in section["fields"]}
    assert data["config_path"] == str(config_path)
    assert fields["FEEDBACK_THRESHOLD"]["value"] == "0.8"
    assert fields["MAPPINGS_API_KEY"]["value"] == ""
    assert fields["MAPPINGS_API_KEY"]["sensitive"] is True


def test_save_config_updates_running_services(
    pipeline: CategorizationPipeline,
    tmp_path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    config_path = tmp_path / "config" / "config.yaml"
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))
    # Registered so the runtime override is undone after the test.
    monkeypatch.setenv("FEEDBACK_THRESHOLD", "0.7")
    monkeypatch.setenv("INCOME_INCREASE_THRESHOLD", "3000")

    response = client.post("/config", json={"FEEDBACK_THRESHOLD": 0.5, "INCOME_INCREASE_THRESHOLD": "2500"})

    assert response.status_code == 200
    assert response.json() == {"status": "success", "updated": ["FEEDBACK_THRESHOLD", "INCOME_INCREASE_THRESHOLD"]}
    assert pipeline.service.threshold == 0.5
    assert pipeline.service.engine.threshold == 0.5
    assert pipeline.store.threshold == 0.5
    assert pipeline.router.income_increase_threshold == 2500.0
    assert "FEEDBACK_THRESHOLD: 0.5" in config_path.read_text(encoding="utf-8")


def test_save_config_rejects_invalid_values(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.yaml"
    monkeypatch.setattr(configuration, "get_config_path", lambda: str(config_path))

    response = client.post("/config", json={"FEEDBACK_THRESHOLD": "1.5", "MAPPINGS_BACKEND": "sqlite"})

    assert response.status_code == 400
    errors = response.json()["errors"]
    assert errors["FEEDBACK_THRESHOLD"] == "Must be at most 1.0."
    assert errors["MAPPINGS_BACKEND"] == "Must be one of: local, rest."
    assert not config_path.exists()
