import datetime as dt
from unittest.mock import patch

import pytest

from cashtalk_categorizer.manager import CategorizerService
from cashtalk_categorizer.models import Confidence, MappingSnapshot, TransactionType

TODAY = dt.date(2024, 5, 15)


@pytest.fixture
def service(tmp_path):
    return CategorizerService(data_dir=str(tmp_path), threshold=0.7, today=lambda: TODAY)


def test_supermarket_expense(service):
    transaction = service.classify("ho speso 45 euro al supermercato")

    assert transaction.type == TransactionType.EXPENSE
    assert transaction.amount == 45.0
    assert transaction.currency == "EUR"
    assert transaction.category == "Cibo"
    assert transaction.confidence == Confidence.HIGH
    assert transaction.metadata.intent == "add_expense"
    assert transaction.metadata.unknown_words == []
    assert transaction.metadata.raw_input == "ho speso 45 euro al supermercato"


def test_salary_income(service):
    transaction = service.classify("ricevuto stipendio di 5000")
    assert transaction.type == TransactionType.INCOME
    assert transaction.amount == 5000.0
    assert transaction.category == "Stipendio"
    assert transaction.confidence == Confidence.HIGH


def test_empty_input_is_unclassified(service):
    transaction = service.classify("   ")
    assert transaction.type == TransactionType.EXPENSE
    assert transaction.category == "Altro"
    assert transaction.confidence == Confidence.LOW
    assert transaction.metadata.warnings == ["empty_input"]


def test_unrecognized_text_defaults_to_low_expense(service):
    transaction = service.classify("qwrtx")
    assert transaction.type == TransactionType.EXPENSE
    assert transaction.confidence == Confidence.LOW
    assert "missing_amount" in transaction.metadata.warnings


def test_typos_are_corrected(service):
    transaction = service.classify("ho pagto 10 euro")
    assert transaction.type == TransactionType.EXPENSE
    assert transaction.metadata.typo_corrected is True


def test_future_date_warning(service):
    transaction = service.classify("domani pagherò 20 euro di benzina")
    assert transaction.date == TODAY + dt.timedelta(days=1)
    assert "future_date" in transaction.metadata.warnings


def test_unknown_word_is_registered_for_feedback(service):
    transaction = service.classify("ho pagato 5 euro da xyzcafe")

    assert transaction.metadata.unknown_words == ["xyzcafe"]
    assert transaction.metadata.needs_feedback is True
    assert transaction.category is None
    assert [entry.word for entry in service.pending_feedback()] == ["xyzcafe"]


def test_word_feedback_teaches_the_engine(service):
    service.classify("ho pagato 5 euro da xyzcafe")
    weights = service.process_word_feedback("xyzcafe", "Altro", False, "Cibo")
    assert weights == {"Cibo": pytest.approx(1.0)}
    assert service.pending_feedback() == []

    transaction = service.classify("ho pagato 8 euro da xyzcafe")
    assert transaction.category == "Cibo"
    assert transaction.metadata.confidence_score >= service.threshold
    assert transaction.metadata.needs_feedback is False


def test_direct_mapping_wins(service):
    mappings = MappingSnapshot(
        direct={"supermercato": "Shopping"},
        user={"supermercato": {"Cibo": 10}},
    )
    transaction = service.classify("ho speso 45 euro al supermercato", mappings)

    assert transaction.category == "Shopping"
    assert transaction.confidence == Confidence.HIGH
    assert transaction.metadata.confidence_score == 1.0
    assert transaction.metadata.source == "direct_mapping"


def test_probabilistic_mapping_fills_category(service):
    mappings = MappingSnapshot(user={"xyzcafe": {"Cibo": 2}}, shared={"xyzcafe": {"Shopping": 1}})
    transaction = service.classify("ho pagato 5 euro da xyzcafe", mappings)

    assert transaction.category == "Cibo"
    assert transaction.metadata.source == "probabilistic_mapping"
    assert transaction.metadata.confidence_score == pytest.approx(6 / 7)
    assert service.pending_feedback() == []


def test_accumulated_guesses_override_static_category(service):
    mappings = MappingSnapshot(user={"aaa": {"Viaggi": 1}, "bbb": {"Viaggi": 1}})
    transaction = service.classify("ho speso 45 euro al supermercato aaa bbb", mappings)

    assert transaction.category == "Viaggi"
    assert transaction.confidence == Confidence.MEDIUM
    assert transaction.metadata.source == "adaptive"


def test_morphology_only_for_italian(service):
    with patch.object(service.engine, "guess", wraps=service.engine.guess) as guess:
        service.classify("xyzcafe 5")
        assert guess.call_args.kwargs["use_morphology"] is False

        service.classify("da xyzcafe 5")
        assert guess.call_args.kwargs["use_morphology"] is True


def test_enhance_falls_back_to_rules(service):
    guess = service.enhance("abbonamento palestra mcfit")
    assert guess is not None
    assert guess.source == "rules"
    assert service.enhance("qwrtx") is None


def test_enhance_uses_investment_rules_for_investments(service):
    guess = service.enhance("fondo pensione integrativa", TransactionType.INVESTMENT)
    assert guess is not None
    assert guess.category == "Pensione"
    assert service.enhance("ricarica vodafone", TransactionType.INVESTMENT) is None


def test_keywords_for_skips_triggers(service):
    assert service.keywords_for("Ho pagato 5€ da XYZCafe") == ["xyzcafe"]


def test_set_threshold_updates_engine(service):
    service.set_threshold(0.5)
    assert service.engine.threshold == 0.5


def test_clear_models(service):
    service.process_word_feedback("xyzcafe", "Altro", False, "Cibo")
    service.clear_models()
    assert service.engine.learned_guess("xyzcafe") is None
