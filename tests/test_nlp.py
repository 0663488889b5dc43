import datetime as dt

import pytest

from cashtalk_categorizer.models import Confidence, TransactionType
from cashtalk_categorizer.nlp.classifier import IntentClassifier, confidence_level
from cashtalk_categorizer.nlp.entities import EntityExtractor, extract_keywords
from cashtalk_categorizer.nlp.knowledge_base import category_keywords, is_known_word
from cashtalk_categorizer.nlp.tokenizer import (
    LANGUAGE_ITALIAN,
    LANGUAGE_OTHER,
    correct_typos,
    guess_language,
    normalize,
    tokenize,
)

TODAY = dt.date(2024, 5, 15)  # a Wednesday


@pytest.fixture
def extractor():
    return EntityExtractor(today=lambda: TODAY)


@pytest.fixture
def classifier():
    return IntentClassifier()


def test_normalize_italian_numbers_and_currency_symbols():
    assert normalize("Pagato 1.000,50€") == "pagato 1000.50 euro"
    assert normalize("  costo   10,50 ") == "costo 10.50"
    assert normalize("£5") == "sterline 5"
    assert normalize("stipendio 3k") == "stipendio 3000"
    assert normalize(None) == ""


def test_normalize_thousand_suffix_with_decimals(extractor):
    assert normalize("stipendio 2.5k") == "stipendio 2500"
    assert normalize("bonus 1,5 k") == "bonus 1500"
    assert normalize("premio 0,25k") == "premio 250"
    assert extractor.extract(normalize("ricevuto 2.5k euro")).amount == 2500.0


def test_tokenize_strips_punctuation_but_keeps_decimals():
    tokens = tokenize("Ho speso 12,50€ al bar!!")
    assert tokens == ["ho", "speso", "12.50", "euro", "al", "bar"]


def test_tokenize_empty_input():
    assert tokenize("") == []
    assert tokenize("  ...  ") == []


def test_correct_typos_reports_changes():
    corrected, changed = correct_typos("ho pagto 10 euro di stipendo")
    assert corrected == "ho pagato 10 euro di stipendio"
    assert changed is True

    unchanged, changed = correct_typos("ho pagato 10 euro")
    assert unchanged == "ho pagato 10 euro"
    assert changed is False


def test_guess_language():
    assert guess_language(["ho", "speso", "10"]) == LANGUAGE_ITALIAN
    assert guess_language(["paid", "coffee"]) == LANGUAGE_OTHER


@pytest.mark.parametrize(
    ("text", "intent", "tx_type"),
    [
        ("ho ricevuto un aumento di 300 euro", "add_income_increase", TransactionType.INCOME_INCREASE),
        ("ricevuto bonifico di 50", "add_income", TransactionType.INCOME),
        ("ho speso 20 euro", "add_expense", TransactionType.EXPENSE),
        ("ho investito 1000 euro", "add_investment", TransactionType.INVESTMENT),
    ],
)
def test_single_intent_texts_classify_to_their_type(classifier, text, intent, tx_type):
    result = classifier.classify(text)
    assert result.intent == intent
    assert result.type == tx_type
    assert result.type_identified


def test_navigation_intent_has_no_type(classifier):
    result = classifier.classify("mostra investimenti")
    assert result.intent == "view_investments"
    assert result.type is None
    assert result.category is None


def test_no_intent(classifier):
    result = classifier.classify("qualcosa di strano")
    assert result.intent is None
    assert result.type is None
    assert not result.type_identified


def test_category_follows_list_order(classifier):
    assert classifier.classify("ho speso 45 euro al supermercato").category == "Cibo"
    assert classifier.classify("ho investito 500 in etf").category == "ETF"
    assert classifier.classify("ricevuto stipendio di 5000").category == "Stipendio"


def test_confidence_level_counts_known_parts():
    assert confidence_level(True, 10.0, "Cibo") == Confidence.HIGH
    assert confidence_level(True, 10.0, None) == Confidence.MEDIUM
    assert confidence_level(True, 10.0, "Altro") == Confidence.MEDIUM
    assert confidence_level(False, None, "Cibo") == Confidence.LOW
    assert confidence_level(False, 0.0, None) == Confidence.LOW


def test_extract_amount_currency_and_description(extractor):
    entities = extractor.extract("ho speso 45 euro al supermercato")
    assert entities.amount == 45.0
    assert entities.currency == "EUR"
    assert entities.date == TODAY
    assert not entities.date_resolved
    assert "supermercato" in entities.description
    assert "45" not in entities.description
    assert entities.keywords == ["speso", "supermercato"]


def test_extract_explicit_foreign_currency(extractor):
    assert extractor.extract("pagato 20 dollari").currency == "USD"
    assert extractor.extract(normalize("pagato $20")).currency == "USD"
    assert extractor.extract("pagato 20").currency == "EUR"


def test_dates_are_removed_before_amounts(extractor):
    entities = extractor.extract("10/05 pagato 20 euro")
    assert entities.date == dt.date(2024, 5, 10)
    assert entities.date_resolved
    assert entities.amount == 20.0


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("ieri pagato 5", dt.date(2024, 5, 14)),
        ("altroieri pagato 5", dt.date(2024, 5, 13)),
        ("domani pago 5", dt.date(2024, 5, 16)),
        ("lunedì pagato 5", dt.date(2024, 5, 13)),
        ("lunedi prossimo pago 5", dt.date(2024, 5, 20)),
        ("10 gennaio pagato 5", dt.date(2024, 1, 10)),
        ("3 marzo 2023 pagato 5", dt.date(2023, 3, 3)),
        ("01/02/2023 pagato 5", dt.date(2023, 2, 1)),
    ],
)
def test_date_expressions(extractor, text, expected):
    entities = extractor.extract(text)
    assert entities.date == expected
    assert entities.amount == 5.0


def test_invalid_date_falls_back_to_today(extractor):
    entities = extractor.extract("31/02 pagato 5")
    assert entities.date == TODAY
    assert entities.amount == 5.0


def test_extract_keywords_skips_short_words_numbers_and_currencies():
    assert extract_keywords("ho pagato 10 euro al bar da mario") == ["pagato", "bar", "mario"]


def test_category_keywords_drop_trigger_words():
    assert category_keywords(["pagato", "xyzcafe", "supermercato"]) == ["xyzcafe", "supermercato"]
    assert is_known_word("supermercato")
    assert not is_known_word("xyzcafe")
