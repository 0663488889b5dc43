import datetime as dt
import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from cashtalk_categorizer.classifiers.adaptive import (
    AdaptiveCategoryEngine,
    normalize_weights,
    similarity,
)
from cashtalk_categorizer.models import CategoryGuess


@pytest.fixture
def engine(tmp_path):
    return AdaptiveCategoryEngine(data_path=str(tmp_path / "adaptive.json"))


class FakeClock:
    def __init__(self) -> None:
        self.now = dt.datetime(2024, 5, 15, 12, 0)

    def __call__(self) -> dt.datetime:
        return self.now


def test_similarity_is_symmetric():
    pairs = [("pizza", "pizze"), ("ristorante", "ristornte"), ("bar", "xyzcafe"), ("", "a")]
    for a, b in pairs:
        assert similarity(a, b) == pytest.approx(similarity(b, a))
    assert similarity("pizza", "pizza") == 1.0
    assert similarity("pizza", "pizze") == pytest.approx(0.8)


def test_normalize_weights_sums_to_one():
    normalized = normalize_weights({"Cibo": 0.9, "Altro": 0.3, "Shopping": 0.0})
    assert sum(normalized.values()) == pytest.approx(1.0)
    assert "Shopping" not in normalized
    assert normalize_weights({"Cibo": 0.0}) == {"Altro": 1.0}


def test_seed_words_are_known(engine):
    guess = engine.learned_guess("ristorante")
    assert guess is not None
    assert guess.category == "Cibo"
    assert guess.confidence == 1.0
    assert guess.source == "learned"
    assert engine.learned_guess("xyzcafe") is None


def test_guess_uses_morphology(engine):
    guess = engine.guess("xyzcafe", ["pagato", "xyzcafe"], 1)
    assert guess.category == "Cibo"
    assert 0 < guess.confidence < engine.threshold


def test_guess_uses_context(engine):
    guess = engine.guess("mario", ["pizza", "da", "mario"], 2, use_morphology=False)
    assert guess.category == "Cibo"
    # "pizza" sits two tokens away: 0.5 * 1.0 * (1 - 2 / 4)
    assert guess.confidence == pytest.approx(0.25)


def test_guess_uses_similarity(engine):
    guess = engine.guess("ristornte", use_morphology=False)
    assert guess.category == "Cibo"


def test_unrelated_word_guesses_default(engine):
    guess = engine.guess("qwrtx", use_morphology=False)
    assert guess.category == "Altro"
    assert guess.confidence == 0.0


def test_confidence_never_exceeds_one(engine):
    tokens = ["pizza", "ristorante", "pizzeriax", "cena", "pranzo"]
    guess = engine.guess("pizzeriax", tokens, 2)
    assert guess.confidence <= 1.0


def test_low_confidence_guess_is_pending(engine):
    guess = engine.guess("xyzcafe", ["pagato", "xyzcafe"], 1)
    assert engine.register_pending(guess, ["pagato", "xyzcafe"], 1) is True
    pending = engine.pending_feedback()
    assert [entry.word for entry in pending] == ["xyzcafe"]
    assert pending[0].guessed_category == "Cibo"
    assert pending[0].context_window == ["pagato", "xyzcafe"]


def test_confident_guess_is_not_pending(engine):
    guess = CategoryGuess(word="pizzax", category="Cibo", confidence=0.9)
    assert engine.register_pending(guess, ["pizzax"], 0) is False
    assert engine.pending_feedback() == []


def test_pending_entries_expire():
    clock = FakeClock()
    engine = AdaptiveCategoryEngine(pending_ttl=60, clock=clock)
    engine.register_pending(CategoryGuess(word="aaa", category="Cibo", confidence=0.1), ["aaa"], 0)
    assert len(engine.pending_feedback()) == 1

    clock.now += dt.timedelta(seconds=61)
    assert engine.pending_feedback() == []


def test_pending_set_is_bounded_oldest_first():
    clock = FakeClock()
    engine = AdaptiveCategoryEngine(pending_max=2, clock=clock)
    for word in ("aaa", "bbb", "ccc"):
        engine.register_pending(CategoryGuess(word=word, category="Cibo", confidence=0.1), [word], 0)
        clock.now += dt.timedelta(seconds=1)

    assert sorted(entry.word for entry in engine.pending_feedback()) == ["bbb", "ccc"]


def test_incorrect_feedback_moves_weight_to_correct_category(engine):
    engine.register_pending(CategoryGuess(word="xyzcafe", category="Altro", confidence=0.2), ["xyzcafe"], 0)

    weights = engine.process_feedback("xyzcafe", "Altro", False, "Cibo")

    assert weights == {"Cibo": pytest.approx(1.0)}
    assert engine.pending_feedback() == []
    guess = engine.learned_guess("xyzcafe")
    assert guess.category == "Cibo"
    assert guess.confidence >= engine.threshold


def test_feedback_weights_always_sum_to_one(engine):
    engine.process_feedback("pizza", "Cibo", False, "Shopping")
    engine.process_feedback("pizza", "Shopping", False, "Intrattenimento")
    engine.process_feedback("pizza", "Cibo", True)
    weights = engine.weights_for("pizza")
    assert sum(weights.values()) == pytest.approx(1.0)


def test_penalty_to_zero_maps_to_default(engine):
    weights = engine.process_feedback("nuovaparola", "Cibo", False)
    assert weights == {"Altro": 1.0}


def test_repeated_correct_feedback_is_idempotent(engine):
    first = engine.process_feedback("ristorante", "Cibo", True)
    second = engine.process_feedback("ristorante", "Cibo", True)
    assert first == second
    assert engine.weights_for("ristorante") == first


def test_learned_weights_are_persisted(tmp_path):
    path = tmp_path / "adaptive.json"
    engine = AdaptiveCategoryEngine(data_path=str(path))
    engine.process_feedback("xyzcafe", "Altro", False, "Cibo")

    with open(path, encoding="utf-8") as handle:
        assert json.load(handle)["xyzcafe"] == {"Cibo": 1.0}

    reloaded = AdaptiveCategoryEngine(data_path=str(path))
    assert reloaded.learned_guess("xyzcafe").category == "Cibo"


def test_concurrent_feedback_leaves_a_complete_file(tmp_path):
    path = tmp_path / "adaptive.json"
    engine = AdaptiveCategoryEngine(data_path=str(path))
    words = [f"negozio{index}" for index in range(40)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda word: engine.process_feedback(word, "Altro", False, "Shopping"), words))

    with open(path, encoding="utf-8") as handle:
        saved = json.load(handle)
    assert all(saved[word] == {"Shopping": 1.0} for word in words)
    assert not (tmp_path / "adaptive.json.tmp").exists()


def test_corrupt_file_starts_from_seed(tmp_path):
    path = tmp_path / "adaptive.json"
    path.write_text("{not json", encoding="utf-8")
    engine = AdaptiveCategoryEngine(data_path=str(path))
    assert engine.learned_guess("pizza").category == "Cibo"


def test_clear_resets_to_seed(engine):
    engine.process_feedback("xyzcafe", "Altro", False, "Cibo")
    engine.clear()
    assert engine.learned_guess("xyzcafe") is None
    assert engine.learned_guess("pizza").category == "Cibo"
