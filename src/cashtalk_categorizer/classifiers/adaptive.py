import datetime as dt
import json
import os
import threading
from collections import defaultdict
from collections.abc import Callable

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import DEFAULT_CATEGORY, CategoryGuess, PendingFeedback

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.7
CONTEXT_WINDOW = 3
SIMILARITY_CUTOFF = 0.7
SIMILARITY_TOP_K = 5

MORPHOLOGY_WEIGHT = 0.3
CONTEXT_WEIGHT = 0.5
SIMILARITY_WEIGHT = 0.2

POSITIVE_BOOST = 0.3
NEGATIVE_PENALTY = 0.2

SEED_MAPPINGS: dict[str, str] = {
    "ristorante": "Cibo", "bar": "Cibo", "pizza": "Cibo", "pranzo": "Cibo",
    "cena": "Cibo", "colazione": "Cibo", "caffè": "Cibo", "gelato": "Cibo",
    "spesa": "Cibo", "supermercato": "Cibo", "dolce": "Cibo",
    "treno": "Trasporto", "bus": "Trasporto", "taxi": "Trasporto",
    "benzina": "Trasporto", "carburante": "Trasporto", "metro": "Trasporto",
    "biglietto": "Trasporto", "aereo": "Trasporto", "volo": "Trasporto",
    "parcheggio": "Trasporto", "autostrada": "Trasporto", "pedaggio": "Trasporto",
    "affitto": "Alloggio", "bolletta": "Alloggio", "luce": "Alloggio",
    "gas": "Alloggio", "acqua": "Alloggio", "internet": "Alloggio",
    "telefono": "Alloggio", "wifi": "Alloggio", "condominio": "Alloggio",
    "mutuo": "Alloggio",
    "netflix": "Intrattenimento", "cinema": "Intrattenimento",
    "concerto": "Intrattenimento", "teatro": "Intrattenimento",
    "spotify": "Intrattenimento", "abbonamento": "Intrattenimento",
    "videogioco": "Intrattenimento", "libro": "Intrattenimento",
    "musica": "Intrattenimento", "streaming": "Intrattenimento",
    "evento": "Intrattenimento", "mostra": "Intrattenimento",
    "museo": "Intrattenimento",
    "farmacia": "Salute", "medico": "Salute", "dottore": "Salute",
    "visita": "Salute", "esame": "Salute", "dentista": "Salute",
    "medicinale": "Salute", "farmaco": "Salute", "terapia": "Salute",
    "ospedale": "Salute",
    "palestra": "Fitness",
    "vestiti": "Shopping", "scarpe": "Shopping", "camicia": "Shopping",
    "pantaloni": "Shopping", "maglia": "Shopping", "giacca": "Shopping",
    "accessorio": "Shopping", "borsa": "Shopping", "zaino": "Shopping",
    "negozio": "Shopping", "abbigliamento": "Shopping",
    "stipendio": "Stipendio", "salario": "Stipendio", "bonus": "Bonus",
    "rimborso": "Rimborsi", "premio": "Bonus",
    "investimento": "ETF", "azioni": "Azioni", "etf": "ETF", "fondo": "Fondi",
    "crypto": "Crypto", "bitcoin": "Crypto", "obbligazioni": "Obbligazioni",
    "bond": "Obbligazioni",
}

# Word fragments and how strongly each hints at a category.
MORPHOLOGY: dict[str, dict[str, float]] = {
    "invest": {"ETF": 0.5, "Fondi": 0.4},
    "stip": {"Stipendio": 0.9},
    "salar": {"Stipendio": 0.9},
    "cibo": {"Cibo": 1.0},
    "pizz": {"Cibo": 0.9},
    "ristor": {"Cibo": 0.9},
    "tratt": {"Cibo": 0.7},
    "caff": {"Cibo": 0.8},
    "cafe": {"Cibo": 0.7},
    "gelat": {"Cibo": 0.8},
    "pasticc": {"Cibo": 0.8},
    "panett": {"Cibo": 0.8},
    "mercato": {"Cibo": 0.6},
    "food": {"Cibo": 0.8},
    "burger": {"Cibo": 0.9},
    "sushi": {"Cibo": 0.9},
    "benzin": {"Trasporto": 0.9},
    "carbur": {"Trasporto": 0.9},
    "tren": {"Trasporto": 0.7},
    "taxi": {"Trasporto": 0.9},
    "auto": {"Trasporto": 0.5},
    "parchegg": {"Trasporto": 0.8},
    "affitt": {"Alloggio": 0.8, "Affitto": 0.2},
    "bollett": {"Alloggio": 0.9},
    "condomin": {"Alloggio": 0.9},
    "farmac": {"Salute": 0.9},
    "medic": {"Salute": 0.8},
    "dent": {"Salute": 0.6},
    "clinic": {"Salute": 0.8},
    "cinem": {"Intrattenimento": 0.9},
    "film": {"Intrattenimento": 0.7},
    "music": {"Intrattenimento": 0.7},
    "gioc": {"Intrattenimento": 0.6},
    "shop": {"Shopping": 0.8},
    "vest": {"Shopping": 0.6},
    "scarp": {"Shopping": 0.8},
    "moda": {"Shopping": 0.6},
    "tech": {"Tecnologia": 0.7},
    "phone": {"Tecnologia": 0.6},
    "elettron": {"Tecnologia": 0.8},
    "palestr": {"Fitness": 0.9},
    "gym": {"Fitness": 0.9},
    "fit": {"Fitness": 0.6},
    "bonus": {"Bonus": 1.0},
    "premi": {"Bonus": 0.6},
    "rimbors": {"Rimborsi": 0.9},
    "divid": {"Dividendi": 0.9},
    "azion": {"Azioni": 0.9},
    "etf": {"ETF": 1.0},
    "crypt": {"Crypto": 0.9},
    "cript": {"Crypto": 0.9},
    "coin": {"Crypto": 0.7},
    "obblig": {"Obbligazioni": 0.9},
    "bond": {"Obbligazioni": 0.8},
    "fond": {"Fondi": 0.6},
    "pension": {"Previdenza": 0.9},
    "hotel": {"Viaggi": 0.9},
    "viagg": {"Viaggi": 0.8},
}


def similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity, 1 - distance / max(len(a), len(b))."""
    return Levenshtein.normalized_similarity(a, b)


def normalize_weights(weights: dict[str, float]) -> dict[str, float]:
    positive = {category: value for category, value in weights.items() if value > 0}
    total = sum(positive.values())
    if total <= 0:
        return {DEFAULT_CATEGORY: 1.0}
    return {category: value / total for category, value in positive.items()}


def _best(scores: dict[str, float]) -> tuple[str, float]:
    if not scores:
        return DEFAULT_CATEGORY, 0.0
    category = max(scores, key=lambda key: scores[key])
    return category, scores[category]


class AdaptiveCategoryEngine:
    """
    Guesses categories for words the static knowledge base does not know
    and learns per-word category weights from feedback.

    Classification runs in worker threads while feedback arrives from the
    event loop, so every access to the mutable state goes through a lock.
    """

    def __init__(
        self,
        data_path: str | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        window: int = CONTEXT_WINDOW,
        seed: dict[str, str] | None = None,
        pending_ttl: float | None = None,
        pending_max: int | None = None,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.data_path = data_path
        self.threshold = threshold
        self.window = window
        self.pending_ttl = pending_ttl
        self.pending_max = pending_max
        self._clock = clock
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

        self._seed = dict(SEED_MAPPINGS if seed is None else seed)
        self.weights: dict[str, dict[str, float]] = {
            word: {category: 1.0} for word, category in self._seed.items()
        }
        self.pending: dict[str, PendingFeedback] = {}
        self._last_feedback: dict[str, tuple[str, bool, str | None]] = {}
        self.load()

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                learned = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("[ADAPTIVE] Could not parse %s, starting from seed weights.", self.data_path)
            return
        with self._lock:
            for word, weights in learned.items():
                self.weights[word] = {category: float(value) for category, value in weights.items()}
        logger.info("[ADAPTIVE] Loaded weights for %s words.", len(learned))

    def save(self) -> None:
        if not self.data_path:
            return
        # Snapshot and write under one lock so a later snapshot never lands first.
        with self._save_lock:
            with self._lock:
                snapshot = {word: dict(weights) for word, weights in self.weights.items()}
            temp_path = f"{self.data_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2, ensure_ascii=False)
            os.replace(temp_path, self.data_path)

    def is_known(self, word: str) -> bool:
        with self._lock:
            return word in self.weights

    def weights_for(self, word: str) -> dict[str, float] | None:
        with self._lock:
            weights = self.weights.get(word)
            return dict(weights) if weights is not None else None

    def learned_guess(self, word: str) -> CategoryGuess | None:
        weights = self.weights_for(word)
        if not weights:
            return None
        category, score = _best(weights)
        return CategoryGuess(
            word=word,
            category=category,
            confidence=min(1.0, score),
            scores=weights,
            source="learned",
        )

    def morphology_scores(self, word: str) -> dict[str, float]:
        scores: dict[str, float] = defaultdict(float)
        for fragment, weights in MORPHOLOGY.items():
            if fragment in word:
                for category, weight in weights.items():
                    scores[category] += weight
        return dict(scores)

    def context_scores(self, tokens: list[str], position: int) -> dict[str, float]:
        scores: dict[str, float] = defaultdict(float)
        start = max(0, position - self.window)
        end = min(len(tokens), position + self.window + 1)
        with self._lock:
            for index in range(start, end):
                if index == position:
                    continue
                neighbour = self.weights.get(tokens[index])
                if not neighbour:
                    continue
                factor = 1 - abs(index - position) / (self.window + 1)
                for category, weight in neighbour.items():
                    scores[category] += weight * factor
        return dict(scores)

    def similarity_scores(self, word: str) -> dict[str, float]:
        with self._lock:
            candidates = [known for known in self.weights if known != word]
            matches = process.extract(
                word,
                candidates,
                scorer=Levenshtein.normalized_similarity,
                limit=SIMILARITY_TOP_K,
                score_cutoff=SIMILARITY_CUTOFF,
            )
            scores: dict[str, float] = defaultdict(float)
            for known, score, _ in matches:
                for category, weight in self.weights[known].items():
                    scores[category] += weight * score
        return dict(scores)

    def guess(
        self,
        word: str,
        tokens: list[str] | None = None,
        position: int | None = None,
        *,
        use_morphology: bool = True,
    ) -> CategoryGuess:
        tokens = tokens if tokens is not None else [word]
        if position is None and word in tokens:
            position = tokens.index(word)

        combined: dict[str, float] = defaultdict(float)
        if use_morphology:
            for category, score in self.morphology_scores(word).items():
                combined[category] += MORPHOLOGY_WEIGHT * score
        if position is not None:
            for category, score in self.context_scores(tokens, position).items():
                combined[category] += CONTEXT_WEIGHT * score
        for category, score in self.similarity_scores(word).items():
            combined[category] += SIMILARITY_WEIGHT * score

        category, score = _best(combined)
        logger.debug("[ADAPTIVE] Guess for '%s': %s (%.2f)", word, category, score)
        return CategoryGuess(
            word=word,
            category=category,
            confidence=min(1.0, score),
            scores=dict(combined),
        )

    def register_pending(self, guess: CategoryGuess, tokens: list[str], position: int) -> bool:
        if guess.confidence >= self.threshold:
            return False
        start = max(0, position - self.window)
        entry = PendingFeedback(
            word=guess.word,
            guessed_category=guess.category,
            confidence=guess.confidence,
            context_window=tokens[start:position + self.window + 1],
            timestamp=self._clock(),
        )
        with self._lock:
            self.pending.pop(guess.word, None)
            self.pending[guess.word] = entry
            self._evict_pending()
        logger.info(
            "[ADAPTIVE] '%s' needs feedback (guess=%s, confidence=%.2f).",
            guess.word,
            guess.category,
            guess.confidence,
        )
        return True

    def _evict_pending(self) -> None:
        # Must be called while holding _lock.
        if self.pending_ttl is not None:
            cutoff = self._clock() - dt.timedelta(seconds=self.pending_ttl)
            for word in [w for w, entry in self.pending.items() if entry.timestamp < cutoff]:
                del self.pending[word]
        if self.pending_max is not None:
            while len(self.pending) > self.pending_max:
                oldest = min(self.pending, key=lambda w: self.pending[w].timestamp)
                del self.pending[oldest]

    def pending_feedback(self) -> list[PendingFeedback]:
        with self._lock:
            self._evict_pending()
            return list(self.pending.values())

    def process_feedback(
        self,
        word: str,
        suggested: str,
        is_correct: bool,
        correct: str | None = None,
    ) -> dict[str, float]:
        """
        Reinforce the suggested category when it was right; otherwise penalize
        it and boost the correct one. The word's weights always sum to 1
        afterwards. Replaying the previous event for the same word is a no-op.
        """
        word = word.strip().lower()
        event = (suggested, is_correct, correct)
        with self._lock:
            self.pending.pop(word, None)
            if self._last_feedback.get(word) == event and word in self.weights:
                return dict(self.weights[word])

            weights = dict(self.weights.get(word, {}))
            if is_correct:
                weights[suggested] = weights.get(suggested, 0.0) + POSITIVE_BOOST
            else:
                weights[suggested] = max(0.0, weights.get(suggested, 0.0) - NEGATIVE_PENALTY)
                if correct:
                    weights[correct] = weights.get(correct, 0.0) + POSITIVE_BOOST

            normalized = normalize_weights(weights)
            self.weights[word] = normalized
            self._last_feedback[word] = event

        logger.info("[FEEDBACK] '%s' weights now %s", word, normalized)
        self.save()
        return dict(normalized)

    def clear(self) -> None:
        with self._lock:
            self.weights = {word: {category: 1.0} for word, category in self._seed.items()}
            self.pending.clear()
            self._last_feedback.clear()
        self.save()
        logger.info("[ADAPTIVE] Learned weights cleared.")
