import re

from cashtalk_categorizer.nlp.knowledge_base import (
    CURRENCY_SYMBOLS,
    STOP_WORDS,
    TYPO_VARIATIONS,
)

_THOUSANDS_WITH_DECIMALS = re.compile(r"\b(\d{1,3}(?:\.\d{3})+),(\d{1,2})\b")
_THOUSANDS = re.compile(r"\b(\d{1,3}(?:\.\d{3})+)\b(?!,\d)")
_DECIMAL_COMMA = re.compile(r"\b(\d+),(\d{1,2})\b")
_THOUSAND_SUFFIX = re.compile(r"\b(\d+(?:[.,]\d+)?)\s?k\b")
_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w+")
# Punctuation, except dots that sit between two digits.
_PUNCTUATION = re.compile(r"[^\w\s.]|_|(?<!\d)\.|\.(?!\d)")

LANGUAGE_ITALIAN = "it"
LANGUAGE_OTHER = "other"


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _expand_thousands(match: re.Match[str]) -> str:
    value = round(float(match.group(1).replace(",", ".")) * 1000, 2)
    return str(int(value)) if value.is_integer() else f"{value:.2f}"


def normalize(text: str | None) -> str:
    """
    Lower-case the text, spell out currency symbols and rewrite Italian
    number formats ("1.000,50", "10,50") with a dot as decimal separator.
    """
    if not text:
        return ""
    normalized = text.lower()
    for symbol, word in CURRENCY_SYMBOLS.items():
        normalized = normalized.replace(symbol, f" {word} ")
    normalized = _THOUSAND_SUFFIX.sub(_expand_thousands, normalized)
    normalized = _THOUSANDS_WITH_DECIMALS.sub(
        lambda match: f"{match.group(1).replace('.', '')}.{match.group(2)}",
        normalized,
    )
    normalized = _THOUSANDS.sub(lambda match: match.group(1).replace(".", ""), normalized)
    normalized = _DECIMAL_COMMA.sub(r"\1.\2", normalized)
    return _collapse(normalized)


def strip_punctuation(text: str) -> str:
    return _collapse(_PUNCTUATION.sub(" ", text))


def tokenize(text: str | None) -> list[str]:
    cleaned = strip_punctuation(normalize(text))
    if not cleaned:
        return []
    return cleaned.split(" ")


def correct_typos(text: str) -> tuple[str, bool]:
    """Replace known misspellings word by word; report whether any was found."""
    changed = False

    def _replace(match: re.Match[str]) -> str:
        nonlocal changed
        replacement = TYPO_VARIATIONS.get(match.group(0))
        if replacement is None:
            return match.group(0)
        changed = True
        return replacement

    return _WORD.sub(_replace, text), changed


def guess_language(tokens: list[str]) -> str:
    hits = sum(1 for token in tokens if token in STOP_WORDS)
    return LANGUAGE_ITALIAN if hits > 0 else LANGUAGE_OTHER
