import datetime as dt
import re
from collections.abc import Callable

from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import Entities
from cashtalk_categorizer.nlp.knowledge_base import (
    CURRENCY_WORDS,
    MONTHS,
    STOP_WORDS,
    WEEKDAY_ALIASES,
    WEEKDAYS,
)
from cashtalk_categorizer.nlp.tokenizer import strip_punctuation

logger = get_logger(__name__)

DEFAULT_CURRENCY = "EUR"

_CURRENCY_PATTERN = "|".join(sorted(CURRENCY_WORDS, key=len, reverse=True))
_AMOUNT = re.compile(rf"\b(\d+(?:\.\d+)?)\b(?:\s*({_CURRENCY_PATTERN})\b)?")
_CURRENCY = re.compile(rf"\b({_CURRENCY_PATTERN})\b")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")

_FULL_DATE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")
_SHORT_DATE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})\b(?![/-]\d)")
_MONTH_DATE = re.compile(rf"\b(\d{{1,2}})\s+({'|'.join(MONTHS)})(?:\s+(\d{{4}}))?\b")
_RELATIVE_DAYS = {"altroieri": -2, "ieri": -1, "oggi": 0, "domani": 1}
_RELATIVE_DATE = re.compile(rf"\b({'|'.join(_RELATIVE_DAYS)})\b")
_WEEKDAY_INDEX = {name: index for index, name in enumerate(WEEKDAYS)} | WEEKDAY_ALIASES
_WEEKDAY = re.compile(
    rf"\b({'|'.join(_WEEKDAY_INDEX)})\b(?:\s+(prossimo|prossima|scorso|scorsa))?"
)


def _full_date(match: re.Match[str], today: dt.date) -> dt.date:
    return dt.date(int(match.group(3)), int(match.group(2)), int(match.group(1)))


def _short_date(match: re.Match[str], today: dt.date) -> dt.date:
    return dt.date(today.year, int(match.group(2)), int(match.group(1)))


def _month_date(match: re.Match[str], today: dt.date) -> dt.date:
    year = int(match.group(3)) if match.group(3) else today.year
    return dt.date(year, MONTHS.index(match.group(2)) + 1, int(match.group(1)))


def _relative_date(match: re.Match[str], today: dt.date) -> dt.date:
    return today + dt.timedelta(days=_RELATIVE_DAYS[match.group(1)])


def _weekday_date(match: re.Match[str], today: dt.date) -> dt.date:
    weekday = _WEEKDAY_INDEX[match.group(1)]
    if match.group(2) in {"prossimo", "prossima"}:
        ahead = (weekday - today.weekday()) % 7 or 7
        return today + dt.timedelta(days=ahead)
    back = (today.weekday() - weekday) % 7 or 7
    return today - dt.timedelta(days=back)


DateResolver = Callable[[re.Match[str], dt.date], dt.date]

# Explicit dates before relative words; "altroieri" before "ieri".
DATE_PATTERNS: tuple[tuple[re.Pattern[str], DateResolver], ...] = (
    (_FULL_DATE, _full_date),
    (_SHORT_DATE, _short_date),
    (_MONTH_DATE, _month_date),
    (_RELATIVE_DATE, _relative_date),
    (_WEEKDAY, _weekday_date),
)


def is_number(token: str) -> bool:
    return _NUMBER.fullmatch(token) is not None


def extract_keywords(text: str) -> list[str]:
    """Tokens longer than two characters that are not stop words, currencies or numbers."""
    keywords: list[str] = []
    for token in strip_punctuation(text).split():
        if len(token) <= 2 or token in STOP_WORDS or token in CURRENCY_WORDS or is_number(token):
            continue
        keywords.append(token)
    return keywords


class EntityExtractor:
    def __init__(self, today: Callable[[], dt.date] = dt.date.today) -> None:
        self._today = today

    def extract_date(self, text: str) -> tuple[dt.date | None, str]:
        """
        Resolve the first recognizable date expression and return it together
        with the text stripped of every date expression, so that "10/05" is
        never read as an amount.
        """
        today = self._today()
        resolved: dt.date | None = None
        remaining = text
        for pattern, resolver in DATE_PATTERNS:
            for match in pattern.finditer(remaining):
                if resolved is not None:
                    break
                try:
                    resolved = resolver(match, today)
                except ValueError:
                    logger.debug("[ENTITIES] Ignoring invalid date '%s'", match.group(0))
            remaining = pattern.sub(" ", remaining)
        return resolved, " ".join(remaining.split())

    def extract_amount(self, text: str) -> tuple[float | None, str | None]:
        match = _AMOUNT.search(text)
        if match is None:
            return None, None
        return float(match.group(1)), match.group(2)

    def extract_currency(self, text: str, adjacent: str | None = None) -> str:
        if adjacent:
            return CURRENCY_WORDS[adjacent]
        match = _CURRENCY.search(text)
        if match is None:
            return DEFAULT_CURRENCY
        return CURRENCY_WORDS[match.group(1)]

    def extract(self, text: str) -> Entities:
        resolved_date, without_dates = self.extract_date(text)
        amount, currency_word = self.extract_amount(without_dates)
        currency = self.extract_currency(without_dates, currency_word)

        description = _AMOUNT.sub(" ", without_dates)
        description = _CURRENCY.sub(" ", description)
        description = strip_punctuation(description)

        return Entities(
            amount=amount,
            currency=currency,
            date=resolved_date or self._today(),
            date_resolved=resolved_date is not None,
            description=description,
            keywords=extract_keywords(without_dates),
        )
