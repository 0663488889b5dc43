import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import DEFAULT_CATEGORY, CategoryGuess
from cashtalk_categorizer.nlp.knowledge_base import CURRENCY_WORDS

from .base import Classifier

logger = get_logger(__name__)

DEFAULT_ICON = "smartphone"
RULE_CONFIDENCE = 0.8
FOOD_CATEGORY = "Cibo"

CATEGORY_EMOJIS: dict[str, str] = {
    "Cibo": "🍕",
    "Alloggio": "🏠",
    "Trasporto": "🚗",
    "Intrattenimento": "🎬",
    "Utenze": "💡",
    "Shopping": "🛍️",
    "Salute": "⚕️",
    "Istruzione": "📚",
    "Viaggi": "✈️",
    "Cura Personale": "💇",
    "Abbonamenti": "📱",
    DEFAULT_CATEGORY: "📌",
}


def compile_words(words: Iterable[str]) -> re.Pattern[str]:
    """Whole-word, case-insensitive alternation; "xyzcafe" does not match "cafe"."""
    alternatives = sorted((re.escape(word) for word in words), key=len, reverse=True)
    return re.compile(rf"(?<!\w)(?:{'|'.join(alternatives)})(?!\w)", re.IGNORECASE)


@dataclass
class CategoryRule:
    category: str
    icon: str
    patterns: list[re.Pattern[str]] = field(default_factory=list)

    def match(self, text: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            found = pattern.search(text)
            if found:
                return found
        return None


@dataclass(frozen=True)
class RuleMatch:
    category: str
    icon: str

    @property
    def emoji(self) -> str:
        return CATEGORY_EMOJIS.get(self.category, CATEGORY_EMOJIS[DEFAULT_CATEGORY])


MERCHANT_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("Trasporto", "car", (
        "uber", "lyft", "taxi", "metro", "subway", "train", "bus", "carburante",
        "benzina", "autostrada", "pedaggio", "telepass", "biglietto", "treno",
        "aereo", "volo", "parcheggio", "car sharing", "autonoleggio", "italo",
        "trenitalia", "ryanair", "flixbus", "tram", "shell", "esso", "q8",
    )),
    ("Cibo", "shopping-bag", (
        "grocery", "food", "restaurant", "cafe", "starbucks", "coffee", "mcdonald",
        "burger", "pizza", "ristorante", "trattoria", "osteria", "bar",
        "supermercato", "alimentari", "pranzo", "cena", "colazione", "pasticceria",
        "gelateria", "panetteria", "bakery", "sushi", "kebab", "esselunga", "coop",
        "carrefour", "lidl", "eurospin", "conad", "pam", "auchan", "penny",
        "deliveroo", "glovo", "justeat", "burger king", "kfc",
    )),
    ("Shopping", "shopping-bag", (
        "amazon", "shopping", "store", "shop", "mall", "zara", "h&m", "ikea",
        "mediaworld", "euronics", "unieuro", "decathlon", "abbigliamento", "scarpe",
        "vestiti", "accessori", "ebay", "zalando", "leroy merlin", "boutique",
    )),
    ("Intrattenimento", "coffee", (
        "netflix", "spotify", "disney", "cinema", "teatro", "concerto", "museo",
        "mostra", "discoteca", "pub", "playstation", "xbox", "nintendo", "steam",
        "videogioco", "stadio", "partita", "festival", "bowling", "ticketmaster",
    )),
    ("Alloggio", "home", (
        "rent", "mortgage", "affitto", "mutuo", "condominio", "spese condominiali",
        "canone", "locazione", "idraulico", "elettricista", "arredamento", "mobili",
        "trasloco",
    )),
    ("Utenze", "smartphone", (
        "bolletta", "utenze", "luce", "acqua", "gas", "elettricità", "tari",
        "tim", "vodafone", "fastweb", "iliad", "enel", "eni", "a2a", "iren",
        "fibra", "adsl", "wifi", "telefono", "cellulare",
    )),
    ("Salute", "smartphone", (
        "pharmacy", "doctor", "hospital", "farmacia", "medico", "dottore",
        "ospedale", "farmaco", "medicinale", "dentista", "clinica", "ambulatorio",
        "fisioterapia", "ottico", "analisi",
    )),
    ("Istruzione", "coffee", (
        "school", "university", "scuola", "università", "corso", "lezione",
        "libri", "cancelleria", "ripetizioni", "master",
    )),
    ("Viaggi", "car", (
        "hotel", "airbnb", "booking", "albergo", "vacanza", "viaggio", "traghetto",
        "crociera", "campeggio", "expedia", "trivago",
    )),
    ("Cura Personale", "shopping-bag", (
        "parrucchiere", "barbiere", "estetista", "profumeria", "sephora",
        "douglas", "manicure", "massaggio",
    )),
    ("Abbonamenti", "smartphone", (
        "abbonamento", "iscrizione", "subscription", "dropbox", "microsoft",
        "adobe", "icloud", "vpn", "hosting",
    )),
)

FOOD_ITEMS: tuple[str, ...] = (
    "pane", "latte", "pasta", "riso", "frutta", "verdura", "carne", "pesce",
    "formaggio", "uova", "biscotti", "cornetto", "brioche", "croissant",
    "panino", "pizza", "gelato", "caffè", "caffe", "cappuccino", "birra",
    "vino", "sushi", "kebab", "hamburger", "insalata", "yogurt", "cioccolato",
    "torta", "mozzarella", "prosciutto", "olio", "zucchero", "spaghetti",
)


class FoodItemClassifier(Classifier):
    """Recognizes grocery and food item names in a description."""

    def __init__(self, items: Iterable[str] = FOOD_ITEMS, confidence: float = RULE_CONFIDENCE):
        self.pattern = compile_words(items)
        self.confidence = confidence

    def classify(self, text: str) -> CategoryGuess | None:
        if not text:
            return None
        found = self.pattern.search(text)
        if not found:
            return None
        return CategoryGuess(
            word=found.group(0).lower(),
            category=FOOD_CATEGORY,
            confidence=self.confidence,
            source="food_items",
        )


class RuleBasedCategorizer(Classifier):
    """Ordered merchant rules, first match wins."""

    def __init__(
        self,
        rules: Iterable[tuple[str, str, Iterable[str]]] = MERCHANT_RULES,
        confidence: float = RULE_CONFIDENCE,
    ):
        self.rules: list[CategoryRule] = [
            CategoryRule(category=category, icon=icon, patterns=[compile_words(words)])
            for category, icon, words in rules
        ]
        self.confidence = confidence
        self.default_category = DEFAULT_CATEGORY
        self.default_icon = DEFAULT_ICON

    def match(self, text: str) -> tuple[CategoryRule, re.Match[str]] | None:
        for rule in self.rules:
            found = rule.match(text)
            if found:
                return rule, found
        return None

    def categorize(self, merchant: str) -> RuleMatch:
        if not merchant:
            return RuleMatch(self.default_category, self.default_icon)
        matched = self.match(merchant)
        if matched is None:
            logger.debug("[RULES] No rule for '%s', using '%s'.", merchant, self.default_category)
            return RuleMatch(self.default_category, self.default_icon)
        rule, found = matched
        logger.debug("[RULES] '%s' matched '%s' -> %s", merchant, found.group(0), rule.category)
        return RuleMatch(rule.category, rule.icon)

    def classify(self, text: str) -> CategoryGuess | None:
        if not text:
            return None
        matched = self.match(text)
        if matched is None:
            return None
        rule, found = matched
        return CategoryGuess(
            word=found.group(0).lower(),
            category=rule.category,
            confidence=self.confidence,
            source="rules",
        )

    def add_custom_rule(self, category: str, icon: str, words: Iterable[str]) -> None:
        pattern = compile_words(words)
        for rule in self.rules:
            if rule.category == category:
                rule.patterns.append(pattern)
                logger.info("[RULES] Added patterns to existing category '%s'.", category)
                return
        self.rules.append(CategoryRule(category=category, icon=icon, patterns=[pattern]))
        logger.info("[RULES] Created new category '%s'.", category)


INVESTMENT_CONFIDENCE = 0.75
TICKER_CONFIDENCE = 0.5
UNCATEGORIZED_INVESTMENT = "Non Categorizzato"
UNCATEGORIZED_INVESTMENT_ICON = "landmark"

US_TICKER = re.compile(r"^[A-Z]{1,5}$")
EU_TICKER = re.compile(r"^[A-Z]{2,6}\.[A-Z]{2}$")
_TICKER_TOKEN = re.compile(r"[A-Za-z]+(?:\.[A-Za-z]{2})?")

# (category, icon, name words, ticker patterns). First match wins, so "fondo pensione" sits before "fondo".
INVESTMENT_RULES: tuple[tuple[str, str, tuple[str, ...], tuple[re.Pattern[str], ...]], ...] = (
    ("Azioni", "bar-chart", (
        "stock", "azioni", "equity", "shares", "spa", "s.p.a", "corp",
        "plc", "ltd", "holding", "inc", "tesla", "apple", "microsoft", "amazon",
        "google", "meta", "nvidia", "enel", "eni", "intesa", "unicredit",
        "ferrari", "stellantis",
    ), (US_TICKER, EU_TICKER)),
    ("ETF", "line-chart", (
        "etf", "etn", "exchange traded fund", "ishares", "vanguard", "spdr",
        "lyxor", "amundi", "xtrackers", "invesco", "wisdomtree", "tracker",
        "index fund", "msci", "ftse", "s&p", "russell", "nasdaq", "dow jones",
    ), ()),
    ("Obbligazioni", "percent", (
        "bond", "bonds", "obbligazioni", "titoli di stato", "btp", "bund",
        "treasury", "treasuries", "cedola", "coupon", "fixed income",
        "reddito fisso", "high yield", "investment grade",
    ), ()),
    ("Immobiliare", "building", (
        "real estate", "realestate", "reit", "immobiliare", "property",
        "siiq", "fondo immobiliare",
    ), ()),
    ("Pensione", "piggy-bank", (
        "pensione", "pension", "retirement", "previdenza", "fondo pensione",
        "fondi pensione", "pip", "tfr", "integrativa",
    ), ()),
    ("Fondi Comuni", "briefcase", (
        "mutual fund", "fondo", "fondi", "sicav", "oicr", "ucits", "comparto",
        "fidelity", "jp morgan", "blackrock", "pimco", "eurizon", "anima",
        "mediolanum", "fineco", "schroders",
    ), ()),
    ("Materie Prime", "circle-dollar", (
        "commodity", "commodities", "materie prime", "gold", "oro", "silver",
        "argento", "platinum", "platino", "petrolio", "gas naturale", "rame",
        "grano",
    ), ()),
    ("Crypto", "wallet", (
        "crypto", "criptovalute", "criptovaluta", "cryptocurrency", "bitcoin",
        "ethereum", "ripple", "litecoin", "cardano", "polkadot", "satoshi",
        "blockchain", "nft", "defi", "btc", "eth",
    ), ()),
    ("Investimenti Alternativi", "landmark", (
        "hedge fund", "private equity", "venture capital", "startup",
        "crowdfunding", "p2p", "private debt", "collezione", "orologio",
    ), ()),
    ("Assicurazioni", "heart-pulse", (
        "assicurazione", "insurance", "polizza", "unit linked", "index linked",
        "gestione separata", "riscatto", "rendita", "annuity",
    ), ()),
)


@dataclass
class InvestmentRule(CategoryRule):
    tickers: list[re.Pattern[str]] = field(default_factory=list)

    def match_ticker(self, ticker: str) -> bool:
        return any(pattern.match(ticker) for pattern in self.tickers)


class InvestmentRuleCategorizer(Classifier):
    """
    Categorizes investments by instrument or issuer name, falling back to
    ticker-shaped tokens. Name rules are tried across every category before
    any ticker, so "ETF VWCE" is an ETF and not a share.
    """

    def __init__(
        self,
        rules: Iterable[tuple[str, str, Iterable[str], Iterable[re.Pattern[str]]]] = INVESTMENT_RULES,
        confidence: float = INVESTMENT_CONFIDENCE,
        ticker_confidence: float = TICKER_CONFIDENCE,
    ):
        self.rules: list[InvestmentRule] = [
            InvestmentRule(category=category, icon=icon, patterns=[compile_words(words)], tickers=list(tickers))
            for category, icon, words, tickers in rules
        ]
        self.confidence = confidence
        self.ticker_confidence = ticker_confidence

    def categories(self) -> list[str]:
        return [rule.category for rule in self.rules]

    def match_name(self, text: str) -> tuple[InvestmentRule, re.Match[str]] | None:
        for rule in self.rules:
            found = rule.match(text)
            if found:
                return rule, found
        return None

    def match_ticker(self, ticker: str) -> InvestmentRule | None:
        for rule in self.rules:
            if rule.match_ticker(ticker):
                return rule
        return None

    def categorize(
        self,
        name: str | None = None,
        ticker: str | None = None,
        description: str | None = None,
    ) -> RuleMatch:
        if not name and not ticker:
            return RuleMatch(UNCATEGORIZED_INVESTMENT, UNCATEGORIZED_INVESTMENT_ICON)
        for text in (name, description):
            matched = self.match_name(text) if text else None
            if matched is not None:
                return RuleMatch(matched[0].category, matched[0].icon)
        rule = self.match_ticker(ticker) if ticker else None
        if rule is not None:
            return RuleMatch(rule.category, rule.icon)
        return RuleMatch(UNCATEGORIZED_INVESTMENT, UNCATEGORIZED_INVESTMENT_ICON)

    def classify(self, text: str) -> CategoryGuess | None:
        if not text:
            return None
        matched = self.match_name(text)
        if matched is not None:
            rule, found = matched
            return CategoryGuess(
                word=found.group(0).lower(),
                category=rule.category,
                confidence=self.confidence,
                source="investment_rules",
            )
        # Tickers are only recognizable in the text as typed. Single letters are too ambiguous in prose.
        for token in _TICKER_TOKEN.findall(text):
            if len(token) < 2 or token.lower() in CURRENCY_WORDS:
                continue
            rule = self.match_ticker(token)
            if rule is not None:
                logger.debug("[RULES] Ticker '%s' -> %s", token, rule.category)
                return CategoryGuess(
                    word=token.lower(),
                    category=rule.category,
                    confidence=self.ticker_confidence,
                    source="investment_ticker",
                )
        return None

    def add_custom_rule(
        self,
        category: str,
        icon: str,
        words: Iterable[str],
        tickers: Iterable[re.Pattern[str]] = (),
    ) -> None:
        words = list(words)
        tickers = list(tickers)
        for rule in self.rules:
            if rule.category == category:
                if words:
                    rule.patterns.append(compile_words(words))
                rule.tickers.extend(tickers)
                logger.info("[RULES] Added investment patterns to '%s'.", category)
                return
        self.rules.append(
            InvestmentRule(
                category=category,
                icon=icon,
                patterns=[compile_words(words)] if words else [],
                tickers=tickers,
            )
        )
        logger.info("[RULES] Created new investment category '%s'.", category)
