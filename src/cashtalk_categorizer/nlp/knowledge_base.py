"""
Static vocabulary used by the tokenizer, the intent classifier and the
entity extractor: intents with their trigger phrases, ordered category
keyword lists per transaction type, stop words and common misspellings.
"""
from dataclasses import dataclass

from cashtalk_categorizer.models import TransactionType


@dataclass(frozen=True)
class Intent:
    name: str
    type: TransactionType | None
    triggers: tuple[str, ...]


# Checked in this order; the first intent with a trigger in the text wins.
INTENTS: tuple[Intent, ...] = (
    Intent(
        name="add_income_increase",
        type=TransactionType.INCOME_INCREASE,
        triggers=(
            "aumento", "promozione", "avanzamento", "incremento", "adeguamento",
            "nuovo stipendio", "nuovo lavoro", "pay raise", "promotion",
        ),
    ),
    Intent(
        name="add_income",
        type=TransactionType.INCOME,
        triggers=(
            "ricevuto", "guadagnato", "incassato", "entrata", "stipendio",
            "salario", "rimborso", "dividendo", "bonifico ricevuto",
            "received", "earned", "salary", "income",
        ),
    ),
    Intent(
        name="add_expense",
        type=TransactionType.EXPENSE,
        triggers=(
            "speso", "spesa", "pagato", "comprato", "acquistato", "costato",
            "costo", "uscita", "spent", "paid", "bought",
        ),
    ),
    Intent(
        name="add_investment",
        type=TransactionType.INVESTMENT,
        triggers=(
            "investito", "investimento", "depositato", "risparmiato", "messo da parte",
            "etf", "obbligazioni", "bitcoin", "crypto",
            "invested", "investment",
        ),
    ),
    Intent(
        name="view_dashboard",
        type=None,
        triggers=("dashboard", "panoramica", "riepilogo", "overview"),
    ),
    Intent(
        name="view_expenses",
        type=None,
        triggers=("mostra spese", "vedi spese", "le mie spese", "show expenses"),
    ),
    Intent(
        name="view_investments",
        type=None,
        triggers=("mostra investimenti", "vedi investimenti", "portafoglio", "portfolio"),
    ),
    Intent(
        name="view_projections",
        type=None,
        triggers=("proiezioni", "previsioni", "projections"),
    ),
)


# Ordered (category, keywords) lists, scanned first match wins.
EXPENSE_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Cibo", (
        "supermercato", "ristorante", "pizza", "pranzo", "cena", "colazione",
        "caffè", "caffe", "gelato", "panino", "alimentari", "trattoria",
        "pizzeria", "fatto la spesa", "groceries",
    )),
    ("Trasporto", (
        "benzina", "carburante", "gasolio", "treno", "autobus", "metro", "taxi",
        "uber", "aereo", "volo", "biglietto", "parcheggio", "autostrada", "pedaggio",
    )),
    ("Alloggio", (
        "affitto", "mutuo", "bolletta", "condominio", "wifi", "internet",
        "luce", "riscaldamento",
    )),
    ("Salute", (
        "farmacia", "medico", "dottore", "dentista", "visita", "ospedale",
        "farmaco", "medicinale", "terapia",
    )),
    ("Intrattenimento", (
        "cinema", "teatro", "concerto", "netflix", "spotify", "videogioco",
        "museo", "streaming", "abbonamento",
    )),
    ("Shopping", (
        "vestiti", "scarpe", "giacca", "pantaloni", "camicia", "maglia",
        "jeans", "abbigliamento", "negozio",
    )),
    ("Tecnologia", (
        "computer", "smartphone", "tablet", "elettronica", "cuffie", "laptop",
    )),
    ("Fitness", ("palestra", "piscina", "yoga", "fitness")),
    ("Istruzione", ("corso", "università", "scuola", "lezione", "libri")),
    ("Viaggi", ("hotel", "albergo", "vacanza", "viaggio", "airbnb")),
)

INVESTMENT_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("ETF", ("etf", "indice", "vanguard", "ishares", "lyxor")),
    ("Azioni", ("azioni", "azione", "titoli", "borsa")),
    ("Obbligazioni", ("obbligazioni", "obbligazione", "bond", "btp", "buono del tesoro")),
    ("Crypto", ("crypto", "bitcoin", "ethereum", "criptovaluta", "btc")),
    ("Immobiliare", ("immobile", "immobiliare", "appartamento", "reit")),
    ("Previdenza", ("pensione", "previdenza", "tfr")),
    ("Fondi", ("fondo", "fondi", "sicav")),
)

INCOME_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Stipendio", ("stipendio", "salario", "busta paga", "retribuzione", "salary")),
    ("Bonus", ("bonus", "premio", "tredicesima", "quattordicesima", "gratifica")),
    ("Dividendi", ("dividendo", "dividendi", "cedola")),
    ("Freelance", ("fattura", "parcella", "consulenza", "freelance", "compenso")),
    ("Affitto", ("canone", "locazione", "inquilino", "affitto")),
    ("Rimborsi", ("rimborso", "cashback", "risarcimento")),
)

CATEGORIES_BY_TYPE: dict[TransactionType, tuple[tuple[str, tuple[str, ...]], ...]] = {
    TransactionType.EXPENSE: EXPENSE_CATEGORIES,
    TransactionType.INVESTMENT: INVESTMENT_CATEGORIES,
    TransactionType.INCOME: INCOME_CATEGORIES,
    TransactionType.INCOME_INCREASE: INCOME_CATEGORIES,
}

SALARY_CATEGORIES = frozenset({"Stipendio", "Salario"})


STOP_WORDS = frozenset({
    "il", "lo", "la", "i", "gli", "le", "l", "un", "uno", "una",
    "di", "a", "da", "in", "con", "su", "per", "tra", "fra",
    "del", "dello", "della", "dei", "degli", "delle",
    "al", "allo", "alla", "ai", "agli", "alle",
    "dal", "dallo", "dalla", "dai", "dagli", "dalle",
    "nel", "nello", "nella", "nei", "negli", "nelle",
    "sul", "sullo", "sulla", "sui", "sugli", "sulle",
    "e", "ed", "o", "ma", "che", "non", "mi", "ti", "si", "ci", "vi",
    "ho", "hai", "ha", "abbiamo", "hanno", "è", "sono", "era",
    "questo", "questa", "quello", "quella", "mio", "mia", "miei", "mie",
    "oggi", "ieri", "domani", "altroieri",
})

CURRENCY_WORDS: dict[str, str] = {
    "euro": "EUR",
    "eur": "EUR",
    "dollari": "USD",
    "dollaro": "USD",
    "dollars": "USD",
    "usd": "USD",
    "sterline": "GBP",
    "sterlina": "GBP",
    "pounds": "GBP",
    "gbp": "GBP",
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "€": "euro",
    "$": "dollari",
    "£": "sterline",
}

MONTHS = (
    "gennaio", "febbraio", "marzo", "aprile", "maggio", "giugno",
    "luglio", "agosto", "settembre", "ottobre", "novembre", "dicembre",
)

WEEKDAYS = (
    "lunedì", "martedì", "mercoledì", "giovedì", "venerdì", "sabato", "domenica",
)

# Weekday spellings without the accent, as typed on most keyboards.
WEEKDAY_ALIASES = {
    "lunedi": 0, "martedi": 1, "mercoledi": 2, "giovedi": 3, "venerdi": 4,
}

TYPO_VARIATIONS: dict[str, str] = {
    # expenses
    "spsa": "spesa", "speza": "spesa", "spessa": "spesa",
    "pagto": "pagato", "paggato": "pagato", "paghato": "pagato",
    "conprato": "comprato", "comprao": "comprato", "comperato": "comprato",
    "acquistao": "acquistato", "acquistto": "acquistato", "aquistato": "acquistato",
    "uscta": "uscita", "usita": "uscita",
    # investments
    "invstito": "investito", "investio": "investito", "ivestito": "investito",
    "investimeno": "investimento", "invstimento": "investimento",
    "investmento": "investimento",
    "depstato": "depositato", "depositao": "depositato", "depostato": "depositato",
    "risparmato": "risparmiato", "rispariato": "risparmiato",
    "azone": "azione", "azzione": "azione", "bitcon": "bitcoin", "bitcoi": "bitcoin",
    "cripto": "crypto", "obligazioni": "obbligazioni", "obligazione": "obbligazione",
    "imobile": "immobile", "imobiliare": "immobiliare",
    # income
    "ricevto": "ricevuto", "ricevuo": "ricevuto", "ricevut": "ricevuto",
    "guadagnto": "guadagnato", "guadagnat": "guadagnato",
    "incasato": "incassato", "incassao": "incassato",
    "entata": "entrata", "entrta": "entrata",
    "stipendo": "stipendio", "stipendyo": "stipendio", "stipndio": "stipendio",
    "stpendio": "stipendio", "salrio": "salario", "bonuss": "bonus",
    "rimborzo": "rimborso", "rimborsso": "rimborso", "rimbrso": "rimborso",
    "divdendo": "dividendo",
    # income increase
    "aumeto": "aumento", "aumennto": "aumento",
    "promzione": "promozione", "promozine": "promozione",
    "avanzameto": "avanzamento", "incremeto": "incremento",
    "adeguameto": "adeguamento",
}


def _collect_vocabulary() -> frozenset[str]:
    words: set[str] = set()
    for intent in INTENTS:
        for trigger in intent.triggers:
            words.update(trigger.split())
    for categories in (EXPENSE_CATEGORIES, INVESTMENT_CATEGORIES, INCOME_CATEGORIES):
        for _, keywords in categories:
            for keyword in keywords:
                words.update(keyword.split())
    words.update(CURRENCY_WORDS)
    words.update(MONTHS)
    words.update(WEEKDAYS)
    words.update(WEEKDAY_ALIASES)
    words.add("prossimo")
    return frozenset(words)


# Every single word the static knowledge base recognizes.
VOCABULARY = _collect_vocabulary()


def is_known_word(word: str) -> bool:
    return word in VOCABULARY or word in STOP_WORDS


# Words that only signal the kind of transaction, never its category.
TRIGGER_WORDS = frozenset(
    word
    for intent in INTENTS
    for trigger in intent.triggers
    for word in trigger.split()
) - {
    keyword
    for categories in CATEGORIES_BY_TYPE.values()
    for _, words in categories
    for keyword in words
}


def category_keywords(keywords: list[str]) -> list[str]:
    """Drop trigger words so feedback never maps e.g. "pagato" to a category."""
    return [keyword for keyword in keywords if keyword not in TRIGGER_WORDS]
