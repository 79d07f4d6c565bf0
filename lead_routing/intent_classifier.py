"""
Intent signal detection for lead qualification.

Rule-based phrase matching over the lead's inbound messages. Each category
scores once, no matter how many of its phrases appear or how often.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern

logger = logging.getLogger(__name__)


class IntentCategory(Enum):
    """Buying-intent signal categories."""
    PURCHASE = "purchase"        # Explicit will to buy
    VISIT = "visit"              # Wants to see the car / schedule a visit
    URGENCY = "urgency"          # Needs it soon
    FINANCING = "financing"      # Down payment, installments, credit
    TRADE_IN = "trade_in"        # Has a car to trade
    PRICE = "price"              # Asking about the price


# Points per category when the intent budget is 30
DEFAULT_INTENT_WEIGHTS: Dict[IntentCategory, int] = {
    IntentCategory.PURCHASE: 10,
    IntentCategory.VISIT: 10,
    IntentCategory.URGENCY: 8,
    IntentCategory.FINANCING: 8,
    IntentCategory.TRADE_IN: 6,
    IntentCategory.PRICE: 5,
}

# Phrases are stored accent-free and lower-case; messages are folded the same way.
DEFAULT_LEXICON: Dict[IntentCategory, List[str]] = {
    IntentCategory.PURCHASE: [
        "quero comprar", "vou comprar", "fechar negocio", "vou levar",
        "quero fechar", "pode reservar",
        "want to buy", "ready to buy", "close the deal", "i'll take it",
    ],
    IntentCategory.VISIT: [
        "posso ir ver", "agendar visita", "posso visitar", "vou ai",
        "test drive", "ver o carro", "passar na loja",
        "schedule a visit", "come see", "book a visit",
    ],
    IntentCategory.URGENCY: [
        "preciso logo", "urgente", "hoje", "amanha", "essa semana",
        "urgent", "today", "tomorrow", "this week", "asap",
    ],
    IntentCategory.FINANCING: [
        "tenho entrada", "valor de entrada", "quanto de entrada",
        "financiamento", "financiar", "parcela", "parcelas", "consigo financiar",
        "consorcio",
        "financing", "down payment", "installment", "monthly payment", "loan",
    ],
    IntentCategory.TRADE_IN: [
        "trocar meu carro", "tenho um pra trocar", "aceita troca", "na troca",
        "trade in", "trade-in", "my old car",
    ],
    IntentCategory.PRICE: [
        "quanto custa", "qual valor", "qual o valor", "preco", "valor a vista",
        "how much", "price", "best price",
    ],
}


def fold_text(text: str) -> str:
    """Lower-case and strip accents ("Amanhã" -> "amanha")."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


@dataclass
class IntentMatch:
    """Categories detected across a set of messages."""
    categories: List[IntentCategory] = field(default_factory=list)
    phrases: Dict[IntentCategory, str] = field(default_factory=dict)  # first hit per category

    @property
    def category_names(self) -> List[str]:
        return [c.value for c in self.categories]


class IntentClassifier:
    """
    Detects intent categories in free text.

    Matching is whole-word, case-insensitive and accent-insensitive.
    """

    def __init__(self, lexicon: Optional[Dict[IntentCategory, List[str]]] = None):
        """
        Initialize the classifier.

        Args:
            lexicon: Phrases per category; defaults to DEFAULT_LEXICON
        """
        self.lexicon = lexicon if lexicon is not None else DEFAULT_LEXICON
        self._patterns: Dict[IntentCategory, List[Pattern]] = {
            category: [
                re.compile(rf"\b{re.escape(fold_text(phrase))}\b")
                for phrase in phrases
            ]
            for category, phrases in self.lexicon.items()
        }

    def match(self, texts: Iterable[str]) -> IntentMatch:
        """
        Find every category mentioned at least once.

        Args:
            texts: Message bodies (inbound only, chosen by the caller)

        Returns:
            IntentMatch with categories in lexicon order
        """
        folded = [fold_text(t) for t in texts if t]
        result = IntentMatch()
        if not folded:
            return result

        for category, patterns in self._patterns.items():
            hit = self._first_hit(patterns, folded)
            if hit is not None:
                result.categories.append(category)
                result.phrases[category] = hit

        if result.categories:
            logger.debug(f"Intent categories matched: {result.category_names}")
        return result

    @staticmethod
    def _first_hit(patterns: List[Pattern], texts: List[str]) -> Optional[str]:
        for pattern in patterns:
            for text in texts:
                found = pattern.search(text)
                if found:
                    return found.group(0)
        return None
