"""
Product mention extraction.

Finds catalog products mentioned in a customer's free-text message and the
quantity asked for each one. Matching is fuzzy at the word level so small
typos ("arros integral") still hit the product; quantities are read from
Portuguese expressions such as "2kg de arroz" or "3 pacotes".
"""

import re
from collections import Counter
from typing import List, Optional, Sequence

from chat_commerce.models import MatchCandidate, Product

# A name token counts as mentioned when some text token scores above this
SIMILARITY_THRESHOLD = 0.8

UNIT_WORDS = (
    "unidades", "unidade", "un",
    "quilos", "quilo", "kilos", "kilo", "kg",
    "litros", "litro", "l",
    "gramas", "grama", "g",
    "pacotes", "pacote",
    "caixas", "caixa",
    "garrafas", "garrafa",
)
CONNECTOR_WORDS = ("dos", "das", "de", "do", "da")

_UNIT_PATTERN = "|".join(UNIT_WORDS)
_CONNECTOR_PATTERN = "|".join(CONNECTOR_WORDS)
GENERIC_QUANTITY_RE = re.compile(rf"(\d+)\s*(?:{_UNIT_PATTERN})\b", re.IGNORECASE)


def _bigrams(value: str) -> Counter:
    compact = "".join(value.split())
    return Counter(compact[i:i + 2] for i in range(len(compact) - 1))


def similarity(first: str, second: str) -> float:
    """
    Dice coefficient over character bigrams, in [0, 1].

    Symmetric; 1.0 for identical strings (ignoring whitespace).
    """
    first = "".join(first.split())
    second = "".join(second.split())
    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = _bigrams(first)
    second_bigrams = _bigrams(second)
    overlap = sum((first_bigrams & second_bigrams).values())
    return 2.0 * overlap / (len(first) - 1 + len(second) - 1)


def _name_confidence(name_tokens: Sequence[str], text_tokens: Sequence[str]) -> Optional[float]:
    """Weakest best-match score over the name tokens, or None if any token is missing."""
    weakest = 1.0
    for name_token in name_tokens:
        best = max(similarity(text_token, name_token) for text_token in text_tokens)
        if best <= SIMILARITY_THRESHOLD:
            return None
        weakest = min(weakest, best)
    return weakest


def extract_quantity(text: str, product_name: str) -> int:
    """
    Quantity requested for a product, defaulting to 1.

    Looks for "<n> [unit] [de|do|da|dos|das] <product name>" first, then for
    the first "<n> <unit>" anywhere in the text. The second pass is not tied
    to the product, so with several quantities in one message it can pick the
    wrong one.
    """
    direct = re.search(
        rf"(\d+)\s*(?:(?:{_UNIT_PATTERN})\b)?\s*(?:(?:{_CONNECTOR_PATTERN})\b)?\s*{re.escape(product_name)}",
        text,
        re.IGNORECASE,
    )
    match = direct or GENERIC_QUANTITY_RE.search(text)
    if not match:
        return 1
    # "0 caixas" is read as a single unit
    return max(int(match.group(1)), 1)


def match_products(text: str, catalog: Sequence[Product]) -> List[MatchCandidate]:
    """
    Map free text to candidate (product, quantity) pairs.

    Args:
        text: Customer message
        catalog: Products to look for, in the order results should follow

    Returns:
        One candidate per mentioned product, in catalog order
    """
    text_tokens = text.lower().split()
    if not text_tokens:
        return []

    candidates = []
    for product in catalog:
        name = product.name.lower()
        name_tokens = name.split()
        if not name_tokens:
            continue
        confidence = _name_confidence(name_tokens, text_tokens)
        if confidence is None:
            continue
        candidates.append(MatchCandidate(
            product=product,
            quantity=extract_quantity(text, name),
            confidence=round(confidence, 4),
        ))
    return candidates
