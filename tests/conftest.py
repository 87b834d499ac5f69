"""
Shared fixtures and fakes for the order assistant tests.
"""

import asyncio
import os
import sys
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from chat_commerce.database import DatabaseManager
from chat_commerce.llm import ModelReply
from chat_commerce.models import Product


# =============================================================================
# Fakes
# =============================================================================

class ScriptedModel:
    """Returns (or raises) the scripted replies in order and records each call."""

    def __init__(self, replies: List[Any], delay: float = 0.0):
        self.replies = list(replies)
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, tools=None) -> ModelReply:
        self.calls.append({"messages": messages, "tools": tools})
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingMessenger:
    """Collects outbound traffic; can be told to fail."""

    def __init__(self, fail_send: bool = False, fail_mark: bool = False):
        self.sent: List[tuple] = []
        self.consumed: List[str] = []
        self.fail_send = fail_send
        self.fail_mark = fail_mark

    async def send_text(self, recipient: str, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("transport down")
        self.sent.append((recipient, text))

    async def mark_consumed(self, message_id: str) -> None:
        if self.fail_mark:
            raise RuntimeError("transport down")
        self.consumed.append(message_id)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def test_database(tmp_path):
    """Create a temporary test database."""
    db_path = tmp_path / "test_commerce.db"
    return DatabaseManager(str(db_path))


@pytest.fixture
def catalog() -> List[Product]:
    return [
        Product(
            id="ARZ-INT",
            name="Arroz Integral",
            description="Arroz integral tipo 1, pacote de 1kg",
            price=Decimal("8.90"),
            stock=10,
        ),
        Product(
            id="FEI-PRE",
            name="Feijão Preto",
            description="Feijão preto tipo 1, pacote de 1kg",
            price=Decimal("9.49"),
            stock=20,
        ),
        Product(
            id="PROD-A",
            name="Produto A",
            description="Item de teste com estoque limitado",
            price=Decimal("10.00"),
            stock=5,
        ),
    ]


@pytest.fixture
def stocked_database(test_database, catalog):
    """Temporary database holding the test catalog."""
    test_database.upsert_products(catalog)
    return test_database


def stock_of(database: DatabaseManager, product_id: str) -> Optional[int]:
    product = database.find_product(product_id)
    return product.stock if product else None
