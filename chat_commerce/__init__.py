"""
Conversational Order Assistant

Turns free-text chat messages into validated, stock-consistent orders using
an LLM tool-calling loop, fuzzy product matching and transactional stock
control.
"""

from chat_commerce.models import (
    Product,
    Order,
    OrderItem,
    OrderLine,
    OrderResult,
    OrderStatus,
    MatchCandidate,
    Conversation,
    Message,
    Role,
    InboundMessage,
)
from chat_commerce.exceptions import (
    CommerceError,
    ValidationError,
    NotFoundError,
    ExternalServiceError,
    PersistenceError,
)
from chat_commerce.database import DatabaseManager, get_database
from chat_commerce.matcher import match_products
from chat_commerce.orders import OrderTransactionManager
from chat_commerce.conversation_store import ConversationStore
from chat_commerce.tools import ToolRegistry, build_tool_registry
from chat_commerce.chatbot import OrderChatbot, TurnOutcome, TurnState

__version__ = "1.0.0"
__all__ = [
    "Product",
    "Order",
    "OrderItem",
    "OrderLine",
    "OrderResult",
    "OrderStatus",
    "MatchCandidate",
    "Conversation",
    "Message",
    "Role",
    "InboundMessage",
    "CommerceError",
    "ValidationError",
    "NotFoundError",
    "ExternalServiceError",
    "PersistenceError",
    "DatabaseManager",
    "get_database",
    "match_products",
    "OrderTransactionManager",
    "ConversationStore",
    "ToolRegistry",
    "build_tool_registry",
    "OrderChatbot",
    "TurnOutcome",
    "TurnState",
]
