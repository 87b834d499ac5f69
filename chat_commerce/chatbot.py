"""
Conversational Order Assistant - Agent Loop

Processes each inbound chat message as one turn:
1. Persist the customer's message in their conversation
2. Let the language model pick tools (search, details, extraction,
   availability, order creation) via function calling
3. Feed the tool results back for a final natural-language answer
4. Persist and send the answer

Turns for the same sender are serialized; different senders run
concurrently.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from chat_commerce.config import MODEL_TIMEOUT_SECONDS, PROCESSING_NOTICE, TOOL_TIMEOUT_SECONDS
from chat_commerce.conversation_store import ConversationStore
from chat_commerce.database import DatabaseManager, get_database
from chat_commerce.exceptions import CommerceError, ExternalServiceError, PersistenceError
from chat_commerce.llm import ChatModel, ModelReply, OpenAIChatModel
from chat_commerce.messaging import ConsoleMessenger, Messenger, WhatsAppMessenger, parse_webhook_payload
from chat_commerce.models import Conversation, InboundMessage, Message, Role, ToolCall, ToolResult
from chat_commerce.orders import OrderTransactionManager
from chat_commerce.tools import ToolContext, ToolRegistry, build_tool_registry

logger = logging.getLogger(__name__)


# =============================================================================
# System Prompts
# =============================================================================

SYSTEM_PROMPT = """Você é um assistente de vendas que ajuda os clientes a fazer pedidos pelo WhatsApp.

**Ferramentas:**
- search_products: pesquisar produtos pelo nome ou descrição
- get_product_details: detalhes de um produto pelo ID
- extract_products: extrair menções a produtos e quantidades do texto do cliente
- check_availability: verificar estoque para as quantidades desejadas
- create_order: criar o pedido e reservar o estoque

**Diretrizes:**
- Seja cordial, direto e eficiente. Não mencione que você é uma IA.
- Entenda o que o cliente deseja comprar e em quais quantidades.
- Sempre verifique a disponibilidade antes de criar o pedido e informe se algum
  produto não está disponível na quantidade solicitada.
- Nunca invente preços ou estoque; use apenas o que as ferramentas retornarem.

**Confirmação do pedido:**
Após criar um pedido com sucesso, forneça um resumo com os itens, quantidades,
preços unitários, subtotais e o total.
"""

APOLOGY_MESSAGE = (
    "Desculpe, ocorreu um erro ao processar sua solicitação. "
    "Por favor, tente novamente mais tarde."
)


# =============================================================================
# Turn state
# =============================================================================

class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FINAL = "awaiting_final"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    """Result of processing one inbound message."""
    state: TurnState
    reply: Optional[str] = None
    tool_results: List[ToolResult] = field(default_factory=list)
    failed_in: Optional[TurnState] = None
    error: Optional[str] = None


TranscriptEntry = Union[Message, ToolResult]


def to_model_messages(entries: Sequence[TranscriptEntry]) -> List[Dict[str, Any]]:
    """
    Flatten a transcript into chat-completion messages.

    Tool results become assistant messages of the form "<tool>: <json>".
    """
    messages = []
    for entry in entries:
        if isinstance(entry, ToolResult):
            content = f"{entry.tool_name}: {json.dumps(entry.payload, ensure_ascii=False)}"
            messages.append({"role": Role.ASSISTANT.value, "content": content})
        else:
            messages.append({"role": entry.role.value, "content": entry.content})
    return messages


class SenderLocks:
    """
    One asyncio.Lock per sender id.

    Locks are created on first use and dropped once no task holds or waits
    for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, sender_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(sender_id, asyncio.Lock())
        self._users[sender_id] = self._users.get(sender_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[sender_id] -= 1
            if not self._users[sender_id]:
                del self._users[sender_id]
                del self._locks[sender_id]

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# Order Assistant
# =============================================================================

class OrderChatbot:
    """
    Tool-calling order assistant.

    Uses OpenAI Function Calling to let the model decide between product
    search, mention extraction, availability checks and order creation.
    """

    def __init__(
        self,
        model: Optional[ChatModel] = None,
        messenger: Optional[Messenger] = None,
        database: Optional[DatabaseManager] = None,
        model_timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None,
        processing_notice: Optional[str] = None,
        system_prompt: str = SYSTEM_PROMPT,
        apology: str = APOLOGY_MESSAGE,
    ):
        """
        Initialize the assistant and its collaborators.

        Args:
            model: Language model client (OpenAIChatModel by default)
            messenger: Outbound transport (WhatsAppMessenger by default)
            database: Catalog/order/conversation database
            model_timeout: Seconds to wait for each model call
            tool_timeout: Seconds to wait for each tool call
            processing_notice: Text sent before a turn starts; empty disables
            system_prompt: Persona seeded into new conversations
            apology: Reply sent when a turn fails
        """
        self.model = model or OpenAIChatModel()
        self.messenger = messenger or WhatsAppMessenger()
        self.database = database or get_database()
        self.model_timeout = model_timeout or MODEL_TIMEOUT_SECONDS
        self.tool_timeout = tool_timeout or TOOL_TIMEOUT_SECONDS
        self.processing_notice = PROCESSING_NOTICE if processing_notice is None else processing_notice
        self.apology = apology

        self.store = ConversationStore(self.database, system_prompt)
        self.orders = OrderTransactionManager(self.database)
        self.registry: ToolRegistry = build_tool_registry(self.database, self.orders)
        self.locks = SenderLocks()

    async def _call_model(
        self,
        entries: Sequence[TranscriptEntry],
        tools: Optional[List[Dict[str, Any]]],
    ) -> ModelReply:
        try:
            return await asyncio.wait_for(
                self.model.complete(to_model_messages(entries), tools=tools),
                timeout=self.model_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                code="MODEL_TIMEOUT",
                message=f"Model did not answer within {self.model_timeout}s",
            ) from e

    async def _execute_tool(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """
        Run one tool call in a worker thread.

        Failures become an error payload the model can explain; a timeout
        fails the whole turn. Calls are never retried.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.registry.execute, call.name, call.arguments, context),
                timeout=self.tool_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                code="TOOL_TIMEOUT",
                message=f"Tool {call.name} did not finish within {self.tool_timeout}s",
                tool=call.name,
            ) from e
        except Exception as e:
            message = e.message if isinstance(e, CommerceError) else str(e)
            logger.warning("Tool %s failed: %s", call.name, message)
            return ToolResult(
                tool_name=call.name,
                payload={"error": f"{call.name}: {message}"},
                is_error=True,
            )

    async def run_turn(self, conversation: Conversation) -> TurnOutcome:
        """
        Drive one turn over a conversation whose last message is the user's.

        Only the final assistant reply is persisted. Tool results live in an
        in-memory copy of the transcript and are dropped if the turn fails.
        """
        state = TurnState.AWAITING_MODEL
        context = ToolContext(sender_id=conversation.sender_id)
        transcript: List[TranscriptEntry] = list(conversation.messages)
        tool_results: List[ToolResult] = []
        started = time.perf_counter()

        try:
            reply = await self._call_model(transcript, tools=self.registry.schemas())

            if reply.tool_calls:
                state = TurnState.EXECUTING_TOOLS
                logger.info(
                    "Conversation %s: model requested %s",
                    conversation.id,
                    [call.name for call in reply.tool_calls],
                )
                for call in reply.tool_calls:
                    result = await self._execute_tool(call, context)
                    tool_results.append(result)
                    transcript.append(result)

                state = TurnState.AWAITING_FINAL
                reply = await self._call_model(transcript, tools=None)

            text = reply.text
            await asyncio.to_thread(
                self.store.append,
                conversation.id,
                Message(role=Role.ASSISTANT, content=text),
            )
        except (ExternalServiceError, PersistenceError) as e:
            logger.error("Conversation %s: turn failed in %s: %s", conversation.id, state.value, e.message)
            return TurnOutcome(state=TurnState.FAILED, failed_in=state, error=e.message)

        logger.info(
            "Conversation %s: turn done in %.0f ms with %d tool call(s)",
            conversation.id,
            (time.perf_counter() - started) * 1000,
            len(tool_results),
        )
        return TurnOutcome(state=TurnState.DONE, reply=text, tool_results=tool_results)

    async def handle_message(self, inbound: InboundMessage) -> Optional[TurnOutcome]:
        """
        Process one inbound message end to end.

        Returns:
            The turn outcome, or None for ignored (non-text) messages
        """
        if inbound.kind != "text":
            logger.info("Ignoring %s message %s from %s", inbound.kind, inbound.message_id, inbound.sender_id)
            return None

        sender_id = inbound.sender_id
        async with self.locks.hold(sender_id):
            try:
                conversation = await asyncio.to_thread(self.store.record_user_message, sender_id, inbound.text)
            except CommerceError as e:
                logger.error("Could not record message %s from %s: %s", inbound.message_id, sender_id, e.message)
                await self._send(sender_id, self.apology)
                return TurnOutcome(state=TurnState.FAILED, failed_in=TurnState.AWAITING_MODEL, error=e.message)

            await self._mark_consumed(inbound.message_id)
            if self.processing_notice:
                await self._send(sender_id, self.processing_notice)

            try:
                outcome = await self.run_turn(conversation)
            except Exception as e:
                logger.exception("Unexpected error in turn for %s", sender_id)
                outcome = TurnOutcome(state=TurnState.FAILED, error=str(e))

            if outcome.state == TurnState.DONE:
                await self._send(sender_id, outcome.reply or "")
            else:
                await self._send(sender_id, self.apology)
            return outcome

    async def handle_webhook(self, body: Dict[str, Any]) -> List[Optional[TurnOutcome]]:
        """Process every message in a webhook body concurrently."""
        inbound = parse_webhook_payload(body)
        return list(await asyncio.gather(*(self.handle_message(message) for message in inbound)))

    async def _send(self, recipient: str, text: str) -> None:
        try:
            await self.messenger.send_text(recipient, text)
        except Exception as e:
            logger.error("Failed to send message to %s: %s", recipient, e)

    async def _mark_consumed(self, message_id: str) -> None:
        try:
            await self.messenger.mark_consumed(message_id)
        except Exception as e:
            logger.error("Failed to mark message %s as consumed: %s", message_id, e)

    def get_recent_orders(self, customer_id: Optional[str] = None, limit: int = 10):
        """Get recent orders from database."""
        return self.orders.list_orders(customer_id=customer_id, limit=limit)


# =============================================================================
# CLI Interface
# =============================================================================

CLI_SENDER_ID = "local-cli"


async def _cli_loop(chatbot: OrderChatbot) -> None:
    while True:
        try:
            user_input = (await asyncio.to_thread(input, "\nYou: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n\nThank you for shopping with us! Goodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ['quit', 'exit']:
            print("\nThank you for shopping with us! Goodbye!")
            break

        if user_input.lower() == 'orders':
            orders = chatbot.get_recent_orders(CLI_SENDER_ID, 5)
            if not orders:
                print("\nNo orders found.")
            else:
                print("\n--- Recent Orders ---")
                for order in orders:
                    print(f"  Order ID: {order.id[:8]}...")
                    print(f"  Items: {', '.join(f'{i.quantity}x {i.product_name}' for i in order.items)}")
                    print(f"  Total: R$ {order.total:.2f}")
                    print(f"  Status: {order.status.value}")
                    print(f"  Created: {order.created_at.strftime('%Y-%m-%d %H:%M')}")
                    print("-" * 30)
            continue

        await chatbot.handle_message(InboundMessage(
            sender_id=CLI_SENDER_ID,
            message_id=str(uuid.uuid4()),
            kind="text",
            text=user_input,
        ))


def run_cli():
    """Run the assistant in command-line interface mode."""
    print("=" * 60)
    print("Welcome to the Conversational Order Assistant!")
    print("=" * 60)
    print("\nTell me what you would like to buy.")
    print("Type 'quit' or 'exit' to end the conversation.")
    print("Type 'orders' to view your recent orders.")
    print("-" * 60)

    try:
        chatbot = OrderChatbot(messenger=ConsoleMessenger())
    except Exception as e:
        print(f"\nError initializing assistant: {e}")
        print("Make sure you have set up your environment variables correctly.")
        return

    asyncio.run(_cli_loop(chatbot))


if __name__ == "__main__":
    from chat_commerce.config import configure_logging

    configure_logging()
    run_cli()
