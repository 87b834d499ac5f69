"""
Tool Registry.

The fixed set of backend operations the language model may call during a
turn. Each tool declares a pydantic argument model; arguments are validated
before the handler runs, and the same model produces the function-calling
schema offered to the model.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from chat_commerce.database import DatabaseManager
from chat_commerce.exceptions import NotFoundError, ValidationError
from chat_commerce.matcher import match_products
from chat_commerce.models import OrderLine, Product, ToolResult
from chat_commerce.orders import OrderTransactionManager

logger = logging.getLogger(__name__)


# =============================================================================
# Tool argument models
# =============================================================================

class SearchProductsArgs(BaseModel):
    query: str = Field(
        ...,
        min_length=1,
        description="Termos de pesquisa para encontrar produtos pelo nome ou descrição",
    )


class ProductDetailsArgs(BaseModel):
    product_id: str = Field(..., min_length=1, description="ID do produto")


class ExtractProductsArgs(BaseModel):
    text: str = Field(..., description="Texto da mensagem do cliente")


class CheckAvailabilityArgs(BaseModel):
    items: List[OrderLine] = Field(
        ...,
        min_length=1,
        description="Produtos e quantidades desejadas",
    )


class CreateOrderArgs(BaseModel):
    customer_id: Optional[str] = Field(
        None,
        description="ID do cliente (número do WhatsApp); padrão: o remetente da conversa",
    )
    items: List[OrderLine] = Field(..., min_length=1, description="Itens do pedido")


# =============================================================================
# Registry
# =============================================================================

@dataclass
class ToolContext:
    """Per-turn values available to every handler."""
    sender_id: str


ToolHandler = Callable[[Any, ToolContext], Dict[str, Any]]


@dataclass
class ToolSpec:
    """A named tool: description, argument model and handler."""
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        """OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": _inline_refs(self.args_model.model_json_schema()),
            },
        }


class ToolRegistry:
    """Static name -> tool mapping with argument validation."""

    def __init__(self, tools: Optional[List[ToolSpec]] = None):
        self._tools: Dict[str, ToolSpec] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        """
        Raises:
            ValueError: On duplicate names or a non-pydantic argument model
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name!r} is already registered")
        if not (isinstance(tool.args_model, type) and issubclass(tool.args_model, BaseModel)):
            raise ValueError(f"Tool {tool.name!r} needs a pydantic argument model")
        if not callable(tool.handler):
            raise ValueError(f"Tool {tool.name!r} handler is not callable")
        self._tools[tool.name] = tool

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def validate(self, name: str, arguments: Union[Dict[str, Any], str, None]) -> BaseModel:
        """
        Resolve a tool and validate its arguments.

        Raises:
            ValidationError: Unknown tool, malformed JSON or invalid arguments
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ValidationError(code="UNKNOWN_TOOL", message=f"Unknown tool: {name}", tool=name)

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise ValidationError(
                    code="INVALID_ARGUMENTS",
                    message=f"Arguments for {name} are not valid JSON: {e}",
                    tool=name,
                ) from e
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"Arguments for {name} must be a JSON object",
                tool=name,
            )

        try:
            return tool.args_model.model_validate(arguments)
        except PydanticValidationError as e:
            raise ValidationError(code="INVALID_ARGUMENTS", message=str(e), tool=name) from e

    def execute(
        self,
        name: str,
        arguments: Union[Dict[str, Any], str, None],
        context: ToolContext,
    ) -> ToolResult:
        """
        Validate arguments and run a tool.

        Raises:
            ValidationError: Before the handler runs, for unknown tools or bad arguments
        """
        args = self.validate(name, arguments)
        started = time.perf_counter()
        payload = self._tools[name].handler(args, context)
        logger.info("Tool %s finished in %.1f ms", name, (time.perf_counter() - started) * 1000)
        return ToolResult(tool_name=name, payload=payload, is_error="error" in payload)


def _inline_refs(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Replace local $ref pointers with their definitions."""
    definitions = schema.get("$defs", {})

    def resolve(node: Any) -> Any:
        if isinstance(node, dict):
            ref = node.get("$ref")
            if isinstance(ref, str) and ref.startswith("#/$defs/"):
                return resolve(definitions[ref.split("/")[-1]])
            return {key: resolve(value) for key, value in node.items() if key != "$defs"}
        if isinstance(node, list):
            return [resolve(value) for value in node]
        return node

    return resolve(schema)


# =============================================================================
# Tool implementations
# =============================================================================

def _product_payload(product: Product) -> Dict[str, Any]:
    return product.model_dump(mode="json")


class CommerceTools:
    """Handlers backed by the catalog and the order transaction manager."""

    def __init__(self, database: DatabaseManager, orders: OrderTransactionManager):
        self.database = database
        self.orders = orders

    def search_products(self, args: SearchProductsArgs, context: ToolContext) -> Dict[str, Any]:
        products = self.database.search_products(args.query)
        return {
            "query": args.query,
            "results_count": len(products),
            "products": [_product_payload(product) for product in products],
        }

    def get_product_details(self, args: ProductDetailsArgs, context: ToolContext) -> Dict[str, Any]:
        try:
            product = self.database.get_product(args.product_id)
        except NotFoundError as e:
            return {"error": e.message}
        return {"product": _product_payload(product)}

    def extract_products(self, args: ExtractProductsArgs, context: ToolContext) -> Dict[str, Any]:
        candidates = match_products(args.text, self.database.list_products())
        return {
            "matched_products": [
                {
                    "id": candidate.product.id,
                    "name": candidate.product.name,
                    "price": str(candidate.product.price),
                    "quantity": candidate.quantity,
                    "subtotal": str(candidate.product.price * candidate.quantity),
                    "available": candidate.product.stock >= candidate.quantity,
                    "stock": candidate.product.stock,
                    "confidence": candidate.confidence,
                }
                for candidate in candidates
            ]
        }

    def check_availability(self, args: CheckAvailabilityArgs, context: ToolContext) -> Dict[str, Any]:
        products = self.database.get_products(item.product_id for item in args.items)
        results = []
        for item in args.items:
            product = products.get(item.product_id)
            if product is None:
                results.append({"product_id": item.product_id, "found": False, "available": False})
                continue
            results.append({
                "product_id": item.product_id,
                "name": product.name,
                "found": True,
                "available": product.stock >= item.quantity,
                "requested": item.quantity,
                "in_stock": product.stock,
                "price": str(product.price),
            })
        return {"results": results}

    def create_order(self, args: CreateOrderArgs, context: ToolContext) -> Dict[str, Any]:
        customer_id = args.customer_id or context.sender_id
        result = self.orders.create_order(customer_id, args.items)
        return result.model_dump(mode="json", exclude_none=True)


def build_tool_registry(database: DatabaseManager, orders: OrderTransactionManager) -> ToolRegistry:
    """Registry with the five commerce tools."""
    tools = CommerceTools(database, orders)
    return ToolRegistry([
        ToolSpec(
            name="search_products",
            description="Pesquisa produtos pelo nome ou descrição",
            args_model=SearchProductsArgs,
            handler=tools.search_products,
        ),
        ToolSpec(
            name="get_product_details",
            description="Obtém informações detalhadas de um produto específico pelo ID",
            args_model=ProductDetailsArgs,
            handler=tools.get_product_details,
        ),
        ToolSpec(
            name="extract_products",
            description="Extrai menções a produtos e suas quantidades de um texto do cliente",
            args_model=ExtractProductsArgs,
            handler=tools.extract_products,
        ),
        ToolSpec(
            name="check_availability",
            description="Verifica se produtos estão disponíveis em estoque nas quantidades desejadas",
            args_model=CheckAvailabilityArgs,
            handler=tools.check_availability,
        ),
        ToolSpec(
            name="create_order",
            description="Cria um novo pedido com os itens especificados e baixa o estoque",
            args_model=CreateOrderArgs,
            handler=tools.create_order,
        ),
    ])
