"""
Order Transaction Manager.

Creates orders and decrements stock as one atomic unit. Validation, the
price snapshot, the order insert and the stock decrement all happen inside a
single write transaction, so two concurrent orders can never jointly oversell
a product.
"""

import logging
import sqlite3
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from chat_commerce.config import ORDER_MAX_ATTEMPTS
from chat_commerce.database import DatabaseManager
from chat_commerce.exceptions import NotFoundError, PersistenceError, ValidationError
from chat_commerce.models import (
    Order, OrderItem, OrderLine, OrderResult, Product,
    UnavailableItem, UnavailableReason,
)

logger = logging.getLogger(__name__)


class StockConflict(Exception):
    """A conditional stock decrement touched no row."""


class OrderTransactionManager:
    """
    Validates availability and creates orders atomically.

    This is the only code path that writes product stock.
    """

    def __init__(self, database: DatabaseManager, max_attempts: Optional[int] = None):
        self.database = database
        self.max_attempts = max_attempts or ORDER_MAX_ATTEMPTS

    def create_order(self, customer_id: str, items: Sequence[OrderLine]) -> OrderResult:
        """
        Create an order for every requested line, or for none of them.

        Args:
            customer_id: Customer placing the order
            items: Requested (product_id, quantity) lines

        Returns:
            OrderResult with the created order, or the full list of
            unavailable items when any line cannot be served

        Raises:
            ValidationError: If there are no items or no customer
            PersistenceError: If the database fails or conflicts persist
        """
        if not customer_id:
            raise ValidationError(code="INVALID_ORDER", message="customer_id is required")
        try:
            lines = [OrderLine.model_validate(item) for item in items]
        except PydanticValidationError as e:
            raise ValidationError(code="INVALID_ORDER", message=str(e)) from e
        if not lines:
            raise ValidationError(code="INVALID_ORDER", message="An order needs at least one item")

        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.database.transaction() as conn:
                    result = self._create_in_transaction(conn, customer_id, lines)
            except StockConflict as e:
                logger.warning("Stock changed during order for %s (attempt %d): %s", customer_id, attempt, e)
                continue

            if result.success:
                logger.info("Order %s created for %s, total %s", result.order_id, customer_id, result.total)
            else:
                logger.info(
                    "Order for %s rejected, unavailable: %s",
                    customer_id,
                    [item.product_id for item in result.unavailable_items],
                )
            return result

        raise PersistenceError(
            code="ORDER_CONFLICT",
            message=f"Could not apply stock changes after {self.max_attempts} attempts",
        )

    def _create_in_transaction(
        self,
        conn: sqlite3.Connection,
        customer_id: str,
        lines: List[OrderLine],
    ) -> OrderResult:
        products = self._load_products(conn, (line.product_id for line in lines))

        unavailable = self._find_unavailable(lines, products)
        if unavailable:
            # Nothing was written yet; the transaction commits as a no-op
            return OrderResult.rejected(unavailable)

        order_items = [
            OrderItem(
                product_id=line.product_id,
                product_name=products[line.product_id].name,
                quantity=line.quantity,
                price=products[line.product_id].price,
            )
            for line in lines
        ]
        order = Order(
            customer_id=customer_id,
            items=order_items,
            total=sum((item.subtotal for item in order_items), Decimal("0")),
        )

        conn.execute(
            "INSERT INTO orders (id, customer_id, total, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (order.id, order.customer_id, str(order.total), order.status.value, order.created_at.isoformat()),
        )
        for item in order.items:
            conn.execute(
                "INSERT INTO order_items (order_id, product_id, product_name, quantity, price) "
                "VALUES (?, ?, ?, ?, ?)",
                (order.id, item.product_id, item.product_name, item.quantity, str(item.price)),
            )

        for product_id, quantity in _requested_totals(lines).items():
            cursor = conn.execute(
                "UPDATE products SET stock = stock - ? WHERE id = ? AND stock >= ?",
                (quantity, product_id, quantity),
            )
            if cursor.rowcount != 1:
                raise StockConflict(f"{product_id} no longer has {quantity} units")

        return OrderResult.created(order)

    @staticmethod
    def _load_products(conn: sqlite3.Connection, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = sorted(set(product_ids))
        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(f"SELECT * FROM products WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: DatabaseManager._row_to_product(row) for row in rows}

    @staticmethod
    def _find_unavailable(lines: List[OrderLine], products: Dict[str, Product]) -> List[UnavailableItem]:
        """Classify every requested product; repeated lines are summed."""
        unavailable = []
        for product_id, requested in _requested_totals(lines).items():
            product = products.get(product_id)
            if product is None:
                unavailable.append(UnavailableItem(
                    product_id=product_id,
                    reason=UnavailableReason.NOT_FOUND,
                    requested=requested,
                ))
            elif product.stock < requested:
                unavailable.append(UnavailableItem(
                    product_id=product_id,
                    name=product.name,
                    reason=UnavailableReason.INSUFFICIENT_STOCK,
                    requested=requested,
                    available=product.stock,
                ))
        return unavailable

    def get_order(self, order_id: str) -> Order:
        """
        Raises:
            NotFoundError: If the order does not exist
        """
        order = self.database.get_order_by_id(order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", message=f"Order {order_id} not found")
        return order

    def list_orders(self, customer_id: Optional[str] = None, limit: int = 100) -> List[Order]:
        return self.database.get_orders(customer_id=customer_id, limit=limit)


def _requested_totals(lines: Iterable[OrderLine]) -> "OrderedDict[str, int]":
    totals: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals
