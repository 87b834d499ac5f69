"""
Database module for catalog, order and conversation persistence.

Provides the SQL schema, connection management and the read side of the
catalog and orders using SQLite with parameterized queries. Stock is written
only by orders.OrderTransactionManager; transcripts only by
conversation_store.ConversationStore.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from chat_commerce.config import DATABASE_PATH
from chat_commerce.exceptions import NotFoundError, PersistenceError
from chat_commerce.models import Order, OrderItem, OrderStatus, Product

logger = logging.getLogger(__name__)

# Seconds a connection waits for another writer to release the database lock
DEFAULT_BUSY_TIMEOUT = 30.0


class DatabaseManager:
    """
    Manages SQLite connections and the shared schema.

    Every operation opens its own connection, so a manager can be used from
    several threads at once.
    """

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        """
        Initialize database manager with optional custom path.

        Args:
            db_path: Path to SQLite database file. Uses DATABASE_PATH if not provided.
            busy_timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path or DATABASE_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._initialize_schema()

    def _connect(self, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None if autocommit else "DEFERRED",
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_CONNECT_ERROR", message=str(e)) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(code="STORE_ERROR", message=str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def connection(self):
        """Short-lived connection for reads by collaborating stores."""
        return self._get_connection()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Open a write transaction that holds the database write lock.

        BEGIN IMMEDIATE takes the reserved lock before the first read, so the
        rows read inside the block cannot be changed by another writer until
        the block commits or rolls back.
        """
        try:
            conn = self._connect(autocommit=True)
        except sqlite3.Error as e:
            raise PersistenceError(code="STORE_CONNECT_ERROR", message=str(e)) from e
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            conn.close()
            raise PersistenceError(code="STORE_LOCK_ERROR", message=str(e)) from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(code="STORE_ERROR", message=str(e)) from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    price TEXT NOT NULL,
                    stock INTEGER NOT NULL CHECK(stock >= 0)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    total TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL
                )
            """)

            # Price is a snapshot of the product price at order time
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    product_name TEXT NOT NULL,
                    quantity INTEGER NOT NULL CHECK(quantity >= 1),
                    price TEXT NOT NULL,
                    FOREIGN KEY (order_id) REFERENCES orders(id)
                        ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversation_messages (
                    conversation_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (conversation_id, seq),
                    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_customer
                ON orders(customer_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_order_items_order_id
                ON order_items(order_id)
            """)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def upsert_products(self, products: Iterable[Product]) -> int:
        """
        Insert or replace catalog products.

        Returns:
            Number of products written
        """
        count = 0
        with self._get_connection() as conn:
            for product in products:
                conn.execute("""
                    INSERT INTO products (id, name, description, price, stock)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        description = excluded.description,
                        price = excluded.price,
                        stock = excluded.stock
                """, (product.id, product.name, product.description, str(product.price), product.stock))
                count += 1
        return count

    def list_products(self) -> List[Product]:
        """Return the whole catalog in insertion order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM products ORDER BY rowid").fetchall()
        return [self._row_to_product(row) for row in rows]

    def find_product(self, product_id: str) -> Optional[Product]:
        """Return a product, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        return self._row_to_product(row) if row else None

    def get_product(self, product_id: str) -> Product:
        """
        Retrieve a product by its ID.

        Raises:
            NotFoundError: If the product does not exist
        """
        product = self.find_product(product_id)
        if product is None:
            raise NotFoundError(code="PRODUCT_NOT_FOUND", message=f"Product {product_id} not found")
        return product

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Load several products at once, keyed by id. Unknown ids are absent."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM products WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: self._row_to_product(row) for row in rows}

    def search_products(self, query: str) -> List[Product]:
        """
        Case-insensitive substring search over product name and description.

        Matching is done in Python so accented characters fold correctly.
        """
        needle = query.casefold().strip()
        return [
            product for product in self.list_products()
            if needle in product.name.casefold() or needle in product.description.casefold()
        ]

    def get_product_count(self) -> int:
        """Get total number of products in the catalog."""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]

    # ------------------------------------------------------------------
    # Orders (read side)
    # ------------------------------------------------------------------

    def get_order_by_id(self, order_id: str) -> Optional[Order]:
        """
        Retrieve an order by its ID.

        Args:
            order_id: Unique order identifier

        Returns:
            Order object if found, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            if not row:
                return None
            item_rows = conn.execute(
                "SELECT * FROM order_items WHERE order_id = ? ORDER BY id", (order_id,)
            ).fetchall()
            return self._row_to_order(row, item_rows)

    def get_orders(self, customer_id: Optional[str] = None, limit: int = 100) -> List[Order]:
        """
        Retrieve the most recent orders, optionally for one customer.

        Args:
            customer_id: Only return orders placed by this customer
            limit: Maximum number of orders to return
        """
        with self._get_connection() as conn:
            if customer_id is None:
                order_rows = conn.execute(
                    "SELECT * FROM orders ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                order_rows = conn.execute(
                    "SELECT * FROM orders WHERE customer_id = ? ORDER BY created_at DESC LIMIT ?",
                    (customer_id, limit),
                ).fetchall()

            orders = []
            for order_row in order_rows:
                item_rows = conn.execute(
                    "SELECT * FROM order_items WHERE order_id = ? ORDER BY id", (order_row["id"],)
                ).fetchall()
                orders.append(self._row_to_order(order_row, item_rows))
            return orders

    def get_order_count(self) -> int:
        """Get total number of orders in database."""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]

    @staticmethod
    def _row_to_product(row: sqlite3.Row) -> Product:
        return Product(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            price=Decimal(row["price"]),
            stock=row["stock"],
        )

    @staticmethod
    def _row_to_order(order_row: sqlite3.Row, item_rows: List[sqlite3.Row]) -> Order:
        """Convert database rows to Order object."""
        items = [
            OrderItem(
                product_id=row["product_id"],
                product_name=row["product_name"],
                quantity=row["quantity"],
                price=Decimal(row["price"]),
            )
            for row in item_rows
        ]

        return Order(
            id=order_row["id"],
            customer_id=order_row["customer_id"],
            items=items,
            total=Decimal(order_row["total"]),
            status=OrderStatus(order_row["status"]),
            created_at=datetime.fromisoformat(order_row["created_at"]),
        )


def get_database(db_path: Optional[str] = None) -> DatabaseManager:
    """Get a database manager for the configured (or given) path."""
    return DatabaseManager(db_path)
