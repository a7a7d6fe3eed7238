"""
Commerce Store - Persistence Interface
======================================
Every service talks to storage through `CommerceStore`, so the order,
payment and catalog logic runs unchanged against:

- PostgresCommerceStore: asyncpg pool from `database.Database`
- InMemoryCommerceStore: asyncio.Lock-guarded dicts (tests, local runs)

Rows travel as plain dicts with string ids. JSON columns are decoded on the
way out.

The in-memory store reproduces the Postgres failures the degrading order
writer reacts to: writing a column it was built without raises
UndefinedColumnError (42703), and a payment_status outside its allowed set
raises CheckViolationError (23514) or, in enum mode,
InvalidTextRepresentationError (22P02).
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg
import structlog

from database import Database, get_order_counts, get_revenue_stats

logger = structlog.get_logger().bind(component="commerce_store")

Row = Dict[str, Any]

JSON_COLUMNS = frozenset({"order_data", "webhook_data", "data", "metadata"})

ORDER_COLUMNS = frozenset({
    "id", "user_id", "total_amount", "shipping_amount", "tax_amount", "currency",
    "status", "payment_status", "payment_method", "shipping_address", "notes",
    "tracking_number", "contact_phone", "address_line_1", "city", "email", "place",
    "first_name", "last_name", "country", "customer_name", "customer_email",
    "customer_phone", "paid_at", "created_at", "updated_at",
})

PAYMENT_STATUS_VALUES = frozenset({"pending", "paid", "failed", "cancelled", "refunded"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_to_dict(row: Optional[asyncpg.Record]) -> Optional[Row]:
    """asyncpg.Record -> dict with str ids and decoded JSON columns"""
    if row is None:
        return None
    result = dict(row)
    for key, value in result.items():
        if isinstance(value, UUID):
            result[key] = str(value)
        elif key in JSON_COLUMNS and isinstance(value, str):
            try:
                result[key] = json.loads(value)
            except ValueError:
                pass
    return result


# =============================================================================
# INTERFACE
# =============================================================================

class CommerceStore(ABC):
    """Storage operations needed by orders, payments, catalog and notifications"""

    # ---- products -----------------------------------------------------------

    @abstractmethod
    async def list_products(
        self,
        limit: int = 20,
        offset: int = 0,
        category_id: Optional[str] = None,
        search: Optional[str] = None,
        featured: Optional[bool] = None,
        include_inactive: bool = False,
    ) -> List[Row]:
        pass

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Row]:
        pass

    @abstractmethod
    async def get_products(self, product_ids: Sequence[str]) -> List[Row]:
        pass

    @abstractmethod
    async def create_product(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def update_product(self, product_id: str, fields: Row) -> Optional[Row]:
        pass

    @abstractmethod
    async def delete_product(self, product_id: str) -> bool:
        pass

    # ---- users & addresses --------------------------------------------------

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Row]:
        pass

    @abstractmethod
    async def upsert_user(self, user_id: str, fields: Row) -> Row:
        pass

    @abstractmethod
    async def get_default_address(self, user_id: str) -> Optional[Row]:
        pass

    @abstractmethod
    async def save_default_address(self, user_id: str, fields: Row) -> Row:
        pass

    # ---- orders -------------------------------------------------------------

    @abstractmethod
    async def insert_order(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def insert_order_items(self, order_id: str, items: List[Row]) -> List[Row]:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Row]:
        """Order row with its `items`"""
        pass

    @abstractmethod
    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Row]:
        pass

    @abstractmethod
    async def update_order(self, order_id: str, fields: Row) -> Optional[Row]:
        """Write the given columns; database errors propagate unchanged"""
        pass

    @abstractmethod
    async def deliver_order(self, order_id: str) -> Optional[Row]:
        """Decrement stock for every item and set status=delivered in one unit"""
        pass

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool:
        """Delete items, payment sessions, payment transactions, then the order"""
        pass

    @abstractmethod
    async def find_paid_order(
        self, user_id: str, amount: float, created_from: datetime, created_to: datetime
    ) -> Optional[Row]:
        pass

    # ---- payment transactions -----------------------------------------------

    @abstractmethod
    async def find_transaction(
        self,
        references: Sequence[str] = (),
        gateway_ids: Sequence[str] = (),
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> Optional[Row]:
        """Match transaction_reference in `references` OR gateway_transaction_id in `gateway_ids`"""
        pass

    @abstractmethod
    async def insert_transaction(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def update_transaction(self, transaction_id: str, fields: Row) -> Optional[Row]:
        pass

    # ---- payment sessions ---------------------------------------------------

    @abstractmethod
    async def insert_session(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def find_session(
        self,
        references: Sequence[str] = (),
        gateway_ids: Sequence[str] = (),
        user_id: Optional[str] = None,
    ) -> Optional[Row]:
        pass

    @abstractmethod
    async def get_session_by_order_id(self, order_id: str) -> Optional[Row]:
        pass

    @abstractmethod
    async def update_session(self, session_id: str, fields: Row) -> Optional[Row]:
        pass

    @abstractmethod
    async def list_processing_sessions(
        self, user_id: str, amount: float, provider: str, phone_number: str, limit: int = 5
    ) -> List[Row]:
        pass

    @abstractmethod
    async def list_stuck_sessions(self, older_than: datetime, limit: int = 20) -> List[Row]:
        pass

    # ---- cart ---------------------------------------------------------------

    @abstractmethod
    async def list_cart(self, user_id: str) -> List[Row]:
        pass

    @abstractmethod
    async def find_cart_item(self, user_id: str, product_id: str) -> Optional[Row]:
        pass

    @abstractmethod
    async def insert_cart_item(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def update_cart_item(self, user_id: str, item_id: str, fields: Row) -> Optional[Row]:
        pass

    @abstractmethod
    async def delete_cart_item(self, user_id: str, item_id: str) -> bool:
        pass

    @abstractmethod
    async def clear_cart(self, user_id: str) -> int:
        pass

    # ---- reviews ------------------------------------------------------------

    @abstractmethod
    async def list_reviews(self, product_id: str) -> List[Row]:
        pass

    @abstractmethod
    async def insert_review(self, fields: Row) -> Row:
        pass

    # ---- notifications & logs -----------------------------------------------

    @abstractmethod
    async def insert_notification(self, fields: Row) -> Row:
        pass

    @abstractmethod
    async def update_notification(self, notification_id: str, fields: Row) -> Optional[Row]:
        pass

    @abstractmethod
    async def insert_payment_log(self, fields: Row) -> Row:
        pass

    # ---- analytics ----------------------------------------------------------

    @abstractmethod
    async def revenue_stats(self, days: int = 7) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def order_counts(self) -> Dict[str, int]:
        pass


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

def _encode(key: str, value: Any) -> Any:
    if key in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=str)
    return value


class PostgresCommerceStore(CommerceStore):
    """CommerceStore backed by the shared asyncpg pool"""

    async def _insert(self, table: str, fields: Row) -> Row:
        columns = list(fields.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"""
            INSERT INTO {table} ({', '.join(columns)})
            VALUES ({placeholders})
            RETURNING *
        """
        row = await Database.fetch_one(query, *[_encode(c, fields[c]) for c in columns])
        return record_to_dict(row)

    async def _update(self, table: str, row_id: str, fields: Row, owner_id: Optional[str] = None) -> Optional[Row]:
        if not fields:
            return record_to_dict(await Database.fetch_one(f"SELECT * FROM {table} WHERE id = $1", row_id))

        set_clauses = []
        params: List[Any] = []
        for key, value in fields.items():
            params.append(_encode(key, value))
            set_clauses.append(f"{key} = ${len(params)}")

        params.append(row_id)
        where = f"id = ${len(params)}"
        if owner_id is not None:
            params.append(owner_id)
            where += f" AND user_id = ${len(params)}"

        query = f"""
            UPDATE {table}
            SET {', '.join(set_clauses)}
            WHERE {where}
            RETURNING *
        """
        return record_to_dict(await Database.fetch_one(query, *params))

    # ---- products -----------------------------------------------------------

    async def list_products(self, limit=20, offset=0, category_id=None, search=None,
                            featured=None, include_inactive=False) -> List[Row]:
        conditions = []
        params: List[Any] = []

        if not include_inactive:
            conditions.append("COALESCE(is_active, TRUE)")
        if category_id:
            params.append(category_id)
            conditions.append(f"category_id = ${len(params)}")
        if search:
            params.append(f"%{search}%")
            conditions.append(f"(name ILIKE ${len(params)} OR description ILIKE ${len(params)})")
        if featured is not None:
            params.append(featured)
            conditions.append(f"is_featured = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = await Database.fetch_all(
            f"""
            SELECT * FROM products
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        return [record_to_dict(r) for r in rows]

    async def get_product(self, product_id: str) -> Optional[Row]:
        return record_to_dict(await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id))

    async def get_products(self, product_ids: Sequence[str]) -> List[Row]:
        rows = await Database.fetch_all(
            "SELECT * FROM products WHERE id = ANY($1::uuid[])", list(product_ids)
        )
        return [record_to_dict(r) for r in rows]

    async def create_product(self, fields: Row) -> Row:
        return await self._insert("products", fields)

    async def update_product(self, product_id: str, fields: Row) -> Optional[Row]:
        return await self._update("products", product_id, {**fields, "updated_at": _now()})

    async def delete_product(self, product_id: str) -> bool:
        result = await Database.execute("DELETE FROM products WHERE id = $1", product_id)
        return result.endswith(" 1")

    # ---- users & addresses --------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[Row]:
        return record_to_dict(await Database.fetch_one("SELECT * FROM users WHERE id = $1", user_id))

    async def upsert_user(self, user_id: str, fields: Row) -> Row:
        columns = ["id", *fields.keys()]
        values = [user_id, *fields.values()]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in fields.keys()) or "id = EXCLUDED.id"
        row = await Database.fetch_one(
            f"""
            INSERT INTO users ({', '.join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (id) DO UPDATE SET {updates}, updated_at = NOW()
            RETURNING *
            """,
            *values
        )
        return record_to_dict(row)

    async def get_default_address(self, user_id: str) -> Optional[Row]:
        row = await Database.fetch_one(
            """
            SELECT * FROM addresses
            WHERE user_id = $1 AND type = 'shipping'
            ORDER BY is_default DESC, created_at DESC
            LIMIT 1
            """,
            user_id
        )
        return record_to_dict(row)

    async def save_default_address(self, user_id: str, fields: Row) -> Row:
        existing = await self.get_default_address(user_id)
        if existing:
            return await self._update("addresses", existing["id"], fields)
        return await self._insert(
            "addresses", {"user_id": user_id, "type": "shipping", "is_default": True, **fields}
        )

    # ---- orders -------------------------------------------------------------

    async def insert_order(self, fields: Row) -> Row:
        return await self._insert("orders", fields)

    async def insert_order_items(self, order_id: str, items: List[Row]) -> List[Row]:
        inserted = []
        async with Database.acquire() as conn:
            async with conn.transaction():
                for item in items:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO order_items (order_id, product_id, quantity, price)
                        VALUES ($1, $2, $3, $4)
                        RETURNING *
                        """,
                        order_id, item["product_id"], item["quantity"], item["price"]
                    )
                    inserted.append(record_to_dict(row))
        return inserted

    async def _items_for(self, order_ids: List[str]) -> Dict[str, List[Row]]:
        if not order_ids:
            return {}
        rows = await Database.fetch_all(
            """
            SELECT oi.*, p.name AS product_name, p.image_url AS product_image_url
            FROM order_items oi
            LEFT JOIN products p ON p.id = oi.product_id
            WHERE oi.order_id = ANY($1::uuid[])
            ORDER BY oi.created_at
            """,
            order_ids
        )
        grouped: Dict[str, List[Row]] = {oid: [] for oid in order_ids}
        for row in rows:
            item = record_to_dict(row)
            grouped.setdefault(item["order_id"], []).append(item)
        return grouped

    async def get_order(self, order_id: str) -> Optional[Row]:
        order = record_to_dict(await Database.fetch_one("SELECT * FROM orders WHERE id = $1", order_id))
        if order:
            order["items"] = (await self._items_for([order["id"]])).get(order["id"], [])
        return order

    async def list_orders(self, user_id=None, status=None, limit=50, offset=0) -> List[Row]:
        conditions = []
        params: List[Any] = []
        if user_id:
            params.append(user_id)
            conditions.append(f"user_id = ${len(params)}")
        if status:
            params.append(status)
            conditions.append(f"status = ${len(params)}")
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = await Database.fetch_all(
            f"""
            SELECT * FROM orders
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        orders = [record_to_dict(r) for r in rows]
        items = await self._items_for([o["id"] for o in orders])
        for order in orders:
            order["items"] = items.get(order["id"], [])
        return orders

    async def update_order(self, order_id: str, fields: Row) -> Optional[Row]:
        return await self._update("orders", order_id, fields)

    async def deliver_order(self, order_id: str) -> Optional[Row]:
        async with Database.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE products p
                    SET stock_quantity = GREATEST(p.stock_quantity - oi.quantity, 0),
                        updated_at = NOW()
                    FROM order_items oi
                    WHERE oi.order_id = $1
                      AND oi.product_id = p.id
                      AND p.stock_quantity IS NOT NULL
                    """,
                    order_id
                )
                row = await conn.fetchrow(
                    """
                    UPDATE orders
                    SET status = 'delivered', updated_at = NOW()
                    WHERE id = $1
                    RETURNING *
                    """,
                    order_id
                )
        return record_to_dict(row)

    async def delete_order(self, order_id: str) -> bool:
        async with Database.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM order_items WHERE order_id = $1", order_id)
                await conn.execute("DELETE FROM payment_sessions WHERE order_id = $1", order_id)
                await conn.execute("DELETE FROM payment_transactions WHERE order_id = $1", order_id)
                result = await conn.execute("DELETE FROM orders WHERE id = $1", order_id)
        return result.endswith(" 1")

    async def find_paid_order(self, user_id, amount, created_from, created_to) -> Optional[Row]:
        row = await Database.fetch_one(
            """
            SELECT * FROM orders
            WHERE user_id = $1
              AND total_amount = $2
              AND payment_status = 'paid'
              AND created_at BETWEEN $3 AND $4
            ORDER BY created_at DESC
            LIMIT 1
            """,
            user_id, amount, created_from, created_to
        )
        return record_to_dict(row)

    # ---- payment transactions -----------------------------------------------

    async def find_transaction(self, references=(), gateway_ids=(), user_id=None, statuses=None) -> Optional[Row]:
        refs = [r for r in references if r]
        gws = [g for g in gateway_ids if g]
        if not refs and not gws:
            return None

        params: List[Any] = [refs, gws]
        query = """
            SELECT * FROM payment_transactions
            WHERE (transaction_reference = ANY($1::text[])
                   OR gateway_transaction_id = ANY($2::text[]))
        """
        if user_id:
            params.append(user_id)
            query += f" AND user_id = ${len(params)}"
        if statuses:
            params.append(list(statuses))
            query += f" AND status = ANY(${len(params)}::text[])"
        query += " ORDER BY created_at DESC LIMIT 1"
        return record_to_dict(await Database.fetch_one(query, *params))

    async def insert_transaction(self, fields: Row) -> Row:
        return await self._insert("payment_transactions", fields)

    async def update_transaction(self, transaction_id: str, fields: Row) -> Optional[Row]:
        return await self._update("payment_transactions", transaction_id, fields)

    # ---- payment sessions ---------------------------------------------------

    async def insert_session(self, fields: Row) -> Row:
        return await self._insert("payment_sessions", fields)

    async def find_session(self, references=(), gateway_ids=(), user_id=None) -> Optional[Row]:
        refs = [r for r in references if r]
        gws = [g for g in gateway_ids if g]
        if not refs and not gws:
            return None

        params: List[Any] = [refs, gws]
        query = """
            SELECT * FROM payment_sessions
            WHERE (transaction_reference = ANY($1::text[])
                   OR gateway_transaction_id = ANY($2::text[]))
        """
        if user_id:
            params.append(user_id)
            query += f" AND user_id = ${len(params)}"
        query += " ORDER BY created_at DESC LIMIT 1"
        return record_to_dict(await Database.fetch_one(query, *params))

    async def get_session_by_order_id(self, order_id: str) -> Optional[Row]:
        row = await Database.fetch_one(
            "SELECT * FROM payment_sessions WHERE order_id = $1 ORDER BY created_at DESC LIMIT 1",
            order_id
        )
        return record_to_dict(row)

    async def update_session(self, session_id: str, fields: Row) -> Optional[Row]:
        return await self._update("payment_sessions", session_id, fields)

    async def list_processing_sessions(self, user_id, amount, provider, phone_number, limit=5) -> List[Row]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_sessions
            WHERE user_id = $1 AND amount = $2 AND provider = $3
              AND phone_number = $4 AND status = 'processing'
            ORDER BY created_at DESC
            LIMIT $5
            """,
            user_id, amount, provider, phone_number, limit
        )
        return [record_to_dict(r) for r in rows]

    async def list_stuck_sessions(self, older_than: datetime, limit: int = 20) -> List[Row]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_sessions
            WHERE status IN ('pending', 'processing')
              AND created_at < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            older_than, limit
        )
        return [record_to_dict(r) for r in rows]

    # ---- cart ---------------------------------------------------------------

    async def list_cart(self, user_id: str) -> List[Row]:
        rows = await Database.fetch_all(
            """
            SELECT ci.*, p.name AS product_name, p.price AS product_price,
                   p.image_url AS product_image_url, p.stock_quantity AS product_stock
            FROM cart_items ci
            LEFT JOIN products p ON p.id = ci.product_id
            WHERE ci.user_id = $1
            ORDER BY ci.created_at
            """,
            user_id
        )
        return [record_to_dict(r) for r in rows]

    async def find_cart_item(self, user_id: str, product_id: str) -> Optional[Row]:
        row = await Database.fetch_one(
            "SELECT * FROM cart_items WHERE user_id = $1 AND product_id = $2",
            user_id, product_id
        )
        return record_to_dict(row)

    async def insert_cart_item(self, fields: Row) -> Row:
        return await self._insert("cart_items", fields)

    async def update_cart_item(self, user_id: str, item_id: str, fields: Row) -> Optional[Row]:
        return await self._update("cart_items", item_id, {**fields, "updated_at": _now()}, owner_id=user_id)

    async def delete_cart_item(self, user_id: str, item_id: str) -> bool:
        result = await Database.execute(
            "DELETE FROM cart_items WHERE id = $1 AND user_id = $2", item_id, user_id
        )
        return result.endswith(" 1")

    async def clear_cart(self, user_id: str) -> int:
        result = await Database.execute("DELETE FROM cart_items WHERE user_id = $1", user_id)
        return int(result.split()[-1]) if result else 0

    # ---- reviews ------------------------------------------------------------

    async def list_reviews(self, product_id: str) -> List[Row]:
        rows = await Database.fetch_all(
            """
            SELECT r.*, u.first_name, u.last_name
            FROM reviews r
            LEFT JOIN users u ON u.id = r.user_id
            WHERE r.product_id = $1 AND r.is_approved
            ORDER BY r.created_at DESC
            """,
            product_id
        )
        return [record_to_dict(r) for r in rows]

    async def insert_review(self, fields: Row) -> Row:
        return await self._insert("reviews", fields)

    # ---- notifications & logs -----------------------------------------------

    async def insert_notification(self, fields: Row) -> Row:
        return await self._insert("notifications", fields)

    async def update_notification(self, notification_id: str, fields: Row) -> Optional[Row]:
        return await self._update("notifications", notification_id, fields)

    async def insert_payment_log(self, fields: Row) -> Row:
        return await self._insert("payment_logs", fields)

    # ---- analytics ----------------------------------------------------------

    async def revenue_stats(self, days: int = 7) -> Dict[str, Any]:
        return await get_revenue_stats(days)

    async def order_counts(self) -> Dict[str, int]:
        return await get_order_counts()


# =============================================================================
# IN-MEMORY IMPLEMENTATION (tests and local runs)
# =============================================================================

class InMemoryCommerceStore(CommerceStore):
    """
    Lock-guarded in-memory tables.

    Args:
        order_columns: columns the `orders` table has; writing any other column
            fails the way Postgres does (42703)
        payment_status_values: values the payment_status column accepts
        payment_status_enum: reject bad payment_status as an enum (22P02)
            instead of a check constraint (23514)
    """

    def __init__(
        self,
        order_columns: Optional[Iterable[str]] = None,
        payment_status_values: Optional[Iterable[str]] = None,
        payment_status_enum: bool = False,
    ):
        self.order_columns = frozenset(order_columns) if order_columns is not None else ORDER_COLUMNS
        self.payment_status_values = (
            frozenset(payment_status_values) if payment_status_values is not None else PAYMENT_STATUS_VALUES
        )
        self.payment_status_enum = payment_status_enum

        self.products: Dict[str, Row] = {}
        self.users: Dict[str, Row] = {}
        self.addresses: Dict[str, Row] = {}
        self.orders: Dict[str, Row] = {}
        self.order_items: Dict[str, Row] = {}
        self.transactions: Dict[str, Row] = {}
        self.sessions: Dict[str, Row] = {}
        self.cart_items: Dict[str, Row] = {}
        self.reviews: Dict[str, Row] = {}
        self.notifications: Dict[str, Row] = {}
        self.payment_logs: List[Row] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _new_row(fields: Row) -> Row:
        now = _now()
        row = {"id": str(uuid4()), "created_at": now, "updated_at": now}
        row.update({k: v for k, v in fields.items() if v is not None or k not in row})
        return row

    @staticmethod
    def _copy(row: Optional[Row]) -> Optional[Row]:
        return copy.deepcopy(row) if row is not None else None

    # ---- products -----------------------------------------------------------

    async def list_products(self, limit=20, offset=0, category_id=None, search=None,
                            featured=None, include_inactive=False) -> List[Row]:
        async with self._lock:
            rows = list(self.products.values())
        if not include_inactive:
            rows = [p for p in rows if p.get("is_active", True) is not False]
        if category_id:
            rows = [p for p in rows if p.get("category_id") == category_id]
        if search:
            needle = search.lower()
            rows = [
                p for p in rows
                if needle in (p.get("name") or "").lower() or needle in (p.get("description") or "").lower()
            ]
        if featured is not None:
            rows = [p for p in rows if bool(p.get("is_featured")) == featured]
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return [self._copy(p) for p in rows[offset:offset + limit]]

    async def get_product(self, product_id: str) -> Optional[Row]:
        async with self._lock:
            return self._copy(self.products.get(product_id))

    async def get_products(self, product_ids: Sequence[str]) -> List[Row]:
        async with self._lock:
            return [self._copy(self.products[pid]) for pid in product_ids if pid in self.products]

    async def create_product(self, fields: Row) -> Row:
        row = self._new_row({"is_active": True, "is_featured": False, "stock_quantity": 0, **fields})
        async with self._lock:
            self.products[row["id"]] = row
            return self._copy(row)

    async def update_product(self, product_id: str, fields: Row) -> Optional[Row]:
        async with self._lock:
            row = self.products.get(product_id)
            if row is None:
                return None
            row.update(fields, updated_at=_now())
            return self._copy(row)

    async def delete_product(self, product_id: str) -> bool:
        async with self._lock:
            return self.products.pop(product_id, None) is not None

    # ---- users & addresses --------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[Row]:
        async with self._lock:
            return self._copy(self.users.get(user_id))

    async def upsert_user(self, user_id: str, fields: Row) -> Row:
        async with self._lock:
            row = self.users.get(user_id)
            if row is None:
                row = self._new_row({"id": user_id})
                self.users[user_id] = row
            row.update(fields, updated_at=_now())
            return self._copy(row)

    async def get_default_address(self, user_id: str) -> Optional[Row]:
        async with self._lock:
            rows = [a for a in self.addresses.values() if a["user_id"] == user_id and a.get("type") == "shipping"]
        rows.sort(key=lambda a: (bool(a.get("is_default")), a["created_at"]), reverse=True)
        return self._copy(rows[0]) if rows else None

    async def save_default_address(self, user_id: str, fields: Row) -> Row:
        existing = await self.get_default_address(user_id)
        async with self._lock:
            if existing:
                row = self.addresses[existing["id"]]
                row.update(fields, updated_at=_now())
            else:
                row = self._new_row({"user_id": user_id, "type": "shipping", "is_default": True, **fields})
                self.addresses[row["id"]] = row
            return self._copy(row)

    # ---- orders -------------------------------------------------------------

    def _check_order_columns(self, fields: Row) -> None:
        for key in fields:
            if key not in self.order_columns:
                raise asyncpg.exceptions.UndefinedColumnError(
                    f'column "{key}" of relation "orders" does not exist'
                )
        if "payment_status" in fields and fields["payment_status"] not in self.payment_status_values:
            value = fields["payment_status"]
            if self.payment_status_enum:
                raise asyncpg.exceptions.InvalidTextRepresentationError(
                    f'invalid input value for enum payment_status: "{value}"'
                )
            raise asyncpg.exceptions.CheckViolationError(
                'new row for relation "orders" violates check constraint "orders_payment_status_check"'
            )

    def _with_items(self, order: Row) -> Row:
        result = self._copy(order)
        items = [i for i in self.order_items.values() if i["order_id"] == order["id"]]
        result["items"] = [
            {
                **self._copy(i),
                "product_name": (self.products.get(i["product_id"]) or {}).get("name"),
                "product_image_url": (self.products.get(i["product_id"]) or {}).get("image_url"),
            }
            for i in sorted(items, key=lambda i: i["created_at"])
        ]
        return result

    async def insert_order(self, fields: Row) -> Row:
        self._check_order_columns(fields)
        row = self._new_row(fields)
        async with self._lock:
            self.orders[row["id"]] = row
            return self._copy(row)

    async def insert_order_items(self, order_id: str, items: List[Row]) -> List[Row]:
        async with self._lock:
            if order_id not in self.orders:
                raise asyncpg.exceptions.ForeignKeyViolationError(
                    'insert or update on table "order_items" violates foreign key constraint "order_items_order_id_fkey"'
                )
            rows = [
                self._new_row({
                    "order_id": order_id,
                    "product_id": item["product_id"],
                    "quantity": item["quantity"],
                    "price": item["price"],
                })
                for item in items
            ]
            for row in rows:
                self.order_items[row["id"]] = row
            return [self._copy(r) for r in rows]

    async def get_order(self, order_id: str) -> Optional[Row]:
        async with self._lock:
            order = self.orders.get(order_id)
            return self._with_items(order) if order else None

    async def list_orders(self, user_id=None, status=None, limit=50, offset=0) -> List[Row]:
        async with self._lock:
            rows = [
                o for o in self.orders.values()
                if (user_id is None or o.get("user_id") == user_id)
                and (status is None or o.get("status") == status)
            ]
            rows.sort(key=lambda o: o["created_at"], reverse=True)
            return [self._with_items(o) for o in rows[offset:offset + limit]]

    async def update_order(self, order_id: str, fields: Row) -> Optional[Row]:
        self._check_order_columns(fields)
        async with self._lock:
            row = self.orders.get(order_id)
            if row is None:
                return None
            row.update(fields)
            return self._copy(row)

    async def deliver_order(self, order_id: str) -> Optional[Row]:
        async with self._lock:
            row = self.orders.get(order_id)
            if row is None:
                return None
            for item in self.order_items.values():
                if item["order_id"] != order_id:
                    continue
                product = self.products.get(item["product_id"])
                if product is not None and product.get("stock_quantity") is not None:
                    product["stock_quantity"] = max(product["stock_quantity"] - item["quantity"], 0)
            row.update(status="delivered", updated_at=_now())
            return self._copy(row)

    async def delete_order(self, order_id: str) -> bool:
        async with self._lock:
            for table in (self.order_items, self.sessions, self.transactions):
                for key in [k for k, v in table.items() if v.get("order_id") == order_id]:
                    del table[key]
            return self.orders.pop(order_id, None) is not None

    async def find_paid_order(self, user_id, amount, created_from, created_to) -> Optional[Row]:
        async with self._lock:
            rows = [
                o for o in self.orders.values()
                if o.get("user_id") == user_id
                and float(o.get("total_amount") or 0) == float(amount)
                and o.get("payment_status") == "paid"
                and created_from <= o["created_at"] <= created_to
            ]
        rows.sort(key=lambda o: o["created_at"], reverse=True)
        return self._copy(rows[0]) if rows else None

    # ---- payment transactions -----------------------------------------------

    @staticmethod
    def _match_reference(row: Row, references: Sequence[str], gateway_ids: Sequence[str]) -> bool:
        refs = {r for r in references if r}
        gws = {g for g in gateway_ids if g}
        return row.get("transaction_reference") in refs or (
            row.get("gateway_transaction_id") is not None and row.get("gateway_transaction_id") in gws
        )

    async def find_transaction(self, references=(), gateway_ids=(), user_id=None, statuses=None) -> Optional[Row]:
        wanted = set(statuses) if statuses else None
        async with self._lock:
            rows = [
                t for t in self.transactions.values()
                if self._match_reference(t, references, gateway_ids)
                and (user_id is None or t.get("user_id") == user_id)
                and (wanted is None or t.get("status") in wanted)
            ]
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return self._copy(rows[0]) if rows else None

    async def insert_transaction(self, fields: Row) -> Row:
        row = self._new_row(fields)
        async with self._lock:
            self.transactions[row["id"]] = row
            return self._copy(row)

    async def update_transaction(self, transaction_id: str, fields: Row) -> Optional[Row]:
        async with self._lock:
            row = self.transactions.get(transaction_id)
            if row is None:
                return None
            row.update(fields)
            return self._copy(row)

    # ---- payment sessions ---------------------------------------------------

    async def insert_session(self, fields: Row) -> Row:
        row = self._new_row(fields)
        async with self._lock:
            self.sessions[row["id"]] = row
            return self._copy(row)

    async def find_session(self, references=(), gateway_ids=(), user_id=None) -> Optional[Row]:
        async with self._lock:
            rows = [
                s for s in self.sessions.values()
                if self._match_reference(s, references, gateway_ids)
                and (user_id is None or s.get("user_id") == user_id)
            ]
        rows.sort(key=lambda s: s["created_at"], reverse=True)
        return self._copy(rows[0]) if rows else None

    async def get_session_by_order_id(self, order_id: str) -> Optional[Row]:
        async with self._lock:
            rows = [s for s in self.sessions.values() if s.get("order_id") == order_id]
        rows.sort(key=lambda s: s["created_at"], reverse=True)
        return self._copy(rows[0]) if rows else None

    async def update_session(self, session_id: str, fields: Row) -> Optional[Row]:
        async with self._lock:
            row = self.sessions.get(session_id)
            if row is None:
                return None
            row.update(fields)
            return self._copy(row)

    async def list_processing_sessions(self, user_id, amount, provider, phone_number, limit=5) -> List[Row]:
        async with self._lock:
            rows = [
                s for s in self.sessions.values()
                if s.get("user_id") == user_id
                and float(s.get("amount") or 0) == float(amount)
                and s.get("provider") == provider
                and s.get("phone_number") == phone_number
                and s.get("status") == "processing"
            ]
        rows.sort(key=lambda s: s["created_at"], reverse=True)
        return [self._copy(s) for s in rows[:limit]]

    async def list_stuck_sessions(self, older_than: datetime, limit: int = 20) -> List[Row]:
        async with self._lock:
            rows = [
                s for s in self.sessions.values()
                if s.get("status") in ("pending", "processing") and s["created_at"] < older_than
            ]
        rows.sort(key=lambda s: s["created_at"])
        return [self._copy(s) for s in rows[:limit]]

    # ---- cart ---------------------------------------------------------------

    async def list_cart(self, user_id: str) -> List[Row]:
        async with self._lock:
            rows = sorted(
                (c for c in self.cart_items.values() if c["user_id"] == user_id),
                key=lambda c: c["created_at"],
            )
            result = []
            for item in rows:
                product = self.products.get(item["product_id"]) or {}
                result.append({
                    **self._copy(item),
                    "product_name": product.get("name"),
                    "product_price": product.get("price"),
                    "product_image_url": product.get("image_url"),
                    "product_stock": product.get("stock_quantity"),
                })
            return result

    async def find_cart_item(self, user_id: str, product_id: str) -> Optional[Row]:
        async with self._lock:
            for item in self.cart_items.values():
                if item["user_id"] == user_id and item["product_id"] == product_id:
                    return self._copy(item)
        return None

    async def insert_cart_item(self, fields: Row) -> Row:
        row = self._new_row(fields)
        async with self._lock:
            self.cart_items[row["id"]] = row
            return self._copy(row)

    async def update_cart_item(self, user_id: str, item_id: str, fields: Row) -> Optional[Row]:
        async with self._lock:
            row = self.cart_items.get(item_id)
            if row is None or row["user_id"] != user_id:
                return None
            row.update(fields, updated_at=_now())
            return self._copy(row)

    async def delete_cart_item(self, user_id: str, item_id: str) -> bool:
        async with self._lock:
            row = self.cart_items.get(item_id)
            if row is None or row["user_id"] != user_id:
                return False
            del self.cart_items[item_id]
            return True

    async def clear_cart(self, user_id: str) -> int:
        async with self._lock:
            keys = [k for k, v in self.cart_items.items() if v["user_id"] == user_id]
            for key in keys:
                del self.cart_items[key]
            return len(keys)

    # ---- reviews ------------------------------------------------------------

    async def list_reviews(self, product_id: str) -> List[Row]:
        async with self._lock:
            rows = [
                r for r in self.reviews.values()
                if r["product_id"] == product_id and r.get("is_approved", True)
            ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._copy(r) for r in rows]

    async def insert_review(self, fields: Row) -> Row:
        row = self._new_row({"is_approved": True, **fields})
        async with self._lock:
            self.reviews[row["id"]] = row
            return self._copy(row)

    # ---- notifications & logs -----------------------------------------------

    async def insert_notification(self, fields: Row) -> Row:
        row = self._new_row(fields)
        async with self._lock:
            self.notifications[row["id"]] = row
            return self._copy(row)

    async def update_notification(self, notification_id: str, fields: Row) -> Optional[Row]:
        async with self._lock:
            row = self.notifications.get(notification_id)
            if row is None:
                return None
            row.update(fields)
            return self._copy(row)

    async def insert_payment_log(self, fields: Row) -> Row:
        row = self._new_row(fields)
        async with self._lock:
            self.payment_logs.append(row)
            return self._copy(row)

    # ---- analytics ----------------------------------------------------------

    async def revenue_stats(self, days: int = 7) -> Dict[str, Any]:
        now = _now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        window_start = today - timedelta(days=days)

        async with self._lock:
            paid = [o for o in self.orders.values() if o.get("payment_status") == "paid"]
            pending = [o for o in self.orders.values() if o.get("payment_status") == "pending"]

        def _paid_time(order: Row) -> datetime:
            return order.get("paid_at") or order.get("updated_at") or order["created_at"]

        return {
            "today": sum(float(o.get("total_amount") or 0) for o in paid if _paid_time(o) >= today),
            "window": sum(float(o.get("total_amount") or 0) for o in paid if _paid_time(o) >= window_start),
            "all_time": sum(float(o.get("total_amount") or 0) for o in paid),
            "pending": sum(float(o.get("total_amount") or 0) for o in pending),
            "paid_orders": len(paid),
            "days": days,
        }

    async def order_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        async with self._lock:
            for order in self.orders.values():
                counts[order.get("status")] = counts.get(order.get("status"), 0) + 1
        return counts
