"""
Catalog Service
===============
Products, cart and reviews for the storefront, plus product management for
the back-office.
"""

from typing import Any, Dict, List, Optional

import structlog

from errors import ConflictError, NotFoundError, ValidationError
from schemas.commerce import AuthUser, CartItemRequest, ProductRequest, ReviewRequest
from storage.repository import CommerceStore

logger = structlog.get_logger().bind(component="catalog")

MAX_PAGE_SIZE = 100


def clamp_page(limit: Optional[int], offset: Optional[int], default: int = 20):
    limit = default if not limit or limit < 1 else min(limit, MAX_PAGE_SIZE)
    offset = max(offset or 0, 0)
    return limit, offset


class CatalogService:
    def __init__(self, store: CommerceStore):
        self.store = store

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def list_products(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        category_id: Optional[str] = None,
        search: Optional[str] = None,
        featured: Optional[bool] = None,
    ) -> Dict[str, Any]:
        limit, offset = clamp_page(limit, offset)
        products = await self.store.list_products(
            limit=limit,
            offset=offset,
            category_id=category_id,
            search=search.strip() if search else None,
            featured=featured,
        )
        return {"products": products, "limit": limit, "offset": offset}

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None or product.get("is_active") is False:
            raise NotFoundError("Product not found")
        return product

    async def create_product(self, body: ProductRequest) -> Dict[str, Any]:
        if not body.name or body.price is None:
            raise ValidationError("Name and price are required")
        product = await self.store.create_product(body.model_dump(exclude_none=True))
        logger.info("product_created", product_id=product["id"], name=product["name"])
        return product

    async def update_product(self, product_id: str, body: ProductRequest) -> Dict[str, Any]:
        fields = body.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No valid fields to update")
        product = await self.store.update_product(product_id, fields)
        if product is None:
            raise NotFoundError("Product not found")
        logger.info("product_updated", product_id=product_id, fields=sorted(fields))
        return product

    async def delete_product(self, product_id: str) -> None:
        if not await self.store.delete_product(product_id):
            raise NotFoundError("Product not found")
        logger.info("product_deleted", product_id=product_id)

    # =========================================================================
    # CART
    # =========================================================================

    async def list_cart(self, user: AuthUser) -> Dict[str, Any]:
        items = await self.store.list_cart(user.id)
        total = sum(float(i.get("product_price") or 0) * i["quantity"] for i in items)
        return {"items": items, "total": round(total, 2)}

    async def _available_product(self, product_id: str, quantity: int) -> Dict[str, Any]:
        product = await self.store.get_product(product_id)
        if product is None or product.get("is_active") is False:
            raise NotFoundError("Product not found")
        stock = product.get("stock_quantity")
        if stock is not None and stock < quantity:
            raise ConflictError("Insufficient stock", details={"available": stock})
        return product

    async def add_to_cart(self, user: AuthUser, body: CartItemRequest) -> Dict[str, Any]:
        """Add a product; an existing line for the same product has its quantity increased"""
        existing = await self.store.find_cart_item(user.id, body.product_id)
        quantity = body.quantity + (existing["quantity"] if existing else 0)
        await self._available_product(body.product_id, quantity)

        if existing:
            item = await self.store.update_cart_item(user.id, existing["id"], {"quantity": quantity})
        else:
            item = await self.store.insert_cart_item({
                "user_id": user.id,
                "product_id": body.product_id,
                "quantity": quantity,
            })
        logger.info("cart_item_added", user_id=user.id, product_id=body.product_id, quantity=quantity)
        return item

    async def update_cart_item(self, user: AuthUser, item_id: str, quantity: int) -> Dict[str, Any]:
        items = {i["id"]: i for i in await self.store.list_cart(user.id)}
        current = items.get(item_id)
        if current is None:
            raise NotFoundError("Cart item not found")
        await self._available_product(current["product_id"], quantity)
        return await self.store.update_cart_item(user.id, item_id, {"quantity": quantity})

    async def remove_cart_item(self, user: AuthUser, item_id: str) -> None:
        if not await self.store.delete_cart_item(user.id, item_id):
            raise NotFoundError("Cart item not found")

    async def clear_cart(self, user: AuthUser) -> int:
        return await self.store.clear_cart(user.id)

    # =========================================================================
    # REVIEWS
    # =========================================================================

    async def list_reviews(self, product_id: str) -> List[Dict[str, Any]]:
        return await self.store.list_reviews(product_id)

    async def create_review(self, user: AuthUser, body: ReviewRequest) -> Dict[str, Any]:
        if await self.store.get_product(body.product_id) is None:
            raise NotFoundError("Product not found")
        review = await self.store.insert_review({
            "product_id": body.product_id,
            "user_id": user.id,
            "rating": body.rating,
            "title": body.title,
            "comment": body.comment,
        })
        logger.info("review_created", product_id=body.product_id, user_id=user.id, rating=body.rating)
        return review
