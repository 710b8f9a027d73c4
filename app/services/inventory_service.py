import logging
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from app.exceptions import InsufficientStock
from app.models.product import Product

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Stock accounting over Product.stock.

    Decrements are a single conditional UPDATE ("stock >= requested") so two
    orders racing for the same product can never oversell; the caller owns
    the transaction (commit / rollback).
    """

    def check_availability(
        self, session: Session, lines: Iterable[Tuple[int, int]]
    ) -> List[dict]:
        """Return one shortfall dict per line that cannot be served right now."""
        wanted: Dict[int, int] = {}
        for product_id, quantity in lines:
            wanted[product_id] = wanted.get(product_id, 0) + quantity

        if not wanted:
            return []

        products = session.exec(
            select(Product).where(Product.id.in_(list(wanted)))
        ).all()
        by_id = {p.id: p for p in products}

        shortfalls = []
        for product_id, quantity in wanted.items():
            product = by_id.get(product_id)
            available = product.stock if product and product.is_active else 0
            if available < quantity:
                shortfalls.append({
                    "product_id": product_id,
                    "name": product.name if product else f"#{product_id}",
                    "requested": quantity,
                    "available": max(available, 0),
                })
        return shortfalls

    def decrement(self, session: Session, product_id: int, quantity: int) -> None:
        result = session.execute(
            update(Product)
            .where(Product.id == product_id)
            .where(Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="evaluate")
        )

        if result.rowcount != 1:
            product = session.get(Product, product_id, populate_existing=True)
            available = product.stock if product else 0
            logger.warning(
                f"Stock decrement refused for product {product_id}: "
                f"requested {quantity}, available {available}"
            )
            raise InsufficientStock([{
                "product_id": product_id,
                "name": product.name if product else f"#{product_id}",
                "requested": quantity,
                "available": available,
            }])

        logger.info(f"Decremented product {product_id} by {quantity}")

    def increment(self, session: Session, product_id: int, quantity: int) -> None:
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="evaluate")
        )
        logger.info(f"Restored {quantity} units to product {product_id}")

    def decrement_all(self, session: Session, lines: Iterable[Tuple[int, int]]) -> None:
        for product_id, quantity in lines:
            self.decrement(session, product_id, quantity)

    def restock_all(self, session: Session, lines: Iterable[Tuple[int, int]]) -> int:
        """Restock items when an order is cancelled."""
        count = 0
        for product_id, quantity in lines:
            self.increment(session, product_id, quantity)
            count += 1
        return count
