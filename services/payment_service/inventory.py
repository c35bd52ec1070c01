"""Stock reservation at checkout and restoration when payment fails."""
import logging
from typing import Iterable, List
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import CompensationPartialFailure, InsufficientStock
from .models import OrderItem, Product

logger = logging.getLogger(__name__)


class StockLine(BaseModel):
    product_id: UUID
    quantity: int = Field(gt=0)


class InventoryCompensator:
    """Keeps product stock in step with order outcomes using atomic SQL adjustments."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def check_availability(self, session: AsyncSession, lines: Iterable[StockLine]):
        """Raise InsufficientStock for the first line that cannot be fulfilled."""
        for line in lines:
            result = await session.execute(select(Product).where(Product.id == line.product_id))
            product = result.scalar_one_or_none()

            if product is None or not product.is_active:
                raise InsufficientStock(line.product_id, available=0)
            if product.stock_quantity < line.quantity:
                raise InsufficientStock(line.product_id, product.name, product.stock_quantity)

    async def reserve(self, session: AsyncSession, lines: Iterable[StockLine]):
        """
        Decrement stock for each line inside the caller's transaction.

        The decrement only matches rows with enough stock, so two checkouts
        racing for the last unit cannot both succeed. The caller rolls back
        on InsufficientStock.
        """
        for line in lines:
            result = await session.execute(
                update(Product)
                .where(
                    Product.id == line.product_id,
                    Product.is_active.is_(True),
                    Product.stock_quantity >= line.quantity,
                )
                .values(stock_quantity=Product.stock_quantity - line.quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                product = await session.get(Product, line.product_id)
                raise InsufficientStock(
                    line.product_id,
                    product.name if product else None,
                    product.stock_quantity if product else 0,
                )

        logger.debug("Reserved stock")

    async def restore(self, order_id: UUID) -> List[StockLine]:
        """
        Return an order's stock, one unit of work per item.

        A failing item does not undo its siblings. If any item fails,
        CompensationPartialFailure is raised after all items were attempted.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderItem.product_id, OrderItem.quantity).where(OrderItem.order_id == order_id)
            )
            lines = [StockLine(product_id=row.product_id, quantity=row.quantity) for row in result]

        restored: List[StockLine] = []
        failed: List[UUID] = []

        for line in lines:
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        update(Product)
                        .where(Product.id == line.product_id)
                        .values(stock_quantity=Product.stock_quantity + line.quantity)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to restore {line.quantity} of product {line.product_id} "
                    f"for order {order_id}: {str(e)}",
                    exc_info=True,
                )
                failed.append(line.product_id)
                continue

            if result.rowcount != 1:
                logger.error(
                    f"Product {line.product_id} missing, could not restore "
                    f"{line.quantity} for order {order_id}"
                )
                failed.append(line.product_id)
                continue

            restored.append(line)

        logger.info(f"Restored stock for {len(restored)}/{len(lines)} items of order {order_id}")

        if failed:
            raise CompensationPartialFailure(order_id, failed)
        return restored
