"""
Stock Mutator — validated quantity changes with a paired ledger entry.

Every change appends exactly one Transaction row and updates the
product's live quantity in the same database transaction. Changes to
the same product are serialized; different products proceed in
parallel.

Direct edits to Product.quantity (LedgerStore.update_product) are still
allowed. They are how real-world miscounts and theft show up in the
data, and the rule engine is what catches them.
"""

import asyncio
import uuid
import weakref
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import SQLAlchemyError

from db.models import TRANSACTION_TYPES, Product, Transaction
from db.store import LedgerStore

logger = structlog.get_logger()

DECREASING_TYPES = frozenset({"sale", "expiry", "damage"})
DEFAULT_ACTOR = "system"


class InvalidStockChange(ValueError):
    """Rejected before any read or write."""


class ProductNotFound(LookupError):
    pass


@dataclass
class StockChangeResult:
    product: Product
    transaction: Transaction

    @property
    def message(self) -> str:
        return f"Stock {self.transaction.transaction_type} recorded successfully"


# Per-product locks; entries disappear once no coroutine holds a reference.
_product_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(product_id: uuid.UUID) -> asyncio.Lock:
    lock = _product_locks.get(product_id)
    if lock is None:
        lock = asyncio.Lock()
        _product_locks[product_id] = lock
    return lock


def validate_stock_change(quantity: int, transaction_type: str) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidStockChange("Quantity must be a positive integer")
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidStockChange(f"Invalid transaction type: {transaction_type!r}")


def signed_delta(quantity: int, transaction_type: str) -> int:
    """sale/expiry/damage remove stock; everything else adds it."""
    if transaction_type in DECREASING_TYPES:
        return -abs(quantity)
    return abs(quantity)


def compute_new_quantity(previous_quantity: int, delta: int) -> int:
    """Floor at zero: overselling clamps instead of erroring."""
    return max(0, previous_quantity + delta)


async def apply_stock_change(
    store: LedgerStore,
    product_id: uuid.UUID,
    quantity: int,
    transaction_type: str,
    reason: str | None = None,
    actor: str | None = None,
) -> StockChangeResult:
    """
    Apply one stock change and record it in the ledger.

    Raises:
        InvalidStockChange: bad quantity or type (nothing is written)
        ProductNotFound: unknown product_id
        SQLAlchemyError: store failure, after rolling back
    """
    validate_stock_change(quantity, transaction_type)

    async with _lock_for(product_id):
        try:
            product = await store.get_product(product_id, for_update=True)
            if product is None:
                await store.rollback()
                raise ProductNotFound(f"Product {product_id} not found")

            previous = product.quantity
            delta = signed_delta(quantity, transaction_type)
            new_quantity = compute_new_quantity(previous, delta)

            transaction = Transaction(
                product_id=product.product_id,
                transaction_type=transaction_type,
                quantity_delta=delta,
                previous_quantity=previous,
                new_quantity=new_quantity,
                reason=reason,
                actor=actor or DEFAULT_ACTOR,
                transaction_metadata={},
            )
            store.add_transactions([transaction])
            product.quantity = new_quantity
            await store.commit()
        except SQLAlchemyError as exc:
            await store.rollback()
            logger.error(
                "stock.change_failed",
                product_id=str(product_id),
                transaction_type=transaction_type,
                error=str(exc),
                exc_info=True,
            )
            raise

    logger.info(
        "stock.change_applied",
        product_id=str(product_id),
        transaction_type=transaction_type,
        delta=delta,
        previous_quantity=previous,
        new_quantity=new_quantity,
    )
    return StockChangeResult(product=product, transaction=transaction)
