# store_api/stock.py

"""
Stock ledger mutations.

Rows are locked with SELECT ... FOR UPDATE in a fixed (product_id, size)
order and all lines are checked before anything is written, so a batch is
applied whole or not at all. Failures are returned as values.

By default each call is its own transaction: it commits on success and rolls
back on failure, and never raises. With commit=False the caller owns the
transaction. Nothing is committed or rolled back here, the writes stay
pending on the session, and unexpected database errors propagate so the
caller can roll its whole unit of work back.
"""

import logging
from dataclasses import dataclass, field

from sqlmodel import Session, select

from store_api.models import Product, ProductSize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: str
    size: str
    quantity: int

@dataclass
class StockResult:
    success: bool
    errors: list[str] = field(default_factory=list)

@dataclass
class AvailabilityResult:
    available: bool
    errors: list[str] = field(default_factory=list)


def missing_size_message(line: StockLine) -> str:
    return f"Product size {line.size} not found for product {line.product_id}"

def insufficient_stock_message(product_name: str, size: str, available: int, requested: int) -> str:
    return (
        f"Insufficient stock for {product_name} ({size}). "
        f"Available: {available}, Requested: {requested}"
    )


def _load_entries(session: Session, items: list[StockLine], lock: bool) -> dict[tuple[str, str], ProductSize]:
    """Fetch the ledger rows for every (product_id, size) in items, keyed by that pair."""
    keys = sorted({(line.product_id, line.size) for line in items})
    entries: dict[tuple[str, str], ProductSize] = {}
    # one row at a time in sorted key order so concurrent batches lock in the same order
    for product_id, size in keys:
        statement = select(ProductSize).where(
            ProductSize.product_id == product_id,
            ProductSize.size == size,
        )
        if lock:
            # overwrite rows already in the identity map with what the lock just read
            statement = statement.with_for_update().execution_options(populate_existing=True)
        entry = session.exec(statement).first()
        if entry:
            entries[(product_id, size)] = entry
    return entries


def _collect_errors(items: list[StockLine], entries: dict, check_quantity: bool) -> list[str]:
    errors = []
    claimed: dict[tuple[str, str], int] = {}
    for line in items:
        key = (line.product_id, line.size)
        entry = entries.get(key)
        if entry is None:
            errors.append(missing_size_message(line))
            continue
        if not check_quantity:
            continue

        available = entry.stock - entry.reserved_stock - claimed.get(key, 0)
        if available < line.quantity:
            errors.append(insufficient_stock_message(entry.product.name, line.size, available, line.quantity))
        else:
            claimed[key] = claimed.get(key, 0) + line.quantity
    return errors


def _refresh_products(session: Session, entries: dict) -> None:
    products: dict[str, Product] = {entry.product_id: entry.product for entry in entries.values()}
    for product in products.values():
        product.update_stock_status()
        session.add(product)


def _move_stock(session: Session, items: list[StockLine], direction: int, commit: bool) -> StockResult:
    verb = "reduced" if direction < 0 else "restored"
    entries = _load_entries(session, items, lock=True)
    errors = _collect_errors(items, entries, check_quantity=direction < 0)
    if errors:
        if commit:
            session.rollback()
        logger.warning(f"Stock not {verb}: {errors}")
        return StockResult(success=False, errors=errors)

    for line in items:
        entry = entries[(line.product_id, line.size)]
        entry.stock += direction * line.quantity
        session.add(entry)
        logger.info(
            f"Stock {verb}: {entry.product.name} ({line.size}) "
            f"{'-' if direction < 0 else '+'} {line.quantity} units. New stock: {entry.stock}"
        )
    _refresh_products(session, entries)
    if commit:
        session.commit()
    return StockResult(success=True)


def reduce_stock(session: Session, items: list[StockLine], commit: bool = True) -> StockResult:
    """
    Decrement stock for every line, all or nothing.

    Args:
        session (Session): Session the transaction runs on.
        items (list[StockLine]): Lines to take out of the ledger.
        commit (bool): End the transaction here. Pass False to leave the
            writes pending for the caller's own commit.

    Returns:
        StockResult: success flag plus one error per offending line.
    """
    if not commit:
        return _move_stock(session, items, -1, commit=False)
    try:
        return _move_stock(session, items, -1, commit=True)
    except Exception as e:
        session.rollback()
        logger.error(f"Error reducing stock: {e}")
        return StockResult(success=False, errors=["Failed to reduce stock"])


def restore_stock(session: Session, items: list[StockLine], commit: bool = True) -> StockResult:
    """
    Increment stock for every line, all or nothing.

    There is no upper bound and no idempotence key: restoring the same lines
    twice adds the quantities twice.
    """
    if not commit:
        return _move_stock(session, items, 1, commit=False)
    try:
        return _move_stock(session, items, 1, commit=True)
    except Exception as e:
        session.rollback()
        logger.error(f"Error restoring stock: {e}")
        return StockResult(success=False, errors=["Failed to restore stock"])


def check_stock_availability(session: Session, items: list[StockLine]) -> AvailabilityResult:
    """Dry run of reduce_stock. Reports every failing line, mutates nothing."""
    try:
        entries = _load_entries(session, items, lock=False)
        errors = _collect_errors(items, entries, check_quantity=True)
        return AvailabilityResult(available=not errors, errors=errors)
    except Exception as e:
        logger.error(f"Error checking stock availability: {e}")
        return AvailabilityResult(available=False, errors=["Failed to check stock availability"])
