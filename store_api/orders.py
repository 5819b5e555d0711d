# store_api/orders.py

import logging

from sqlmodel import Session, select

from store_api.cache import PRODUCTS_KEY, product_detail_key
from store_api.dispatch import SideEffectDispatcher
from store_api.models import Order, OrderStatus, Product, utcnow
from store_api.stock import reduce_stock, restore_stock
from store_api.utils import stock_lines_for

logger = logging.getLogger(__name__)


class OrderNotFound(Exception):
    pass

class InsufficientStockForApproval(Exception):
    def __init__(self, errors: list[str]):
        super().__init__("Cannot approve order: Insufficient stock")
        self.errors = errors


def change_order_status(
    session: Session,
    order_id: str,
    requested_status: OrderStatus,
    dispatcher: SideEffectDispatcher,
) -> Order:
    """
    Move an order to requested_status, moving stock when the transition needs it.

    PENDING -> APPROVED takes the order's lines out of stock and is refused
    when any line is short. APPROVED -> PENDING puts them back; a failed
    restore is logged and the status change still goes through. Every other
    transition only changes the status.

    The order row is locked for the whole call and the stock moves are
    committed together with the status, so a failure anywhere leaves both
    untouched.

    Raises:
        OrderNotFound: No order with order_id.
        InsufficientStockForApproval: Approval refused, status left unchanged.
    """
    order = session.exec(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if not order:
        raise OrderNotFound(order_id)

    old_status = order.status
    order_number = order.order_number
    lines = stock_lines_for(order)
    stock_moved = False

    if old_status == OrderStatus.PENDING and requested_status == OrderStatus.APPROVED:
        logger.info(f"Approving order {order_number}, reducing stock...")
        result = reduce_stock(session, lines, commit=False)
        if not result.success:
            session.rollback()
            logger.warning(f"Order {order_number} not approved: {result.errors}")
            raise InsufficientStockForApproval(result.errors)
        stock_moved = True

    elif old_status == OrderStatus.APPROVED and requested_status == OrderStatus.PENDING:
        logger.info(f"Reverting order {order_number} to pending, restoring stock...")
        result = restore_stock(session, lines, commit=False)
        if result.success:
            stock_moved = True
        else:
            # TODO: confirm with the shop owners whether a failed restore should block the revert
            logger.error(f"Failed to restore stock for order {order_number}: {result.errors}")

    order.status = requested_status
    order.updated_at = utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order_number} status changed from {old_status.value} to {requested_status.value}")

    _queue_side_effects(session, order, old_status, stock_moved, dispatcher)
    return order


def _queue_side_effects(session, order, old_status, stock_moved, dispatcher) -> None:
    product_ids = sorted({item.product_id for item in order.items})
    products = [session.get(Product, product_id) for product_id in product_ids]
    products = [product for product in products if product is not None]

    dispatcher.invalidate([PRODUCTS_KEY, *(product_detail_key(product.slug) for product in products)])
    dispatcher.notify(
        "order_status_changed",
        order.order_number,
        order_id=order.id,
        old_status=old_status.value,
        new_status=order.status.value,
    )
    if stock_moved:
        for product in products:
            dispatcher.notify("product_updated", product.slug, name=product.name)
