"""Cart manager: the user's single PENDING order and its line items.

Every mutation runs under the owner's cart lock and commits once, so the
stored ``Order.total`` always matches its items when the lock is released.
The partial unique index on pending orders and the (order, product) unique
constraint close the remaining races across processes.
"""
from storefront.extensions import db
from storefront.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    NotFoundError,
    OrderStateError,
    StorageError,
    StorefrontError,
)
from storefront.models import Order, OrderItem, OrderStatus, Product
from storefront.services.locks import cart_locks
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')


def validate_quantity(quantity) -> int:
    # bool is an int subclass; "2" from a form is accepted
    if isinstance(quantity, bool):
        raise InvalidQuantityError()
    if isinstance(quantity, str) and quantity.strip().isdigit():
        quantity = int(quantity.strip())
    if not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError()
    return quantity


def _pending_orders_query(user_id):
    return Order.query.filter_by(
        user_id=user_id,
        status=OrderStatus.PENDING
    ).order_by(Order.id.asc())


def find_pending_order(user):
    return _pending_orders_query(user.id).first()


def _get_or_create_pending_order(user):
    order = find_pending_order(user)
    if order:
        return order

    order = Order(
        user_id=user.id,
        status=OrderStatus.PENDING,
        total=Decimal('0.00'))
    try:
        with db.session.begin_nested():
            db.session.add(order)
    except IntegrityError:
        # Lost the insert race; the unique index kept the winner.
        logger.info("Pending order for user %s already exists", user.id)
        order = find_pending_order(user)
        if order is None:
            raise
    return order


def _add_to_order(order, product, quantity):
    item = OrderItem.query.filter_by(
        order_id=order.id,
        product_id=product.id
    ).first()

    if item is None:
        if quantity > product.stock:
            raise InsufficientStockError()
        item = OrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=quantity,
            price=product.price
        )
        try:
            with db.session.begin_nested():
                db.session.add(item)
            return item
        except IntegrityError:
            logger.info(
                "Item for product %s already in order %s",
                product.id,
                order.id)
            item = OrderItem.query.filter_by(
                order_id=order.id,
                product_id=product.id
            ).first()
            if item is None:
                raise

    if item.quantity + quantity > product.stock:
        raise InsufficientStockError()
    # Increment in SQL so a concurrent writer's increment is not lost.
    item.quantity = OrderItem.quantity + quantity
    db.session.flush()
    return item


def recalculate_total(order):
    order.total = order.compute_total().quantize(TWO_PLACES)
    return order.total


def _abandon(action, exc):
    db.session.rollback()
    logger.error("Cart %s failed: %s", action, exc, exc_info=True)
    raise StorageError() from exc


def add_item(user, product_id, quantity=1):
    quantity = validate_quantity(quantity)

    with cart_locks.hold(user.id):
        try:
            product = Product.query.filter_by(
                id=product_id,
                is_deleted=False
            ).first()
            if product is None:
                raise NotFoundError('Product not found')

            order = _get_or_create_pending_order(user)
            _add_to_order(order, product, quantity)
            recalculate_total(order)
            db.session.commit()
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            _abandon('add', e)

        logger.info(
            "User %s added %s x product %s to order %s",
            user.id,
            quantity,
            product_id,
            order.id)
        return get_cart(user)


def _owned_pending_item(user, item_id):
    item = db.session.get(OrderItem, item_id)
    if item is None or item.order.user_id != user.id:
        raise NotFoundError('Cart item not found')
    if not item.order.is_pending:
        raise OrderStateError('Completed orders cannot be modified')
    return item


def update_quantity(user, item_id, quantity):
    quantity = validate_quantity(quantity)

    with cart_locks.hold(user.id):
        try:
            item = _owned_pending_item(user, item_id)
            if quantity > item.product.stock:
                raise InsufficientStockError()
            item.quantity = quantity
            recalculate_total(item.order)
            db.session.commit()
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            _abandon('update', e)

        return get_cart(user)


def remove_item(user, item_id):
    with cart_locks.hold(user.id):
        try:
            item = _owned_pending_item(user, item_id)
            order = item.order
            db.session.delete(item)
            db.session.flush()

            # Cart emptied: the pending order goes with it.
            if order.items.count() == 0:
                db.session.delete(order)
                logger.info(
                    "Deleted empty pending order %s for user %s",
                    order.id,
                    user.id)
            else:
                recalculate_total(order)
            db.session.commit()
        except StorefrontError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            _abandon('remove', e)

        return get_cart(user)


def purge_product(product_id):
    """Drop a withdrawn product from every pending cart.

    Each affected cart is rewritten under its owner's lock, in user id order.
    Returns the number of carts touched.
    """
    rows = db.session.query(Order.user_id).join(
        OrderItem, OrderItem.order_id == Order.id
    ).filter(
        Order.status == OrderStatus.PENDING,
        OrderItem.product_id == product_id
    ).distinct().all()
    user_ids = sorted(r[0] for r in rows)
    db.session.rollback()

    for user_id in user_ids:
        with cart_locks.hold(user_id):
            try:
                order = _pending_orders_query(user_id).first()
                if order is None:
                    continue
                OrderItem.query.filter_by(
                    order_id=order.id,
                    product_id=product_id
                ).delete(synchronize_session='fetch')
                if order.items.count() == 0:
                    db.session.delete(order)
                else:
                    recalculate_total(order)
                db.session.commit()
            except SQLAlchemyError as e:
                _abandon('purge', e)

    return len(user_ids)


def serialize_item(item):
    product = item.product
    return {
        'id': item.id,
        'order_id': item.order_id,
        'product_id': item.product_id,
        'quantity': item.quantity,
        'price': float(item.price),
        'line_total': float(item.line_total),
        'product': {
            'id': product.id,
            'name': product.name,
            'description': product.description,
            'price': float(product.price),
            'stock': product.stock,
            'image_url': product.image_url,
        },
    }


def _empty_cart():
    return {
        'order_id': None,
        'items': [],
        'total': 0.0,
        'item_count': 0,
    }


def get_cart(user):
    """Items of the user's pending order(s) with product details.

    Storage errors are logged and produce an empty cart.
    """
    try:
        orders = _pending_orders_query(user.id).all()
        if not orders:
            return _empty_cart()
        if len(orders) > 1:
            logger.warning(
                "User %s has %d pending orders; aggregating",
                user.id,
                len(orders))

        items = []
        for order in orders:
            items.extend(order.items.all())
    except SQLAlchemyError as e:
        logger.error(f"Cart fetch error: {e}", exc_info=True)
        db.session.rollback()
        return _empty_cart()

    total = sum((i.line_total for i in items), Decimal('0.00'))
    return {
        'order_id': orders[0].id,
        'items': [serialize_item(i) for i in items],
        'total': float(total.quantize(TWO_PLACES)),
        'item_count': sum(i.quantity for i in items),
    }
