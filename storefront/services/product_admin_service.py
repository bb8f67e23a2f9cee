from storefront.extensions import db
from storefront.errors import (
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from storefront.models import Product
from storefront.services import cart_service
from storefront.services.audit_service import audit_user
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    'name',
    'description',
    'price',
    'stock',
    'rating',
    'reviews_count',
    'category',
    'image_url',
    'features',
)


def _price(value):
    if isinstance(value, bool):
        raise ValidationError('Price must be a number')
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError('Price must be a number')
    if not price.is_finite() or price < 0:
        raise ValidationError('Price cannot be negative')
    return price.quantize(Decimal('0.01'))


def _non_negative_int(value, label):
    if isinstance(value, bool):
        raise ValidationError(f'{label} must be an integer')
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError(f'{label} must be an integer')
    if value < 0:
        raise ValidationError(f'{label} cannot be negative')
    return value


def _rating(value):
    if isinstance(value, bool):
        raise ValidationError('Rating must be a number')
    try:
        rating = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError('Rating must be a number')
    if not rating.is_finite() or rating < 0 or rating > 5:
        raise ValidationError('Rating must be between 0 and 5')
    return rating.quantize(Decimal('0.1'))


def _features(value):
    if value is None:
        return []
    if isinstance(value, str):
        # Form input: one feature per line
        return [line for line in value.splitlines() if line.strip()]
    if not isinstance(value, list):
        raise ValidationError('Features must be a list')
    return value


def _clean(data, partial=False):
    cleaned = {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field in ('name', 'category') and not isinstance(
                value, (str, type(None))):
            raise ValidationError(f"{field.capitalize()} must be text")
        if field == 'name':
            value = (value or '').strip()
            if not value:
                raise ValidationError('Product name cannot be empty')
        elif field == 'price':
            value = _price(value)
        elif field == 'stock':
            value = _non_negative_int(value, 'Stock')
        elif field == 'reviews_count':
            value = _non_negative_int(value, 'Review count')
        elif field == 'rating':
            value = _rating(value)
        elif field == 'category':
            value = (value or '').strip().lower() or None
        elif field == 'features':
            value = _features(value)
        elif value is not None:
            value = str(value).strip() or None
        cleaned[field] = value

    if not partial:
        if 'name' not in cleaned:
            raise ValidationError('Product name cannot be empty')
        if 'price' not in cleaned:
            raise ValidationError('Price cannot be empty')
    return cleaned


def list_store_products(admin):
    try:
        return Product.query.filter_by(
            store_id=admin.id,
            is_deleted=False
        ).order_by(Product.created_at.desc(), Product.id.desc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Store product listing error: {e}", exc_info=True)
        db.session.rollback()
        return []


def _owned_product(admin, product_id):
    product = db.session.get(Product, product_id)
    if product is None or product.is_deleted:
        raise NotFoundError('Product not found')
    if product.store_id != admin.id:
        logger.warning(
            "User %s attempted to modify product %s",
            admin.id,
            product_id)
        raise PermissionDeniedError()
    return product


def create_product(admin, data):
    cleaned = _clean(data or {})
    features = cleaned.pop('features', [])

    product = Product(store_id=admin.id, **cleaned)
    product.features = features
    try:
        db.session.add(product)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Product create failed: {e}", exc_info=True)
        raise StorageError() from e

    audit_user(
        admin,
        'PRODUCT_CREATE',
        target_type='PRODUCT',
        target_id=product.id,
        payload={'name': product.name, 'price': float(product.price)})
    return product


def update_product(admin, product_id, data):
    """Apply a partial update.

    Price changes affect new cart lines only; items already in a cart keep
    the price captured when they were added.
    """
    product = _owned_product(admin, product_id)
    cleaned = _clean(data or {}, partial=True)
    if not cleaned:
        raise ValidationError('Nothing to update')

    try:
        for field, value in cleaned.items():
            setattr(product, field, value)
        product.updated_at = datetime.utcnow()
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Product update failed: {e}", exc_info=True)
        raise StorageError() from e

    audit_user(
        admin,
        'PRODUCT_UPDATE',
        target_type='PRODUCT',
        target_id=product.id,
        payload={'fields': sorted(cleaned)})
    return product


def delete_product(admin, product_id):
    """Soft-delete a product and drop it from every pending cart."""
    product = _owned_product(admin, product_id)
    try:
        product.is_deleted = True
        product.deleted_at = datetime.utcnow()
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Product delete failed: {e}", exc_info=True)
        raise StorageError() from e

    carts = cart_service.purge_product(product.id)
    audit_user(
        admin,
        'PRODUCT_DELETE',
        target_type='PRODUCT',
        target_id=product.id,
        payload={'carts_updated': carts})
    return carts
