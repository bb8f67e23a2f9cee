from storefront.extensions import db
from storefront.models import Product, StoreProfile
from sqlalchemy.exc import SQLAlchemyError
from decimal import Decimal, InvalidOperation
import re
import logging

logger = logging.getLogger(__name__)

SORT_OPTIONS = ('newest', 'price_asc', 'price_desc', 'rating')
DEFAULT_SORT = 'newest'


def _sanitize_query(query):
    if not query:
        return None
    q = str(query).replace('\x00', '').strip()
    if not q:
        return None
    q = re.sub(r'\s+', ' ', q)[:80]
    # LIKE wildcards are matched literally
    return re.sub(r'([%_\\])', r'\\\1', q)


def _parse_price(value):
    if value is None or value == '':
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    if not price.is_finite():
        return None
    return price


def _normalize_category(category):
    if not category:
        return None
    c = str(category).strip().lower()
    if not c or c == 'all':
        return None
    return c


def _empty_page(page, per_page):
    return {
        'items': [],
        'page': page,
        'total': 0,
        'pages': 0,
        'per_page': per_page
    }


def search_products(
        query=None,
        category=None,
        min_price=None,
        max_price=None,
        sort_by=DEFAULT_SORT,
        page=1,
        per_page=20):
    """Filter and sort active products.

    Price bounds are inclusive, the name match is a case-insensitive
    substring, and an unknown sort key falls back to newest first. Storage
    errors are logged and produce an empty page.
    """
    page = max(1, page or 1)
    try:
        base_query = Product.query.filter_by(is_deleted=False)

        category_safe = _normalize_category(category)
        if category_safe:
            base_query = base_query.filter(
                db.func.lower(Product.category) == category_safe)

        low = _parse_price(min_price)
        if low is not None:
            base_query = base_query.filter(Product.price >= low)
        high = _parse_price(max_price)
        if high is not None:
            base_query = base_query.filter(Product.price <= high)

        query_safe = _sanitize_query(query)
        if query_safe:
            base_query = base_query.filter(
                Product.name.ilike(f'%{query_safe}%', escape='\\'))

        if sort_by == 'price_asc':
            ordering = (Product.price.asc(), Product.id.asc())
        elif sort_by == 'price_desc':
            ordering = (Product.price.desc(), Product.id.desc())
        elif sort_by == 'rating':
            ordering = (Product.rating.desc(), Product.id.desc())
        else:
            ordering = (Product.created_at.desc(), Product.id.desc())

        pagination = base_query.order_by(*ordering).paginate(
            page=page, per_page=per_page, error_out=False)

        return {
            'items': pagination.items,
            'page': pagination.page,
            'total': pagination.total,
            'pages': pagination.pages,
            'per_page': per_page
        }

    except SQLAlchemyError as e:
        logger.error(f"Catalog search error: {e}", exc_info=True)
        db.session.rollback()
        return _empty_page(page, per_page)


def get_product(product_id):
    try:
        return Product.query.filter_by(
            id=product_id,
            is_deleted=False
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Product lookup error: {e}", exc_info=True)
        db.session.rollback()
        return None


def list_categories():
    try:
        category = db.func.lower(Product.category)
        rows = db.session.query(category).filter(
            Product.is_deleted.is_(False),
            Product.category.isnot(None)
        ).distinct().order_by(category.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Category listing error: {e}", exc_info=True)
        db.session.rollback()
        return []
    return [r[0] for r in rows if r[0]]


def serialize_product(product, include_store=False):
    payload = {
        'id': product.id,
        'name': product.name,
        'description': product.description,
        'price': float(product.price),
        'stock': product.stock,
        'rating': float(product.rating or 0),
        'reviews_count': product.reviews_count,
        'category': product.category,
        'image_url': product.image_url,
        'features': product.features,
        'store_id': product.store_id,
        'created_at': product.created_at.isoformat(),
    }
    if include_store:
        profile = db.session.get(StoreProfile, product.store_id)
        payload['store'] = {
            'id': product.store_id,
            'store_name': profile.store_name if profile else None,
            'description': profile.description if profile else None,
        }
    return payload
