from flask import Blueprint, jsonify, request
from storefront.errors import NotFoundError
from storefront.services import catalog_service
from storefront.utils import page_args, paginated_payload

bp = Blueprint('products', __name__)


def _search_from_args():
    page, per_page = page_args()
    result = catalog_service.search_products(
        query=request.args.get('q'),
        category=request.args.get('category'),
        min_price=request.args.get('min_price'),
        max_price=request.args.get('max_price'),
        sort_by=request.args.get('sort', catalog_service.DEFAULT_SORT),
        page=page,
        per_page=per_page,
    )
    payload = paginated_payload(result, catalog_service.serialize_product)
    payload['sort'] = (
        request.args.get('sort')
        if request.args.get('sort') in catalog_service.SORT_OPTIONS
        else catalog_service.DEFAULT_SORT
    )
    return payload


@bp.route('/')
def index():
    payload = _search_from_args()
    payload['categories'] = catalog_service.list_categories()
    payload['sort_options'] = list(catalog_service.SORT_OPTIONS)
    return jsonify(payload)


@bp.route('/api/products', methods=['GET'])
def list_products():
    return jsonify(_search_from_args())


@bp.route('/api/categories', methods=['GET'])
def list_categories():
    return jsonify({'categories': catalog_service.list_categories()})


@bp.route('/api/products/<int:product_id>', methods=['GET'])
@bp.route('/product/<int:product_id>', methods=['GET'])
def product_detail(product_id):
    product = catalog_service.get_product(product_id)
    if product is None:
        raise NotFoundError('Product not found')
    return jsonify({
        'product': catalog_service.serialize_product(
            product, include_store=True)
    })
