from flask import current_app, request
import logging

logger = logging.getLogger(__name__)


def request_data() -> dict:
    """JSON body or form fields of the current request."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def page_args():
    page = request.args.get('page', 1, type=int) or 1
    per_page = request.args.get(
        'per_page',
        current_app.config.get('ITEMS_PER_PAGE', 20),
        type=int)
    max_per_page = current_app.config.get('MAX_ITEMS_PER_PAGE', 50)
    per_page = max(1, min(per_page or 1, max_per_page))
    return max(1, page), per_page


def paginated_payload(result, serializer):
    return {
        'items': [serializer(item) for item in result['items']],
        'page': result['page'],
        'pages': result['pages'],
        'total': result['total'],
    }
