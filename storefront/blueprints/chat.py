from flask import (
    Blueprint,
    Response,
    current_app,
    jsonify,
    request,
    stream_with_context,
)
from flask_login import login_required, current_user
from storefront.extensions import db
from storefront.errors import ValidationError
from storefront.models import StoreProfile
from storefront.services import chat_service
from storefront.services.realtime import get_broker
from storefront.utils import request_data
import json
import logging
import queue

logger = logging.getLogger(__name__)

bp = Blueprint('chat', __name__)


def _sse(message):
    return (
        f"id: {message['id']}\n"
        f"event: message\n"
        f"data: {json.dumps(message, ensure_ascii=False)}\n\n"
    )


@bp.route('/api/chat/threads', methods=['GET'])
@bp.route('/chat', methods=['GET'])
@login_required
def list_threads():
    return jsonify({'threads': chat_service.list_threads(current_user)})


@bp.route('/api/chat/stores', methods=['GET'])
@login_required
def list_stores():
    stores = StoreProfile.query.order_by(StoreProfile.store_name.asc()).all()
    return jsonify({
        'stores': [
            {
                'seller_id': s.user_id,
                'store_name': s.store_name,
                'description': s.description,
            }
            for s in stores
            if s.user_id != current_user.id
        ]
    })


@bp.route('/api/chat/threads', methods=['POST'])
@login_required
def open_thread():
    data = request_data()
    seller_id = data.get('seller_id')
    if not seller_id:
        raise ValidationError('Seller ID cannot be empty')
    try:
        seller_id = int(seller_id)
    except (TypeError, ValueError):
        raise ValidationError('Invalid seller ID')

    thread, created = chat_service.open_thread(current_user, seller_id)
    return jsonify({
        'ok': True,
        'created': created,
        'thread': chat_service.serialize_thread(thread),
    }), 201 if created else 200


@bp.route('/api/chat/threads/<int:thread_id>/messages', methods=['GET'])
@login_required
def list_messages(thread_id):
    thread = chat_service.get_thread(current_user, thread_id)
    messages = chat_service.list_messages(
        thread,
        current_user,
        after_id=request.args.get('after_id', type=int),
        limit=request.args.get('limit', 50, type=int))
    return jsonify({'thread_id': thread.id, 'messages': messages})


@bp.route('/api/chat/threads/<int:thread_id>/messages', methods=['POST'])
@login_required
def send_message(thread_id):
    thread = chat_service.get_thread(current_user, thread_id)
    data = request_data()
    message = chat_service.send_message(
        thread,
        current_user,
        data.get('content'),
        get_broker(),
        max_length=current_app.config.get('CHAT_MAX_MESSAGE_LENGTH', 2000))
    return jsonify({'ok': True, 'message': message}), 201


@bp.route('/api/chat/threads/<int:thread_id>/read', methods=['POST'])
@login_required
def mark_read(thread_id):
    thread = chat_service.get_thread(current_user, thread_id)
    chat_service.mark_read(thread, current_user)
    return jsonify({'ok': True})


@bp.route('/api/chat/threads/<int:thread_id>/stream', methods=['GET'])
@login_required
def stream(thread_id):
    """Server-sent events for one thread.

    ``after_id`` (or the ``Last-Event-ID`` header on reconnect) replays the
    stored messages after it before live delivery starts.
    """
    thread = chat_service.get_thread(current_user, thread_id)
    after_id = request.args.get('after_id', type=int)
    if after_id is None:
        after_id = request.headers.get('Last-Event-ID', type=int)
    heartbeat = current_app.config.get('CHAT_STREAM_HEARTBEAT_SECONDS', 15)

    events = queue.Queue()
    subscription = chat_service.subscribe(
        thread, current_user, events.put, get_broker(), after_id=after_id)
    # Release the connection for the life of the stream
    db.session.commit()
    logger.info(
        "User %s streaming chat thread %s", current_user.id, thread_id)

    def generate():
        try:
            yield ': connected\n\n'
            while True:
                try:
                    message = events.get(timeout=heartbeat)
                except queue.Empty:
                    yield ': heartbeat\n\n'
                    continue
                yield _sse(message)
        finally:
            subscription.close()

    response = Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no',
        })
    # Covers a client that disconnects before the first chunk
    response.call_on_close(subscription.close)
    return response
