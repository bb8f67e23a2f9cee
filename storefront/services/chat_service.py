from storefront.extensions import db
from storefront.errors import (
    InvalidMessageError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from storefront.models import (
    ChatMessage,
    ChatThread,
    StoreProfile,
    User,
    UserRole,
)
from storefront.services.locks import thread_locks
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

MAX_PAGE = 200


def _storage_failure(action, exc):
    db.session.rollback()
    logger.error("Chat %s failed: %s", action, exc, exc_info=True)
    raise StorageError() from exc


def open_thread(buyer, seller_id):
    """Return the (buyer, seller) thread, creating it on first contact.

    The second element of the result is True when the thread was created.
    """
    if seller_id == buyer.id:
        raise ValidationError('Cannot open a conversation with yourself')

    with thread_locks.hold(('pair', buyer.id, seller_id)):
        seller = db.session.get(User, seller_id)
        if (
            seller is None
            or seller.role != UserRole.ADMIN
            or not seller.is_active
        ):
            raise NotFoundError('Seller not found')

        thread = ChatThread.query.filter_by(
            buyer_id=buyer.id,
            seller_id=seller.id
        ).first()
        if thread:
            return thread, False

        thread = ChatThread(buyer_id=buyer.id, seller_id=seller.id)
        db.session.add(thread)
        try:
            db.session.commit()
        except IntegrityError:
            # Another process created it first.
            db.session.rollback()
            thread = ChatThread.query.filter_by(
                buyer_id=buyer.id,
                seller_id=seller.id
            ).first()
            if thread is None:
                raise
            return thread, False
        except SQLAlchemyError as e:
            _storage_failure('open thread', e)

    logger.info(
        "Opened chat thread %s between buyer %s and seller %s",
        thread.id,
        buyer.id,
        seller.id)
    return thread, True


def get_thread(user, thread_id):
    thread = db.session.get(ChatThread, thread_id)
    if thread is None:
        raise NotFoundError('Conversation not found')
    if not thread.has_party(user.id):
        logger.warning(
            "User %s attempted to access chat thread %s",
            user.id,
            thread_id)
        raise PermissionDeniedError()
    return thread


def send_message(thread, sender, content, broker, max_length=2000):
    if not thread.has_party(sender.id):
        raise PermissionDeniedError()
    content = content.strip() if isinstance(content, str) else ''
    if not content:
        raise InvalidMessageError()
    if len(content) > max_length:
        raise InvalidMessageError(
            f'Message cannot exceed {max_length} characters')

    # Held through publish so subscribers see ids in commit order.
    with thread_locks.hold(thread.id):
        try:
            now = datetime.utcnow()
            message = ChatMessage(
                thread_id=thread.id,
                sender_id=sender.id,
                content=content,
                created_at=now
            )
            thread.last_message_at = now
            db.session.add(message)
            db.session.commit()
        except SQLAlchemyError as e:
            _storage_failure('send', e)

        payload = message.to_dict()
        broker.publish(thread.id, payload)

    return payload


def _messages_query(thread_id, after_id=None):
    q = ChatMessage.query.filter_by(thread_id=thread_id).order_by(
        ChatMessage.created_at.asc(),
        ChatMessage.id.asc())
    if after_id:
        q = q.filter(ChatMessage.id > after_id)
    return q


def _last_read_at(thread, user):
    if user.id == thread.seller_id:
        return thread.seller_last_read_at
    return thread.buyer_last_read_at


def mark_read(thread, user, ts=None):
    """Move ``user``'s read marker on ``thread`` forward to ``ts``."""
    ts = ts or datetime.utcnow()
    current = _last_read_at(thread, user)
    if current and current >= ts:
        return
    try:
        if user.id == thread.seller_id:
            thread.seller_last_read_at = ts
        else:
            thread.buyer_last_read_at = ts
        db.session.commit()
    except SQLAlchemyError as e:
        _storage_failure('mark read', e)


def list_messages(thread, user, after_id=None, limit=50):
    """Messages in ascending (created_at, id) order.

    The initial fetch (no ``after_id``) returns the newest ``limit`` messages
    and marks the thread read up to the last of them. With ``after_id`` the
    next ``limit`` messages after it are returned. Storage errors are logged
    and produce an empty list.
    """
    limit = max(1, min(limit or 50, MAX_PAGE))
    try:
        if after_id:
            messages = _messages_query(thread.id, after_id).limit(limit).all()
        else:
            newest = ChatMessage.query.filter_by(
                thread_id=thread.id
            ).order_by(
                ChatMessage.created_at.desc(),
                ChatMessage.id.desc()
            ).limit(limit).all()
            messages = list(reversed(newest))
    except SQLAlchemyError as e:
        logger.error(f"Chat history error: {e}", exc_info=True)
        db.session.rollback()
        return []

    if not after_id and messages:
        mark_read(thread, user, messages[-1].created_at)
    return [m.to_dict() for m in messages]


def subscribe(thread, user, on_message, broker, after_id=None):
    """Push every new message of ``thread`` to ``on_message``.

    With ``after_id`` the stored messages after it are replayed first. The
    caller owns the returned subscription and must ``close()`` it.
    """
    if not thread.has_party(user.id):
        raise PermissionDeniedError()

    subscription = broker.subscribe(
        thread.id, on_message, after_id=after_id, paused=True)
    backlog = []
    if after_id is not None:
        try:
            backlog = [
                m.to_dict() for m in _messages_query(thread.id, after_id)
            ]
        except SQLAlchemyError as e:
            logger.error(f"Chat replay error: {e}", exc_info=True)
            db.session.rollback()
    subscription.start(backlog)
    return subscription


def _peer_label(thread, user):
    if user.id == thread.buyer_id:
        profile = db.session.get(StoreProfile, thread.seller_id)
        if profile:
            return profile.store_name
        return f"Store #{thread.seller_id}"
    buyer = thread.buyer
    return buyer.email if buyer else f"User #{thread.buyer_id}"


def _unread_count(thread, user):
    q = ChatMessage.query.filter(
        ChatMessage.thread_id == thread.id,
        ChatMessage.sender_id != user.id)
    last_read = _last_read_at(thread, user)
    if last_read:
        q = q.filter(ChatMessage.created_at > last_read)
    return q.count()


def list_threads(user):
    try:
        threads = ChatThread.query.filter(
            or_(
                ChatThread.buyer_id == user.id,
                ChatThread.seller_id == user.id)
        ).order_by(
            ChatThread.last_message_at.desc().nullslast(),
            ChatThread.created_at.desc()
        ).all()

        items = []
        for t in threads:
            last_msg = t.messages.order_by(
                ChatMessage.created_at.desc(),
                ChatMessage.id.desc()).first()
            peer_id = t.seller_id if user.id == t.buyer_id else t.buyer_id
            items.append({
                'id': t.id,
                'buyer_id': t.buyer_id,
                'seller_id': t.seller_id,
                'peer': {
                    'id': peer_id,
                    'label': _peer_label(t, user)
                },
                'last_message': last_msg.content if last_msg else None,
                'last_message_at': (
                    last_msg.created_at.isoformat() if last_msg else None
                ),
                'unread_count': _unread_count(t, user)
            })
        return items
    except SQLAlchemyError as e:
        logger.error(f"Chat thread listing error: {e}", exc_info=True)
        db.session.rollback()
        return []


def serialize_thread(thread):
    return {
        'id': thread.id,
        'buyer_id': thread.buyer_id,
        'seller_id': thread.seller_id,
        'created_at': thread.created_at.isoformat(),
    }
