"""In-process push delivery for chat threads.

A subscription is scoped to one thread. It starts paused: live messages are
buffered while the caller replays stored history, then both are delivered in
id order. Message ids only grow, so anything at or below the last delivered
id is a duplicate (or a late arrival after a reconnect) and is dropped.
"""
from collections import defaultdict
import logging
import threading

logger = logging.getLogger(__name__)


class Subscription:

    def __init__(self, broker, thread_id, on_message, after_id=None):
        self._broker = broker
        self._on_message = on_message
        self._lock = threading.Lock()
        self._buffer = []
        self._live = False
        self.thread_id = thread_id
        self.cursor = after_id or 0
        self.closed = False

    def _emit(self, message):
        if message['id'] <= self.cursor:
            return False
        self.cursor = message['id']
        self._on_message(message)
        return True

    def deliver(self, message):
        with self._lock:
            if self.closed:
                return False
            if not self._live:
                self._buffer.append(message)
                return False
            return self._emit(message)

    def start(self, backlog=()):
        """Deliver ``backlog`` plus anything buffered, then go live."""
        with self._lock:
            if self.closed:
                return
            pending = list(backlog) + self._buffer
            self._buffer = []
            for message in sorted(pending, key=lambda m: m['id']):
                self._emit(message)
            self._live = True

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._buffer = []
        self._broker._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class MessageBroker:

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions = defaultdict(set)

    def subscribe(self, thread_id, on_message, after_id=None, paused=False):
        subscription = Subscription(self, thread_id, on_message, after_id)
        with self._lock:
            self._subscriptions[thread_id].add(subscription)
        if not paused:
            subscription.start()
        logger.debug("Subscribed to thread %s", thread_id)
        return subscription

    def publish(self, thread_id, message):
        with self._lock:
            subscriptions = list(self._subscriptions.get(thread_id, ()))

        delivered = 0
        for subscription in subscriptions:
            try:
                if subscription.deliver(message):
                    delivered += 1
            except Exception:
                # One broken subscriber must not starve the others.
                logger.exception(
                    "Subscriber callback failed for thread %s", thread_id)
        return delivered

    def subscriber_count(self, thread_id):
        with self._lock:
            return len(self._subscriptions.get(thread_id, ()))

    def _remove(self, subscription):
        with self._lock:
            subs = self._subscriptions.get(subscription.thread_id)
            if subs is None:
                return
            subs.discard(subscription)
            if not subs:
                del self._subscriptions[subscription.thread_id]
        logger.debug("Unsubscribed from thread %s", subscription.thread_id)


def get_broker():
    from flask import current_app

    return current_app.extensions['chat_broker']
