"""
Row-level change notifications.

SQLAlchemy session events record every insert, update and delete on the
application tables. Events of a transaction are held on the session until it
commits and are thrown away on rollback; `dispatch_committed` then hands them
to the `ChangeFeed`, where views subscribe per record kind.

Each event carries its audience: the profile ids allowed to read the row.
Streams opened for a user only pass on events that user is part of.

Listeners only learn *that* something changed. Views re-run their whole query
(`LiveQuery`) rather than patching their state from the event.
"""
import json
import logging
import queue
import threading
from collections import defaultdict, namedtuple

from sqlalchemy import event, inspect

logger = logging.getLogger(__name__)

INSERT = 'insert'
UPDATE = 'update'
DELETE = 'delete'

RECORD_KINDS = (
    'profiles',
    'farmers',
    'collections',
    'messages',
    'announcements',
    'announcement_recipients',
)

ChangeEvent = namedtuple('ChangeEvent', ['kind', 'op', 'row_id', 'audience'], defaults=(frozenset(),))

_PENDING = 'milklink.pending_changes'
_COMMITTED = 'milklink.committed_changes'


class Subscription:
    def __init__(self, feed, kind, callback):
        self.feed = feed
        self.kind = kind
        self.callback = callback
        self.active = True

    def close(self):
        if self.active:
            self.active = False
            self.feed._remove(self)


class ChangeFeed:
    """Typed publish/subscribe registry, one listener list per record kind."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = defaultdict(list)

    def subscribe(self, kind, callback):
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind: {kind!r}")
        subscription = Subscription(self, kind, callback)
        with self._lock:
            self._subscribers[kind].append(subscription)
        return subscription

    def _remove(self, subscription):
        with self._lock:
            listeners = self._subscribers.get(subscription.kind, [])
            if subscription in listeners:
                listeners.remove(subscription)

    def subscriber_count(self, kind=None):
        with self._lock:
            if kind is not None:
                return len(self._subscribers.get(kind, []))
            return sum(len(v) for v in self._subscribers.values())

    def publish(self, change):
        with self._lock:
            listeners = list(self._subscribers.get(change.kind, []))
        for subscription in listeners:
            if not subscription.active:
                continue
            try:
                subscription.callback(change)
            except Exception:
                # One broken view must not stop the others from refreshing
                logger.exception("Change listener for %s failed on %s", change.kind, change.op)


feed = ChangeFeed()


def visible_to(change, viewer_id):
    """True when `viewer_id` may see the row; `None` means an unfiltered listener."""
    return viewer_id is None or viewer_id in change.audience


# ---------------------- SESSION HOOKS ----------------------
def _row_id(obj):
    values = inspect(obj).mapper.primary_key_from_instance(obj)
    return values[0] if len(values) == 1 else tuple(values)


def _audience(obj):
    audience = getattr(obj, 'audience', None)
    if audience is None:
        return frozenset()
    return frozenset(user_id for user_id in audience() if user_id is not None)


def _event(op, obj):
    return ChangeEvent(obj.__tablename__, op, _row_id(obj), _audience(obj))


def note(session, op, obj):
    """
    Queue an event for a write the unit of work does not see, such as a bulk
    `Query.update()`. It is published with the rest of the transaction.
    """
    session.info.setdefault(_PENDING, []).append(_event(op, obj))


def _collect(session, flush_context):
    pending = session.info.setdefault(_PENDING, [])
    for op, objects in ((INSERT, session.new), (UPDATE, session.dirty), (DELETE, session.deleted)):
        for obj in objects:
            kind = getattr(obj, '__tablename__', None)
            if kind not in RECORD_KINDS:
                continue
            if op == UPDATE and not session.is_modified(obj, include_collections=False):
                continue
            pending.append(_event(op, obj))


def _mark_committed(session):
    pending = session.info.pop(_PENDING, [])
    if pending:
        session.info.setdefault(_COMMITTED, []).extend(pending)


def _discard(session):
    session.info.pop(_PENDING, None)


def install(session_target):
    """Attach the collecting hooks to a session, sessionmaker or scoped_session."""
    hooks = (
        ('after_flush', _collect),
        ('after_commit', _mark_committed),
        ('after_rollback', _discard),
    )
    for name, fn in hooks:
        if not event.contains(session_target, name, fn):
            event.listen(session_target, name, fn)


def dispatch_committed(session, target=None):
    """
    Publish the events of every transaction committed on `session` since the
    last call. Must run after the commit returns: listeners query the store
    again, which a session cannot do from inside its own commit hook.
    """
    target = target or feed
    committed = session.info.pop(_COMMITTED, [])
    seen = set()
    for change in committed:
        if change in seen:
            continue
        seen.add(change)
        target.publish(change)
    return len(seen)


# ---------------------- LIVE QUERIES ----------------------
class LiveQuery:
    """
    Holds the result of `fetch` and re-runs it on every change to one of the
    watched record kinds.

    This is the server-side way to keep a view current: code running in the
    same process as the writers (background jobs or a shell session)
    wraps its query in a `LiveQuery`. Browsers use `EventStream` instead and
    re-fetch over HTTP. `fetch` runs in the thread that committed the change,
    so it must not depend on another request's session.

    With `viewer_id` set, only changes that user may see trigger a fetch.
    Once closed, no new fetch starts and a fetch that was already running
    when `close()` was called has its result dropped.
    """

    def __init__(self, change_feed, kinds, fetch, viewer_id=None):
        self.fetch = fetch
        self.kinds = tuple(kinds)
        self.viewer_id = viewer_id
        self.result = None
        self.error = None
        self.refreshes = 0
        self.closed = False
        self._lock = threading.Lock()
        self._subscriptions = [change_feed.subscribe(kind, self._on_change) for kind in self.kinds]
        self.refresh()

    def _on_change(self, change):
        if visible_to(change, self.viewer_id):
            self.refresh()

    def refresh(self):
        if self.closed:
            return
        try:
            result = self.fetch()
        except Exception as exc:
            logger.warning("Live query refresh failed: %s", exc)
            error, result = str(exc), None
        else:
            error = None
        with self._lock:
            if self.closed:
                return
            if error is None:
                self.result = result
            self.error = error
            self.refreshes += 1

    def close(self):
        with self._lock:
            self.closed = True
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# ---------------------- SERVER-SENT EVENTS ----------------------
def format_sse(change):
    data = json.dumps({'kind': change.kind, 'op': change.op, 'id': change.row_id})
    return f"event: {change.kind}\ndata: {data}\n\n"


class EventStream:
    """
    Iterator of Server-Sent-Event frames for one browser connection. Yields a
    keep-alive comment when nothing happened within `keepalive` seconds.
    With `viewer_id` set, events outside that user's audience are dropped.
    """

    def __init__(self, change_feed, kinds, keepalive=15, viewer_id=None):
        self.keepalive = keepalive
        self.viewer_id = viewer_id
        self._queue = queue.Queue()
        self._subscriptions = [change_feed.subscribe(kind, self._offer) for kind in kinds]

    def _offer(self, change):
        if visible_to(change, self.viewer_id):
            self._queue.put(change)

    def __iter__(self):
        return self

    def __next__(self):
        if not self._subscriptions:
            raise StopIteration
        try:
            change = self._queue.get(timeout=self.keepalive)
        except queue.Empty:
            return ": keep-alive\n\n"
        return format_sse(change)

    def close(self):
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
