from datetime import date, datetime, time

import pytest

import changes
import services
from changes import ChangeEvent, ChangeFeed, LiveQuery, EventStream
from db import db
from models import Farmer

NOW = datetime(2030, 1, 1, 8, 0)


@pytest.fixture
def recorded():
    """Collects events published on the shared feed for the given kinds."""
    subscriptions = []
    seen = []

    def _watch(*kinds):
        for kind in kinds:
            subscriptions.append(changes.feed.subscribe(kind, seen.append))
        return seen

    yield _watch
    for subscription in subscriptions:
        subscription.close()


def test_subscribers_only_get_their_kind():
    feed = ChangeFeed()
    messages, farmers = [], []
    feed.subscribe('messages', messages.append)
    feed.subscribe('farmers', farmers.append)

    feed.publish(ChangeEvent('messages', changes.INSERT, 1))

    assert messages == [ChangeEvent('messages', 'insert', 1)]
    assert farmers == []


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        ChangeFeed().subscribe('invoices', print)


def test_closed_subscription_stops_receiving():
    feed = ChangeFeed()
    seen = []
    subscription = feed.subscribe('collections', seen.append)

    subscription.close()
    subscription.close()
    feed.publish(ChangeEvent('collections', changes.UPDATE, 3))

    assert seen == []
    assert feed.subscriber_count() == 0


def test_failing_listener_does_not_block_others():
    feed = ChangeFeed()
    seen = []

    def broken(change):
        raise RuntimeError('boom')

    feed.subscribe('messages', broken)
    feed.subscribe('messages', seen.append)
    feed.publish(ChangeEvent('messages', changes.DELETE, 9))

    assert len(seen) == 1


def test_committed_writes_are_published(agent, recorded):
    seen = recorded('farmers', 'collections')

    farmer = services.add_farmer(agent, full_name='Ben', phone_number='1', location='X')
    collection = services.schedule_collection(agent, farmer.id, date(2030, 1, 2), time(9, 0), now=NOW)
    services.record_collection(agent, collection.id, 4)

    assert [(c.kind, c.op, c.row_id) for c in seen] == [
        ('farmers', 'insert', farmer.id),
        ('collections', 'insert', collection.id),
        ('collections', 'update', collection.id),
    ]
    # Ben has no account, so only the agent may see these rows
    assert {c.audience for c in seen} == {frozenset([agent.id])}


def test_rolled_back_writes_are_never_published(agent, recorded):
    seen = recorded('farmers')

    db.session.add(Farmer(full_name='Ghost', phone_number='0', location='-', created_by=agent.id))
    db.session.flush()
    db.session.rollback()

    assert changes.dispatch_committed(db.session()) == 0
    assert seen == []


def test_rejected_operation_publishes_nothing(agent, recorded):
    seen = recorded('collections')

    with pytest.raises(services.NotFoundError):
        services.schedule_collection(agent, 12345, date(2030, 1, 2), time(9, 0), now=NOW)

    assert seen == []


def test_live_query_refetches_on_every_change(agent, roster_farmer):
    with LiveQuery(changes.feed, ['collections'], lambda: services.agent_collections(agent, now=NOW)) as live:
        assert live.result['upcoming'] == []

        services.schedule_collection(agent, roster_farmer.id, date(2030, 1, 2), time(9, 0), now=NOW)
        assert len(live.result['upcoming']) == 1

        services.record_collection(agent, live.result['upcoming'][0]['id'], 12)
        assert live.result['upcoming'] == []
        assert live.result['completed'][0]['quantity_liters'] == 12
        assert live.refreshes == 3

    assert changes.feed.subscriber_count('collections') == 0


def test_live_query_drops_results_after_close():
    feed = ChangeFeed()
    calls = []
    holder = {}

    def fetch():
        calls.append(1)
        if len(calls) == 2:
            # view goes away while this fetch is in flight
            holder['live'].close()
        return len(calls)

    live = LiveQuery(feed, ['messages'], fetch)
    holder['live'] = live

    feed.publish(ChangeEvent('messages', changes.INSERT, 1))
    feed.publish(ChangeEvent('messages', changes.INSERT, 2))

    assert live.result == 1
    assert len(calls) == 2


def test_live_query_keeps_last_result_and_reports_error():
    feed = ChangeFeed()
    outcomes = iter([['a'], services.StoreError('database is locked')])

    def fetch():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    live = LiveQuery(feed, ['farmers'], fetch)
    feed.publish(ChangeEvent('farmers', changes.UPDATE, 1))

    assert live.result == ['a']
    assert live.error == 'database is locked'
    live.close()


def test_event_stream_frames():
    feed = ChangeFeed()
    stream = EventStream(feed, ['collections'], keepalive=0.01)

    feed.publish(ChangeEvent('collections', changes.INSERT, 5))
    feed.publish(ChangeEvent('messages', changes.INSERT, 6))

    assert next(stream) == 'event: collections\ndata: {"kind": "collections", "op": "insert", "id": 5}\n\n'
    assert next(stream) == ': keep-alive\n\n'

    stream.close()
    assert feed.subscriber_count() == 0
    with pytest.raises(StopIteration):
        next(stream)


def test_event_stream_for_a_viewer_skips_rows_outside_their_audience():
    feed = ChangeFeed()
    stream = EventStream(feed, ['messages'], keepalive=0.01, viewer_id=7)

    feed.publish(ChangeEvent('messages', changes.INSERT, 1, frozenset([3, 4])))
    feed.publish(ChangeEvent('messages', changes.INSERT, 2, frozenset([4, 7])))

    assert '"id": 2' in next(stream)
    assert next(stream) == ': keep-alive\n\n'
    stream.close()


def test_message_events_reach_only_the_two_correspondents(agent, roster_farmer, farmer_profile):
    bystander = services.register_profile('second@test.com', 'pw123456', 'Sara Second', 'farmer')
    services.add_farmer(agent, profile_id=bystander.id)

    streams = {
        user_id: EventStream(changes.feed, ['messages'], keepalive=0.01, viewer_id=user_id)
        for user_id in (agent.id, farmer_profile.id, bystander.id)
    }
    try:
        services.send_message(farmer_profile, agent.id, 'Cans are full')

        assert next(streams[agent.id]).startswith('event: messages')
        assert next(streams[farmer_profile.id]).startswith('event: messages')
        assert next(streams[bystander.id]) == ': keep-alive\n\n'
    finally:
        for stream in streams.values():
            stream.close()


def test_announcement_events_reach_the_agents_roster(agent, other_agent, roster_farmer, farmer_profile):
    with EventStream(changes.feed, ['announcements'], keepalive=0.01, viewer_id=farmer_profile.id) as mine, \
            EventStream(changes.feed, ['announcements'], keepalive=0.01, viewer_id=other_agent.id) as theirs:
        services.create_announcement(agent, 'Holiday', 'No pickup on Monday', now=NOW)

        assert next(mine).startswith('event: announcements')
        assert next(theirs) == ': keep-alive\n\n'


def test_live_query_for_a_viewer_ignores_other_rosters(agent, other_agent, roster_farmer):
    stranger = services.add_farmer(other_agent, full_name='Tom', phone_number='2', location='Y')

    with LiveQuery(changes.feed, ['collections'], lambda: services.agent_collections(agent, now=NOW),
                   viewer_id=agent.id) as live:
        services.schedule_collection(other_agent, stranger.id, date(2030, 1, 2), time(9, 0), now=NOW)
        assert live.refreshes == 1

        services.schedule_collection(agent, roster_farmer.id, date(2030, 1, 2), time(9, 0), now=NOW)
        assert live.refreshes == 2
