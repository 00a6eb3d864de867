"""
Aggregations over collection and message rows.

Everything here is a pure function of the rows it is given. Callers re-fetch
the full row set and call these again whenever the underlying tables change;
nothing is kept between calls.
"""
from collections import Counter, namedtuple

from models import SCHEDULED, COMPLETED

CollectionStats = namedtuple('CollectionStats', ['total_liters', 'average_liters', 'total_collections'])


def collection_stats(collections):
    """
    Totals for one farmer's collections.

    Completed and scheduled rows both count, so the total mixes measured and
    expected litres. Cancelled rows are ignored. A missing quantity adds 0 to
    the total but is left out of the average entirely.
    """
    counted = [c for c in collections if c.status in (COMPLETED, SCHEDULED)]

    total_liters = sum(c.quantity_liters or 0 for c in counted)

    quantified = [c.quantity_liters for c in counted if c.quantity_liters is not None]
    average_liters = sum(quantified) / len(quantified) if quantified else 0

    return CollectionStats(
        total_liters=float(total_liters),
        average_liters=float(average_liters),
        total_collections=len(counted),
    )


def upcoming_count(collections, today):
    return sum(1 for c in collections if c.status == SCHEDULED and c.scheduled_date >= today)


def unread_counts(messages):
    """Number of unread messages per sender id."""
    return Counter(m.sender_id for m in messages if m.read_at is None)


def annotate_unread(farmers, counts):
    # Roster-only farmers have no account, so nobody can have messaged as them
    rows = []
    for farmer in farmers:
        row = farmer.to_dict()
        row['unread_count'] = int(counts.get(farmer.profile_id, 0)) if farmer.profile_id else 0
        rows.append(row)
    return rows
