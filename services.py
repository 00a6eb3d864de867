"""
Query and mutation functions behind every screen.

Each function is one operation: it reads or writes the store, commits at most
once, and returns plain view state (dicts and lists). Failures are raised as
`ServiceError` subclasses and turned into an inline message at the HTTP
boundary.
"""
import logging
import math
from datetime import date, datetime, time
from functools import wraps

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

import changes
from db import db
from models import (
    Profile, Farmer, Collection, Message, Announcement, AnnouncementRecipient,
    ROLES, SCHEDULED, COMPLETED, CANCELLED, utcnow
)
from stats import collection_stats, upcoming_count, unread_counts, annotate_unread

logger = logging.getLogger(__name__)


# ---------------------- ERRORS ----------------------
class ServiceError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class InvalidTransition(ValidationError):
    """A lifecycle event that the collection's current status does not allow."""
    status_code = 409


class NotFoundError(ServiceError):
    status_code = 404


class StoreError(ServiceError):
    status_code = 503


def store_operation(f):
    """Roll back and convert database failures into `StoreError`."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Store failure in %s: %s", f.__name__, exc)
            raise StoreError(str(getattr(exc, 'orig', None) or exc)) from exc
    return wrapper


def _commit():
    db.session.commit()
    changes.dispatch_committed(db.session())


# ---------------------- INPUT HELPERS ----------------------
def _wall_clock(now):
    return now or datetime.now()


def _quantity(value, required):
    if value is None or value == '':
        if required:
            raise ValidationError("Quantity is required.")
        return None
    try:
        quantity = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a number.")
    if math.isnan(quantity) or math.isinf(quantity):
        raise ValidationError("Quantity must be a number.")
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative.")
    return quantity


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError("Collection date is required.")
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("Collection date must be YYYY-MM-DD.")


def _as_time(value):
    if isinstance(value, time):
        return value
    if not value:
        raise ValidationError("Collection time is required.")
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("Collection time must be HH:MM.")


def _required_text(value, label):
    value = (value or '').strip()
    if not value:
        raise ValidationError(f"{label} is required.")
    return value


# ---------------------- PROFILES ----------------------
@store_operation
def register_profile(email, password, full_name, role, phone_number=None, location=None):
    email = _required_text(email, "Email").lower()
    full_name = _required_text(full_name, "Full name")
    if role not in ROLES:
        raise ValidationError("Role must be 'farmer' or 'agent'.")
    if not password:
        raise ValidationError("Password is required.")
    if Profile.query.filter_by(email=email).first():
        raise ValidationError("Email already registered.")

    profile = Profile(
        email=email,
        full_name=full_name,
        role=role,
        phone_number=phone_number or None,
        location=location or None,
    )
    profile.set_password(password)
    db.session.add(profile)
    _commit()
    logger.info("Registered %s profile %s", role, profile.id)
    return profile


@store_operation
def authenticate(email, password):
    profile = Profile.query.filter_by(email=(email or '').strip().lower()).first()
    if profile and profile.check_password(password):
        return profile
    return None


@store_operation
def get_profile(profile_id):
    return db.session.get(Profile, int(profile_id))


def farmer_for_profile(profile):
    return Farmer.query.filter_by(profile_id=profile.id).first()


def assigned_agent(profile):
    farmer = farmer_for_profile(profile)
    return farmer.agent if farmer else None


# ---------------------- ROSTER ----------------------
@store_operation
def available_farmer_profiles():
    """Farmer accounts no agent has added to a roster yet."""
    on_roster = select(Farmer.profile_id).where(Farmer.profile_id.isnot(None))
    profiles = (
        Profile.query
        .filter(Profile.role == 'farmer', ~Profile.id.in_(on_roster))
        .order_by(Profile.full_name)
        .all()
    )
    return [p.to_dict() for p in profiles]


@store_operation
def add_farmer(agent, profile_id=None, full_name=None, phone_number=None, location=None):
    if profile_id:
        profile = db.session.get(Profile, int(profile_id))
        if profile is None or profile.role != 'farmer':
            raise NotFoundError("Farmer profile not found.")
        if Farmer.query.filter_by(profile_id=profile.id).first():
            raise ValidationError("This farmer is already on a roster.")
        farmer = Farmer(
            profile_id=profile.id,
            full_name=profile.full_name,
            phone_number=phone_number or profile.phone_number or '',
            location=location or profile.location or '',
            created_by=agent.id,
        )
    else:
        farmer = Farmer(
            full_name=_required_text(full_name, "Full name"),
            phone_number=_required_text(phone_number, "Phone number"),
            location=_required_text(location, "Location"),
            created_by=agent.id,
        )

    db.session.add(farmer)
    _commit()
    logger.info("Agent %s added farmer %s", agent.id, farmer.id)
    return farmer


@store_operation
def list_farmers(agent):
    farmers = Farmer.query.filter_by(created_by=agent.id).order_by(Farmer.full_name).all()
    unread = Message.query.filter(
        Message.receiver_id == agent.id,
        Message.read_at.is_(None)
    ).all()
    return annotate_unread(farmers, unread_counts(unread))


def _roster_farmer(agent, farmer_id):
    farmer = db.session.get(Farmer, int(farmer_id)) if farmer_id else None
    if farmer is None or farmer.created_by != agent.id:
        raise NotFoundError("Farmer not found.")
    return farmer


# ---------------------- COLLECTION LIFECYCLE ----------------------
@store_operation
def schedule_collection(agent, farmer_id, scheduled_date, scheduled_time,
                        expected_quantity=None, notes=None, now=None):
    """
    Book a pickup. The expected quantity is optional; it counts towards the
    farmer's totals until the real amount is recorded. Several collections
    may be booked for the same farmer and slot.
    """
    farmer = _roster_farmer(agent, farmer_id)
    scheduled_date = _as_date(scheduled_date)
    scheduled_time = _as_time(scheduled_time)
    quantity = _quantity(expected_quantity, required=False)

    now = _wall_clock(now)
    if scheduled_date < now.date():
        raise ValidationError("Collection date cannot be in the past.")
    if datetime.combine(scheduled_date, scheduled_time) < now.replace(second=0, microsecond=0):
        raise ValidationError("Collection time cannot be in the past.")

    collection = Collection(
        farmer_id=farmer.id,
        agent_id=agent.id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        quantity_liters=quantity,
        status=SCHEDULED,
        notes=(notes or '').strip() or None,
    )
    db.session.add(collection)
    _commit()
    logger.info("Scheduled collection %s for farmer %s on %s %s",
                collection.id, farmer.id, scheduled_date, scheduled_time)
    return collection


def _agent_collection(agent, collection_id):
    collection = db.session.get(Collection, int(collection_id))
    if collection is None or collection.agent_id != agent.id:
        raise NotFoundError("Collection not found.")
    return collection


def _leave_scheduled(agent, collection_id, values):
    """
    Apply a `scheduled -> terminal` transition as one conditional UPDATE.
    The row only changes while its stored status is still scheduled, so a
    request that lost a race gets `InvalidTransition` instead of overwriting
    the winner.
    """
    collection = _agent_collection(agent, collection_id)
    changed = (
        Collection.query
        .filter_by(id=collection.id, agent_id=agent.id, status=SCHEDULED)
        .update(values, synchronize_session='fetch')
    )
    if not changed:
        db.session.rollback()
        db.session.refresh(collection)
        raise InvalidTransition(f"Collection is already {collection.status}.")

    changes.note(db.session(), changes.UPDATE, collection)
    _commit()
    return collection


@store_operation
def record_collection(agent, collection_id, actual_quantity):
    """
    Complete a scheduled collection with the measured quantity, replacing any
    expected amount. A collection can be recorded once; later attempts are
    rejected instead of overwriting the first reading.
    """
    quantity = _quantity(actual_quantity, required=True)
    collection = _leave_scheduled(agent, collection_id, {
        'quantity_liters': quantity,
        'status': COMPLETED,
        'completed_at': utcnow(),
    })
    logger.info("Recorded %.2f L for collection %s", quantity, collection.id)
    return collection


@store_operation
def cancel_collection(agent, collection_id):
    collection = _leave_scheduled(agent, collection_id, {
        'status': CANCELLED,
        'cancelled_at': utcnow(),
    })
    logger.info("Cancelled collection %s", collection.id)
    return collection


@store_operation
def agent_collections(agent, now=None):
    now = _wall_clock(now)
    collections = (
        Collection.query
        .options(joinedload(Collection.farmer))
        .filter(Collection.agent_id == agent.id)
        .order_by(Collection.scheduled_date, Collection.scheduled_time)
        .all()
    )

    view = {'upcoming': [], 'overdue': [], 'completed': [], 'cancelled': []}
    for c in collections:
        if c.status == SCHEDULED:
            bucket = 'upcoming' if c.scheduled_at > now else 'overdue'
        else:
            bucket = c.status
        view[bucket].append(c.to_dict())
    # Most recent first for finished work
    view['completed'].reverse()
    view['cancelled'].reverse()
    return view


def _farmer_rows(profile):
    farmer = farmer_for_profile(profile)
    if farmer is None:
        return []
    return (
        Collection.query
        .filter(Collection.farmer_id == farmer.id)
        .order_by(Collection.scheduled_date.desc(), Collection.scheduled_time.desc())
        .all()
    )


@store_operation
def farmer_collections(profile):
    rows = _farmer_rows(profile)
    return {
        'collections': [c.to_dict() for c in rows],
        'stats': collection_stats(rows)._asdict(),
    }


# ---------------------- DASHBOARDS ----------------------
@store_operation
def farmer_dashboard(profile, today=None):
    today = today or date.today()
    rows = _farmer_rows(profile)
    agent = assigned_agent(profile)

    summary = collection_stats(rows)._asdict()
    summary['upcoming_collections'] = upcoming_count(rows, today)
    return {
        'variant': 'farmer',
        'profile': profile.to_dict(),
        'agent': {'id': agent.id, 'full_name': agent.full_name} if agent else None,
        'stats': summary,
    }


@store_operation
def agent_dashboard(agent, today=None):
    today = today or date.today()

    total_farmers = db.session.query(func.count(Farmer.id)).filter(Farmer.created_by == agent.id).scalar() or 0
    total_collections = (
        db.session.query(func.count(Collection.id))
        .filter(Collection.agent_id == agent.id)
        .scalar() or 0
    )
    upcoming = (
        db.session.query(func.count(Collection.id))
        .filter(
            Collection.agent_id == agent.id,
            Collection.status == SCHEDULED,
            Collection.scheduled_date >= today
        )
        .scalar() or 0
    )
    total_messages = (
        db.session.query(func.count(Message.id))
        .filter(or_(Message.sender_id == agent.id, Message.receiver_id == agent.id))
        .scalar() or 0
    )

    return {
        'variant': 'agent',
        'profile': agent.to_dict(),
        'stats': {
            'total_farmers': total_farmers,
            'total_collections': total_collections,
            'upcoming_collections': upcoming,
            'total_messages': total_messages,
        },
    }


# ---------------------- MESSAGES ----------------------
def _check_correspondent(user, other_id):
    other = db.session.get(Profile, int(other_id)) if other_id else None
    if other is None:
        raise NotFoundError("Recipient not found.")

    if user.is_farmer:
        farmer = farmer_for_profile(user)
        if farmer is None:
            raise ValidationError("No agent has been assigned to you yet.")
        if farmer.created_by != other.id:
            raise ValidationError("You can only message your agent.")
    else:
        on_roster = Farmer.query.filter_by(created_by=user.id, profile_id=other.id).first()
        if on_roster is None:
            raise ValidationError("You can only message farmers on your roster.")
    return other


@store_operation
def send_message(sender, receiver_id, content):
    receiver = _check_correspondent(sender, receiver_id)
    content = _required_text(content, "Message")

    message = Message(
        sender_id=sender.id,
        receiver_id=receiver.id,
        content=content,
        message_type='inquiry' if sender.is_farmer else 'response',
    )
    db.session.add(message)
    _commit()
    return message


@store_operation
def conversation(user, other_id):
    other = _check_correspondent(user, other_id)
    messages = (
        Message.query
        .filter(or_(
            (Message.sender_id == user.id) & (Message.receiver_id == other.id),
            (Message.sender_id == other.id) & (Message.receiver_id == user.id),
        ))
        .order_by(Message.created_at, Message.id)
        .all()
    )
    return [m.to_dict() for m in messages]


@store_operation
def mark_message_read(user, message_id, now=None):
    """Stamp `read_at` the first time; marking an already read message does nothing."""
    message = db.session.get(Message, int(message_id))
    if message is None or message.receiver_id != user.id:
        raise NotFoundError("Message not found.")
    if message.read_at is None:
        message.read_at = now or utcnow()
        _commit()
    return message


@store_operation
def mark_conversation_read(user, other_id, now=None):
    other = _check_correspondent(user, other_id)
    unread = Message.query.filter(
        Message.receiver_id == user.id,
        Message.sender_id == other.id,
        Message.read_at.is_(None)
    ).all()
    if not unread:
        return 0
    stamp = now or utcnow()
    for message in unread:
        message.read_at = stamp
    _commit()
    return len(unread)


# ---------------------- ANNOUNCEMENTS ----------------------
@store_operation
def create_announcement(agent, title, content, expires_at=None, now=None):
    title = _required_text(title, "Title")
    content = _required_text(content, "Content")
    if expires_at is not None and expires_at <= _wall_clock(now):
        raise ValidationError("Expiry must be in the future.")

    announcement = Announcement(agent_id=agent.id, title=title, content=content, expires_at=expires_at)
    db.session.add(announcement)
    db.session.flush()

    farmers = Farmer.query.filter(Farmer.created_by == agent.id, Farmer.profile_id.isnot(None)).all()
    for farmer in farmers:
        db.session.add(AnnouncementRecipient(announcement_id=announcement.id, user_id=farmer.profile_id))

    _commit()
    logger.info("Agent %s posted announcement %s to %d farmers", agent.id, announcement.id, len(farmers))
    return announcement


def _visible_agent_id(user):
    if user.is_agent:
        return user.id
    agent = assigned_agent(user)
    return agent.id if agent else None


@store_operation
def list_announcements(user, now=None):
    agent_id = _visible_agent_id(user)
    if agent_id is None:
        return []

    query = Announcement.query.filter(Announcement.agent_id == agent_id)
    if user.is_farmer:
        now = _wall_clock(now)
        query = query.filter(or_(Announcement.expires_at.is_(None), Announcement.expires_at > now))
    announcements = query.order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()

    read_ids = {
        r.announcement_id for r in AnnouncementRecipient.query.filter(
            AnnouncementRecipient.user_id == user.id,
            AnnouncementRecipient.read_at.isnot(None)
        )
    }
    rows = []
    for a in announcements:
        row = a.to_dict()
        row['read'] = a.id in read_ids
        rows.append(row)
    return rows


@store_operation
def mark_announcement_read(user, announcement_id, now=None):
    announcement = db.session.get(Announcement, int(announcement_id))
    if announcement is None or announcement.agent_id != _visible_agent_id(user):
        raise NotFoundError("Announcement not found.")

    recipient = db.session.get(AnnouncementRecipient, (announcement.id, user.id))
    if recipient is None:
        recipient = AnnouncementRecipient(announcement_id=announcement.id, user_id=user.id)
        db.session.add(recipient)
    if recipient.read_at is None:
        recipient.read_at = now or utcnow()
        _commit()
    return recipient


@store_operation
def purge_expired_announcements(now=None):
    now = _wall_clock(now)
    expired = Announcement.query.filter(
        Announcement.expires_at.isnot(None),
        Announcement.expires_at <= now
    ).all()
    for announcement in expired:
        db.session.delete(announcement)
    if expired:
        _commit()
    return len(expired)
