from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
from sqlalchemy.orm import object_session
from db import db


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


ROLES = ('farmer', 'agent')

SCHEDULED = 'scheduled'
COMPLETED = 'completed'
CANCELLED = 'cancelled'


# ---------------------- PROFILE ----------------------
class Profile(db.Model, UserMixin):
    """
    An account. The role is fixed at signup and decides which dashboard
    variant the user gets.
    """
    __tablename__ = 'profiles'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(150), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'farmer' or 'agent'
    phone_number = db.Column(db.String(30), nullable=True)
    location = db.Column(db.String(250), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.CheckConstraint("role IN ('farmer', 'agent')", name='ck_profile_role'),
    )

    @property
    def is_agent(self):
        return self.role == 'agent'

    @property
    def is_farmer(self):
        return self.role == 'farmer'

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def get_id(self):
        return str(self.id)

    def audience(self):
        return (self.id,)

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'role': self.role,
            'phone_number': self.phone_number,
            'location': self.location,
        }

    def __repr__(self):
        return f"<Profile {self.email} ({self.role})>"


# ---------------------- FARMER ----------------------
class Farmer(db.Model):
    """
    A roster entry. Always owned by the agent who added it; linked to a
    farmer profile when the farmer has an account of their own.
    """
    __tablename__ = 'farmers'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), unique=True, nullable=True)
    full_name = db.Column(db.String(150), nullable=False)
    phone_number = db.Column(db.String(30), nullable=False)
    location = db.Column(db.String(250), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    profile = db.relationship('Profile', foreign_keys=[profile_id])
    agent = db.relationship('Profile', foreign_keys=[created_by])
    collections = db.relationship('Collection', back_populates='farmer', cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'profile_id': self.profile_id,
            'full_name': self.full_name,
            'phone_number': self.phone_number,
            'location': self.location,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def audience(self):
        return (self.created_by, self.profile_id)

    def __repr__(self):
        return f"<Farmer {self.full_name}>"


# ---------------------- COLLECTION ----------------------
class Collection(db.Model):
    """
    A milk pickup. Created as 'scheduled' with an optional expected quantity;
    recording the measured amount completes it.
    """
    __tablename__ = 'collections'

    id = db.Column(db.Integer, primary_key=True)
    farmer_id = db.Column(db.Integer, db.ForeignKey('farmers.id'), nullable=False)
    agent_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)

    scheduled_date = db.Column(db.Date, nullable=False)
    scheduled_time = db.Column(db.Time, nullable=False)
    quantity_liters = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=SCHEDULED)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    farmer = db.relationship('Farmer', back_populates='collections')
    agent = db.relationship('Profile', foreign_keys=[agent_id])

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('scheduled', 'completed', 'cancelled')", name='ck_collection_status'
        ),
        db.CheckConstraint(
            'quantity_liters IS NULL OR quantity_liters >= 0', name='ck_collection_quantity'
        ),
    )

    @property
    def scheduled_at(self):
        return datetime.combine(self.scheduled_date, self.scheduled_time)

    def audience(self):
        # The owning agent and, when the farmer has an account, the farmer
        return (self.agent_id, self.farmer.profile_id if self.farmer else None)

    def to_dict(self):
        return {
            'id': self.id,
            'farmer_id': self.farmer_id,
            'farmer_name': self.farmer.full_name if self.farmer else None,
            'agent_id': self.agent_id,
            'scheduled_date': self.scheduled_date.isoformat(),
            'scheduled_time': self.scheduled_time.strftime('%H:%M'),
            'quantity_liters': self.quantity_liters,
            'status': self.status,
            'notes': self.notes,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    def __repr__(self):
        return f"<Collection ID: {self.id} for Farmer {self.farmer_id} on {self.scheduled_date} ({self.status})>"


# ---------------------- MESSAGE ----------------------
class Message(db.Model):
    __tablename__ = 'messages'

    id = db.Column(db.Integer, primary_key=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    message_type = db.Column(db.String(20), nullable=False, default='inquiry')
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    # Only column ever updated after insert
    read_at = db.Column(db.DateTime, nullable=True)

    sender = db.relationship('Profile', foreign_keys=[sender_id])
    receiver = db.relationship('Profile', foreign_keys=[receiver_id])

    __table_args__ = (
        db.CheckConstraint(
            "message_type IN ('inquiry', 'response', 'announcement')", name='ck_message_type'
        ),
    )

    def audience(self):
        return (self.sender_id, self.receiver_id)

    def to_dict(self):
        return {
            'id': self.id,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'content': self.content,
            'message_type': self.message_type,
            'created_at': self.created_at.isoformat(),
            'read_at': self.read_at.isoformat() if self.read_at else None,
        }


# ---------------------- ANNOUNCEMENT ----------------------
class Announcement(db.Model):
    __tablename__ = 'announcements'

    id = db.Column(db.Integer, primary_key=True)
    agent_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=False)
    title = db.Column(db.String(100), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=True)

    agent = db.relationship('Profile', foreign_keys=[agent_id])
    recipients = db.relationship(
        'AnnouncementRecipient', back_populates='announcement', cascade="all, delete-orphan"
    )

    def audience(self):
        """The posting agent and every farmer account on their roster."""
        roster = (object_session(self) or db.session).execute(
            db.select(Farmer.profile_id).where(Farmer.created_by == self.agent_id, Farmer.profile_id.isnot(None))
        ).scalars()
        return (self.agent_id, *roster)

    def to_dict(self):
        return {
            'id': self.id,
            'agent_id': self.agent_id,
            'title': self.title,
            'content': self.content,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


class AnnouncementRecipient(db.Model):
    __tablename__ = 'announcement_recipients'

    announcement_id = db.Column(db.Integer, db.ForeignKey('announcements.id'), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), primary_key=True)
    read_at = db.Column(db.DateTime, nullable=True)

    announcement = db.relationship('Announcement', back_populates='recipients')

    def audience(self):
        return (self.user_id,)
