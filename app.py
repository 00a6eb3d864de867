from flask import (
    Flask, jsonify, request, abort, session, Response, stream_with_context, url_for
)
from flask_login import (
    LoginManager, login_user, login_required,
    logout_user, current_user
)
from flask_migrate import Migrate
from flask_wtf.csrf import CSRFProtect, generate_csrf
from functools import wraps
import logging

import changes
import services
from config import Config
from db import db
from forms import (
    RegisterForm, LoginForm, AddFarmerForm, ScheduleCollectionForm,
    RecordCollectionForm, MessageForm, AnnouncementForm
)
from jobs import start_scheduler
import models  # noqa: F401  registers the tables with Flask-Migrate

# ------------------------
# Init App + Config
# ------------------------
app = Flask(__name__)
app.config.from_object(Config)

logging.basicConfig(
    level=app.config['LOG_LEVEL'],
    format='[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
)

# ------------------------
# Init Extensions
# ------------------------
db.init_app(app)
migrate = Migrate(app, db)
csrf = CSRFProtect(app)
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.login_view = 'login'
changes.install(db.session)


@login_manager.user_loader
def load_user(user_id):
    return services.get_profile(user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error="Please log in first.", login=url_for('login')), 401


# ------------------------
# Role-required decorator
# ------------------------
def role_required(role):
    def wrapper(f):
        @wraps(f)
        def decorated_view(*args, **kwargs):
            if not current_user.is_authenticated or current_user.role != role:
                abort(403)
            return f(*args, **kwargs)
        return decorated_view
    return wrapper


# ------------------------
# Error boundary
# ------------------------
@app.errorhandler(services.ServiceError)
def handle_service_error(exc):
    if isinstance(exc, services.StoreError):
        app.logger.error("%s %s failed: %s", request.method, request.path, exc.message)
    else:
        app.logger.warning("%s %s rejected: %s", request.method, request.path, exc.message)
    return jsonify(error=exc.message), exc.status_code


@app.errorhandler(403)
def forbidden(exc):
    return jsonify(error="Access denied."), 403


@app.errorhandler(404)
def not_found(exc):
    return jsonify(error="Not found."), 404


def form_errors(form):
    app.logger.info("%s %s invalid input: %s", request.method, request.path, form.errors)
    return jsonify(errors=form.errors), 400


# ------------------------
# Routes
# ------------------------
@app.route('/')
def home():
    return jsonify(app='MilkLink', dashboard=url_for('dashboard'))


@app.route('/csrf_token')
def csrf_token():
    return jsonify(csrf_token=generate_csrf())


# ------------------------
# Register/Login/Logout
# ------------------------
@app.route('/register', methods=['POST'])
def register():
    form = RegisterForm()
    if not form.validate_on_submit():
        return form_errors(form)

    profile = services.register_profile(
        email=form.email.data,
        password=form.password.data,
        full_name=form.full_name.data,
        role=form.role.data,
        phone_number=form.phone_number.data,
        location=form.location.data,
    )
    login_user(profile)
    session['active_role'] = profile.role
    return jsonify(profile=profile.to_dict(), dashboard=url_for('dashboard')), 201


@app.route('/login', methods=['POST'])
def login():
    if current_user.is_authenticated:
        return jsonify(profile=current_user.to_dict(), dashboard=url_for('dashboard'))

    form = LoginForm()
    if not form.validate_on_submit():
        return form_errors(form)

    profile = services.authenticate(form.email.data, form.password.data)
    if profile is None:
        return jsonify(error="Invalid email or password."), 401

    login_user(profile)
    session['active_role'] = profile.role
    return jsonify(profile=profile.to_dict(), dashboard=url_for('dashboard'))


@app.route('/logout')
@login_required
def logout():
    logout_user()
    session.clear()
    return jsonify(message="You have been logged out.")


# ------------------------
# Dashboard: one variant per role, chosen once
# ------------------------
DASHBOARDS = {
    'farmer': services.farmer_dashboard,
    'agent': services.agent_dashboard,
}


@app.route('/dashboard')
@login_required
def dashboard():
    view = DASHBOARDS.get(current_user.role)
    if view is None:
        abort(403)
    return jsonify(view(current_user))


# ------------------------
# FARMER ROSTER
# ------------------------
@app.route('/farmers', methods=['GET'])
@login_required
@role_required('agent')
def manage_farmers():
    return jsonify(farmers=services.list_farmers(current_user))


@app.route('/farmers/available', methods=['GET'])
@login_required
@role_required('agent')
def available_farmers():
    return jsonify(profiles=services.available_farmer_profiles())


@app.route('/farmers', methods=['POST'])
@login_required
@role_required('agent')
def add_farmer():
    form = AddFarmerForm()
    if not form.validate_on_submit():
        return form_errors(form)

    farmer = services.add_farmer(
        current_user,
        profile_id=form.profile_id.data,
        full_name=form.full_name.data,
        phone_number=form.phone_number.data,
        location=form.location.data,
    )
    return jsonify(farmer=farmer.to_dict()), 201


# ------------------------
# COLLECTIONS
# ------------------------
@app.route('/collections', methods=['GET'])
@login_required
def collections():
    if current_user.role == 'agent':
        return jsonify(services.agent_collections(current_user))
    return jsonify(services.farmer_collections(current_user))


@app.route('/collections', methods=['POST'])
@login_required
@role_required('agent')
def schedule_collection():
    form = ScheduleCollectionForm()
    if not form.validate_on_submit():
        return form_errors(form)

    collection = services.schedule_collection(
        current_user,
        farmer_id=form.farmer_id.data,
        scheduled_date=form.scheduled_date.data,
        scheduled_time=form.scheduled_time.data,
        expected_quantity=form.quantity_liters.data,
        notes=form.notes.data,
    )
    return jsonify(collection=collection.to_dict()), 201


@app.route('/collections/<int:collection_id>/record', methods=['POST'])
@login_required
@role_required('agent')
def record_collection(collection_id):
    form = RecordCollectionForm()
    if not form.validate_on_submit():
        return form_errors(form)

    collection = services.record_collection(current_user, collection_id, form.quantity_liters.data)
    return jsonify(collection=collection.to_dict())


@app.route('/collections/<int:collection_id>/cancel', methods=['POST'])
@login_required
@role_required('agent')
def cancel_collection(collection_id):
    collection = services.cancel_collection(current_user, collection_id)
    return jsonify(collection=collection.to_dict())


# ------------------------
# MESSAGES
# ------------------------
@app.route('/messages/<int:other_id>', methods=['GET'])
@login_required
def conversation(other_id):
    # Opening a conversation reads everything the other side sent
    services.mark_conversation_read(current_user, other_id)
    return jsonify(messages=services.conversation(current_user, other_id))


@app.route('/messages/<int:other_id>', methods=['POST'])
@login_required
def send_message(other_id):
    form = MessageForm()
    if not form.validate_on_submit():
        return form_errors(form)

    message = services.send_message(current_user, other_id, form.content.data)
    return jsonify(message=message.to_dict()), 201


@app.route('/messages/<int:message_id>/read', methods=['POST'])
@login_required
def mark_message_read(message_id):
    message = services.mark_message_read(current_user, message_id)
    return jsonify(message=message.to_dict())


# ------------------------
# ANNOUNCEMENTS
# ------------------------
@app.route('/announcements', methods=['GET'])
@login_required
def announcements():
    return jsonify(announcements=services.list_announcements(current_user))


@app.route('/announcements', methods=['POST'])
@login_required
@role_required('agent')
def manage_announcements():
    form = AnnouncementForm()
    if not form.validate_on_submit():
        return form_errors(form)

    announcement = services.create_announcement(
        current_user,
        title=form.title.data,
        content=form.content.data,
        expires_at=form.expires_at.data,
    )
    return jsonify(announcement=announcement.to_dict()), 201


@app.route('/announcements/<int:announcement_id>/read', methods=['POST'])
@login_required
def mark_announcement_read(announcement_id):
    recipient = services.mark_announcement_read(current_user, announcement_id)
    return jsonify(announcement_id=recipient.announcement_id, read_at=recipient.read_at.isoformat())


# ------------------------
# Live updates
# ------------------------
@app.route('/events')
@login_required
def events():
    requested = request.args.get('kinds', '').strip()
    kinds = [k.strip() for k in requested.split(',') if k.strip()] if requested else list(changes.RECORD_KINDS)
    unknown = [k for k in kinds if k not in changes.RECORD_KINDS]
    if unknown:
        raise services.ValidationError(f"Unknown record kinds: {', '.join(unknown)}")

    stream = changes.EventStream(
        changes.feed, kinds,
        keepalive=app.config['EVENT_STREAM_KEEPALIVE'],
        viewer_id=current_user.id
    )

    def generate():
        try:
            yield ": connected\n\n"
            for frame in stream:
                yield frame
        finally:
            stream.close()

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'}
    )


# ------------------------
# Run App
# ------------------------
if __name__ == '__main__':
    if app.config['SCHEDULER_ENABLED']:
        start_scheduler(app)

    with app.app_context():
        db.create_all()
    app.run(debug=True)
