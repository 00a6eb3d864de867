"""
Shared pytest fixtures. The database is an in-memory SQLite configured
through the environment before the app module is imported.
"""
import os

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['WTF_CSRF_ENABLED'] = '0'
os.environ['SCHEDULER_ENABLED'] = '0'
os.environ.setdefault('SECRET_KEY', 'test-secret')

import pytest

from app import app as flask_app
from db import db
import services

PASSWORD = 'secret123'


@pytest.fixture
def app():
    """Fresh schema for every test."""
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Application context for calling services directly."""
    with app.app_context():
        yield app


@pytest.fixture
def agent(ctx):
    return services.register_profile('agent@test.com', PASSWORD, 'Asha Agent', 'agent', '+254700000001', 'Nakuru')


@pytest.fixture
def other_agent(ctx):
    return services.register_profile('other@test.com', PASSWORD, 'Omar Agent', 'agent')


@pytest.fixture
def farmer_profile(ctx):
    return services.register_profile('farmer@test.com', PASSWORD, 'Faith Farmer', 'farmer', '+254700000002', 'Molo')


@pytest.fixture
def roster_farmer(agent, farmer_profile):
    """Farmer account added to the agent's roster."""
    return services.add_farmer(agent, profile_id=farmer_profile.id)


@pytest.fixture
def seeded(app):
    """Agent with one farmer account on the roster; ids only, no open context."""
    with app.app_context():
        agent = services.register_profile('agent@test.com', PASSWORD, 'Asha Agent', 'agent')
        farmer = services.register_profile('farmer@test.com', PASSWORD, 'Faith Farmer', 'farmer')
        roster = services.add_farmer(agent, profile_id=farmer.id)
        ids = {'agent': agent.id, 'farmer_profile': farmer.id, 'farmer': roster.id}
    return ids


@pytest.fixture
def login(app):
    """Returns a helper giving a logged-in test client per user."""
    def _login(email, password=PASSWORD):
        client = app.test_client()
        response = client.post('/login', data={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return client
    return _login
