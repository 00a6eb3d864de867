import sys

from app import app
from models import Profile
import services

with app.app_context():
    if len(sys.argv) < 4:
        print("Usage: python create_agent.py EMAIL PASSWORD FULL_NAME")
        sys.exit(1)

    email, password, full_name = sys.argv[1], sys.argv[2], " ".join(sys.argv[3:])

    existing_agent = Profile.query.filter_by(email=email.strip().lower()).first()
    if existing_agent:
        print(f"Profile '{email}' already exists ({existing_agent.role}).")
    else:
        agent = services.register_profile(email, password, full_name, role='agent')
        print(f"Agent '{agent.email}' created successfully.")
