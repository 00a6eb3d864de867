import os

from app import app, db

with app.app_context():
    db.create_all()
    print(f"Tables ready in {app.config['SQLALCHEMY_DATABASE_URI']}")
    print("Tables:", ", ".join(sorted(db.metadata.tables)))

if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///'):
    print("File at:", os.path.abspath(app.config['SQLALCHEMY_DATABASE_URI'][len('sqlite:///'):]))
