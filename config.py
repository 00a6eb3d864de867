import os
from os import path

basedir = path.abspath(path.dirname(__file__))


class Config:
    """
    Application settings. Every value can be overridden from the environment
    so the same code runs locally, under tests and in deployment.
    """
    SECRET_KEY = os.getenv('SECRET_KEY', 'change-me-in-production')

    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        f'sqlite:///{path.join(basedir, "milklink.db")}'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    WTF_CSRF_ENABLED = os.getenv('WTF_CSRF_ENABLED', '1') == '1'

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Daily purge of expired announcements
    SCHEDULER_ENABLED = os.getenv('SCHEDULER_ENABLED', '1') == '1'
    ANNOUNCEMENT_PURGE_HOUR = int(os.getenv('ANNOUNCEMENT_PURGE_HOUR', '5'))
    ANNOUNCEMENT_PURGE_MINUTE = int(os.getenv('ANNOUNCEMENT_PURGE_MINUTE', '30'))

    # Seconds between SSE keep-alive comments
    EVENT_STREAM_KEEPALIVE = int(os.getenv('EVENT_STREAM_KEEPALIVE', '15'))
