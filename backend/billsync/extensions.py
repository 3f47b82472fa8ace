# Overview: Flask extension instances for database and migrations, plus access to the sync services.

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

EXTENSION_KEY = "billsync"


def get_services():
    """Return the service container built for the current app."""
    return current_app.extensions[EXTENSION_KEY]
