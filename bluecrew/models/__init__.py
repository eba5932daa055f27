"""
Flask-SQLAlchemy models.

``db`` is bound to the app in ``bluecrew.create_app``. Model modules are
imported there so their tables register before ``db.create_all()``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
