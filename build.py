#!/usr/bin/env python3
"""
Build script for deployment.
This script initializes the database and seeds the first school year and admin user.
"""
import os
from datetime import date

from app_logger import get_logger
from app_models import SchoolYear, User, db
from billing import utc_today
from security import hash_password

logger = get_logger(__name__)


def school_year_bounds(today):
    """September to June of the academic year containing today"""
    start_year = today.year if today.month >= 9 else today.year - 1
    return date(start_year, 9, 1), date(start_year + 1, 6, 30)


def create_default_school_year(today=None):
    """Creates the current school year if none exist."""
    if db.session.query(SchoolYear).first() is not None:
        return None

    start, end = school_year_bounds(today or utc_today())
    school_year = SchoolYear(name=f'{start.year}-{end.year}', start_date=start, end_date=end, is_active=True)
    db.session.add(school_year)
    db.session.commit()
    logger.info("Created school year %s", school_year.name)
    return school_year


def create_default_admin(username=None, password=None):
    """Creates an admin user if none exist."""
    # For deployment, these must be set as environment variables.
    # For local dev, they can be in the .env file.
    username = username or os.environ.get('DEFAULT_USERNAME')
    password = password or os.environ.get('DEFAULT_PASSWORD')

    if not username or not password:
        logger.warning("DEFAULT_USERNAME and/or DEFAULT_PASSWORD are not set. Skipping default admin creation.")
        return None

    if db.session.query(User).first() is not None:
        return None

    admin_user = User(username=username, password_hash=hash_password(password), role='ADMIN', is_active=True)
    db.session.add(admin_user)
    db.session.commit()
    logger.info("Default admin '%s' created", username)
    return admin_user


def init_database(app):
    """Create tables and seed data inside the app's context"""
    with app.app_context():
        logger.info("Creating database tables...")
        db.create_all()

        create_default_school_year()
        create_default_admin(app.config.get('DEFAULT_USERNAME'), app.config.get('DEFAULT_PASSWORD'))

        logger.info("Database initialization completed successfully!")


if __name__ == "__main__":
    from app import create_app
    init_database(create_app())
