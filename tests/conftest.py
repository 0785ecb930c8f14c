from calendar import monthrange
from datetime import date

import pytest

from app import create_app
from app_models import MembershipPlan, SchoolYear, Student, User, db
from billing import add_months, utc_today
from config import TestingConfig
from security import hash_password

ADMIN_PASSWORD = 'admin-secret'
STAFF_PASSWORD = 'staff-secret'


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def school_year(db_session):
    """Active school year running from three months ago to eight months ahead"""
    today = utc_today()
    start_year, start_month = add_months(today.year, today.month, -3)
    end_year, end_month = add_months(today.year, today.month, 8)
    school_year = SchoolYear(
        name=f'{start_year}-{end_year}',
        start_date=date(start_year, start_month, 1),
        end_date=date(end_year, end_month, monthrange(end_year, end_month)[1]),
        is_active=True,
    )
    db_session.add(school_year)
    db_session.commit()
    return school_year


@pytest.fixture
def plan(db_session):
    plan = MembershipPlan(name='Two days', days_per_week=2, monthly_price=160.0, is_active=True)
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture
def student(db_session, school_year, plan):
    student = Student(
        student_code='ST0001',
        first_name='Ana',
        last_name='Silva',
        membership_plan=plan,
        discount_rate=25.0,
        monthly_due_amount=120.0,
        school_year=school_year,
        is_active=True,
    )
    db_session.add(student)
    db_session.commit()
    return student


def _make_user(db_session, username, password, role):
    user = User(username=username, password_hash=hash_password(password), role=role, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin_user(db_session):
    return _make_user(db_session, 'admin', ADMIN_PASSWORD, 'ADMIN')


@pytest.fixture
def admin_client(client, admin_user):
    response = client.post('/api/login', json={'username': 'admin', 'password': ADMIN_PASSWORD})
    assert response.status_code == 200
    return client


@pytest.fixture
def staff_client(app, db_session):
    _make_user(db_session, 'staff', STAFF_PASSWORD, 'STAFF')
    client = app.test_client()
    response = client.post('/api/login', json={'username': 'staff', 'password': STAFF_PASSWORD})
    assert response.status_code == 200
    return client
