import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from config import TestConfig
from database.db import db
from database.models import UserRole
from services.observability import metrics


@pytest.fixture
def app():
    app = create_app(TestConfig)
    metrics.reset()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """auth_headers('user-1', admin=True) -> Authorization header for that identity."""
    def _make(user_id='user-1', admin=False):
        if admin:
            db.session.add(UserRole(user_id=user_id, role='admin'))
            db.session.commit()
        token = create_access_token(identity=user_id)
        return {'Authorization': f'Bearer {token}'}
    return _make


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers('admin-1', admin=True)
