"""
Access control for admin-only operations (ingestion, ETL trigger, alert resolution).
"""

from functools import wraps

from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from database.models import UserRole
from services.errors import AuthorizationError


def is_admin(user_id):
    if not user_id:
        return False
    return UserRole.query.filter_by(user_id=str(user_id), role='admin').first() is not None


def admin_required(view):
    """Requires a valid JWT (401 otherwise) whose identity holds the 'admin' role (403)."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        user_id = get_jwt_identity()
        if not is_admin(user_id):
            raise AuthorizationError('Admin role required', status_code=403)
        return view(*args, **kwargs)
    return wrapper
