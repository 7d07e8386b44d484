# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, g

from .errors import ForbiddenError, UnauthorizedError, error_response
from .models.auth import VALID_ROLES
from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid bearer session.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired, idle or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            return error_response(UnauthorizedError("Authentication required"))

        user = session_service.validate_session(token)
        if not user:
            return error_response(UnauthorizedError("Invalid or expired token"))

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the authenticated user to hold one of `roles`.

    Admins pass every role check. Use after @require_auth.
    """
    unknown = [role for role in roles if role not in VALID_ROLES]
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(unknown)}")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return error_response(UnauthorizedError("Authentication required"))

            user = g.current_user
            if user.is_admin or user.role in roles:
                return f(*args, **kwargs)

            return error_response(ForbiddenError(
                f"Requires role: {' or '.join(roles)}",
                details={"required_roles": list(roles)},
            ))

        return decorated_function
    return decorator
