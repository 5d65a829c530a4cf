import jwt
from flask import current_app, request

from salonbook.errors import AuthenticationError


def get_authenticated_user_id(required=True):
    """
    Read the caller from an ``Authorization: Bearer <token>`` header.

    Tokens are HS256 JWTs signed with SECRET_KEY carrying ``user_id``.
    Returns None for anonymous callers when ``required`` is False.
    """
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        if required:
            raise AuthenticationError("Authorization header with a Bearer token is required")
        return None

    token = header.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired", code="TOKEN_EXPIRED") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN") from None

    user_id = payload.get("user_id")
    if user_id is None:
        raise AuthenticationError("Token does not identify a user", code="INVALID_TOKEN")
    return str(user_id)
