"""Bearer credential issuing and verification.

Tokens carry the caller's id, email and role and are signed with the app's
``JWT_SECRET_KEY``. Verification always completes before the wrapped view
runs; the JWTManager loaders registered in ``create_app`` answer requests
that fail it (401 without a credential, 403 for a bad or expired one).
"""
from functools import wraps
from typing import Dict, Optional

from flask import g
from flask_jwt_extended import create_access_token, get_jwt, get_jwt_identity, verify_jwt_in_request

from shopease.errors import Forbidden

ADMIN_ROLE = "admin"
CUSTOMER_ROLE = "customer"
ALLOWED_USER_ROLES = {ADMIN_ROLE, CUSTOMER_ROLE}


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else CUSTOMER_ROLE


def issue_token(user_document) -> str:
    email = str(user_document.get("email") or "")
    return create_access_token(
        identity=email,
        additional_claims={
            "id": str(user_document.get("_id") or ""),
            "email": email,
            "role": normalize_role(user_document.get("role")),
        },
    )


def claims_from_jwt() -> Dict[str, str]:
    decoded = get_jwt()
    return {
        "id": str(decoded.get("id") or ""),
        "email": str(decoded.get("email") or get_jwt_identity() or "").lower(),
        "role": normalize_role(decoded.get("role")),
    }


def current_claims() -> Dict[str, str]:
    return getattr(g, "user", None) or {}


def is_admin(claims: Optional[Dict[str, str]] = None) -> bool:
    claims = claims if claims is not None else current_claims()
    return claims.get("role") == ADMIN_ROLE


def require_own_email(email: Optional[str], allow_admin: bool = True):
    """Reject access to another user's records unless the caller is an admin."""
    claims = current_claims()
    requested = str(email or "").strip().lower()
    if allow_admin and is_admin(claims):
        return
    if not requested or requested != claims.get("email", ""):
        raise Forbidden("Forbidden access")


def token_required(*roles: str):
    allowed = {normalize_role(role) for role in roles if role}

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            claims = claims_from_jwt()
            if allowed and claims["role"] not in allowed:
                raise Forbidden("You need additional permissions to perform this action.")
            g.user = claims
            return view(*args, **kwargs)

        return wrapper

    return decorator
