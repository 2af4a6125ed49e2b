"""
Identity middleware — trusts bearer tokens minted by the external identity
provider and turns them into an explicit ``ActingContext``.

Token claims (HS256, signed with IDP_JWT_SECRET):
    sub                 user id (string)
    roles               raw role labels, e.g. ["Admin"] or ["Editor de Vídeo"]
    viewing_client_id   optional; honoured only for admins

Sets per request:
    g.subject_id, g.role_labels, g.acting
"""

import functools
import logging

import jwt as pyjwt
from flask import current_app, g, request

from agencyops.models import db
from agencyops.models.auth import User
from agencyops.services.roles import ActingContext
from agencyops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Paths that skip identity parsing entirely
SKIP_PREFIXES = (
    "/api/v1/health",
)


def decode_identity_token(token: str) -> dict:
    """Decode and verify a bearer token. Raises pyjwt exceptions on failure."""
    secret = current_app.config.get("IDP_JWT_SECRET")
    if not secret:
        raise pyjwt.InvalidTokenError("IDP_JWT_SECRET is not configured")
    return pyjwt.decode(token, secret, algorithms=[ALGORITHM])


def build_acting_context(payload: dict) -> ActingContext:
    subject_id = int(payload["sub"])
    labels = payload.get("roles")
    user = db.session.get(User, subject_id)
    if labels is None:
        labels = user.role_names if user is not None else []
    viewing = payload.get("viewing_client_id")
    return ActingContext.from_labels(
        subject_id,
        labels,
        viewing_client_id=int(viewing) if viewing not in (None, "") else None,
        own_client_id=user.client_id if user is not None else None,
    )


def init_identity_middleware(app):
    """Register identity parsing as a before_request hook."""

    @app.before_request
    def _identity():
        g.subject_id = None
        g.role_labels = []
        g.acting = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return None

        try:
            payload = decode_identity_token(auth_header[7:])
            g.acting = build_acting_context(payload)
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHENTICATED, "Session expired")
        except (pyjwt.InvalidTokenError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Rejected bearer token on %s: %s", path, exc)
            return api_error(E.UNAUTHENTICATED, "Invalid bearer token")

        g.subject_id = g.acting.subject_id
        g.role_labels = list(payload.get("roles") or [])
        return None


def require_identity(f):
    """Decorator: 401 unless the request carried a valid bearer token."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "acting", None) is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        return f(*args, **kwargs)

    return decorated
