"""
Activation Token Lifecycle — issue, validate, consume.

A token is valid iff ``used_at IS NULL AND now < expires_at``. Consumption
is a single conditional UPDATE on ``used_at``; of two concurrent consumers
exactly one sees rowcount 1.

Issuing a token for a (subject, type) pair retires every other live token
for that pair, so at most one link works at a time.

Usage:
    from agencyops.services import activation_service

    raw, record = activation_service.issue(client.id, "client")
    activation_service.validate(raw)            # ("client", client.id)
    activation_service.consume_activation_token(raw, "s3cret-pass")
"""

import logging
from datetime import UTC, datetime, timedelta

from email_validator import EmailNotValidError, validate_email
from flask import current_app, has_app_context
from sqlalchemy import func, update

from agencyops.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from agencyops.models import db
from agencyops.models.activation import (
    SUBJECT_TYPES,
    ActivationToken,
    generate_token,
    hash_token,
)
from agencyops.models.audit import write_audit
from agencyops.models.auth import Role, User, UserRole
from agencyops.models.client import Client
from agencyops.services.notifier import notify
from agencyops.services.roles import ActingContext
from agencyops.utils.crypto import hash_password

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 168
MIN_PASSWORD_LENGTH = 8
CLIENT_ROLE_LABEL = "client"


def _now() -> datetime:
    return datetime.now(UTC)


def _default_ttl() -> timedelta:
    hours = DEFAULT_TTL_HOURS
    if has_app_context():
        hours = current_app.config.get("ACTIVATION_TOKEN_TTL_HOURS", DEFAULT_TTL_HOURS)
    return timedelta(hours=hours)


def _lookup(token: str) -> ActivationToken | None:
    if not token:
        return None
    return ActivationToken.query.filter_by(token_hash=hash_token(token)).first()


# ═════════════════════════════════════════════════════════════════════════════
# Core lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def issue(subject_id: int, subject_type: str, ttl: timedelta | None = None,
          *, created_by: int | None = None, now: datetime | None = None):
    """Create a fresh token for the subject and retire its other live tokens.

    Returns ``(raw_token, ActivationToken)``. The raw value is not stored
    and cannot be recovered later.
    """
    if subject_type not in SUBJECT_TYPES:
        raise ValidationError(
            f"subject_type must be one of {sorted(SUBJECT_TYPES)}",
            details={"subject_type": subject_type},
        )
    now = now or _now()
    ttl = ttl if ttl is not None else _default_ttl()
    if ttl <= timedelta(0):
        raise ValidationError("ttl must be positive")

    try:
        retired = db.session.execute(
            update(ActivationToken)
            .where(
                ActivationToken.subject_type == subject_type,
                ActivationToken.subject_id == subject_id,
                ActivationToken.used_at.is_(None),
                ActivationToken.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount

        raw = generate_token()
        record = ActivationToken(
            token_hash=hash_token(raw),
            subject_type=subject_type,
            subject_id=subject_id,
            expires_at=now + ttl,
            created_by=created_by,
        )
        db.session.add(record)
        db.session.flush()
        write_audit(
            entity_type="activation_token",
            entity_id=record.id,
            action="activation.issue",
            actor_user_id=created_by,
            diff={"subject_type": subject_type, "subject_id": subject_id, "retired": retired},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Activation token issued: %s/%s (retired %d)", subject_type, subject_id, retired)
    return raw, record


def _check(record: ActivationToken | None, now: datetime):
    if record is None:
        raise TokenInvalidError()
    # Expiry wins over used so an expired link always reads as expired
    if record.is_expired(now):
        raise TokenExpiredError()
    if record.is_used:
        raise TokenAlreadyUsedError()
    return record


def validate(token: str, now: datetime | None = None) -> tuple[str, int]:
    """Return ``(subject_type, subject_id)`` for a live token, else raise."""
    record = _check(_lookup(token), now or _now())
    return record.subject_type, record.subject_id


def _claim(token: str, now: datetime) -> ActivationToken:
    """Validate, then mark used with a compare-and-set. Does not commit."""
    validate(token, now)
    record = _lookup(token)
    result = db.session.execute(
        update(ActivationToken)
        .where(
            ActivationToken.id == record.id,
            ActivationToken.used_at.is_(None),
            ActivationToken.expires_at > now,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Lost the race; report what the row looks like now
        db.session.expire(record)
        _check(record, now)
        raise TokenAlreadyUsedError()
    db.session.expire(record)
    return record


def consume(token: str, now: datetime | None = None) -> tuple[str, int]:
    """Single-use claim. A second call on the same token fails TokenAlreadyUsed."""
    try:
        record = _claim(token, now or _now())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return record.subject_type, record.subject_id


def describe(token: str) -> dict:
    """Public info for the first-access page: who the link is for."""
    subject_type, subject_id = validate(token)
    if subject_type == "client":
        client = db.session.get(Client, subject_id)
        if client is None:
            raise TokenInvalidError()
        return {"subject_type": subject_type, "name": client.name, "email": client.email}
    user = db.session.get(User, subject_id)
    if user is None:
        raise TokenInvalidError()
    return {"subject_type": subject_type, "name": user.full_name, "email": user.email}


# ═════════════════════════════════════════════════════════════════════════════
# Account bootstrap
# ═════════════════════════════════════════════════════════════════════════════


def _activation_url(raw: str) -> str:
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return f"{base}/first-access?token={raw}"


def issue_activation_token(ctx: ActingContext, subject_id: int, subject_type: str) -> dict:
    """Admin issues (or re-issues) a first-access link and emails it."""
    if not ctx.is_admin:
        raise AuthorizationError("activation tokens are issued by admins")

    if subject_type == "client":
        subject = db.session.get(Client, subject_id)
        if subject is None:
            raise NotFoundError("Client", subject_id)
        recipient, name, template = subject.email, subject.name, "client_welcome"
    elif subject_type == "collaborator":
        subject = db.session.get(User, subject_id)
        if subject is None:
            raise NotFoundError("User", subject_id)
        recipient, name, template = subject.email, subject.full_name, "collaborator_welcome"
    else:
        raise ValidationError(
            f"subject_type must be one of {sorted(SUBJECT_TYPES)}",
            details={"subject_type": subject_type},
        )

    raw, record = issue(subject_id, subject_type, created_by=ctx.subject_id)
    url = _activation_url(raw)
    notify(template, recipient, {
        "name": name or recipient,
        "activation_url": url,
        "expires_at": record.expires_at.strftime("%d/%m/%Y %H:%M"),
    })
    return {
        "token": raw,
        "activation_url": url,
        "subject_type": subject_type,
        "subject_id": subject_id,
        "expires_at": record.expires_at.isoformat(),
    }


def _ensure_role(user: User, label: str) -> None:
    role = Role.query.filter_by(name=label).first()
    if role is None:
        role = Role(name=label, display_name=label.title())
        db.session.add(role)
        db.session.flush()
    if not UserRole.query.filter_by(user_id=user.id, role_id=role.id).first():
        db.session.add(UserRole(user_id=user.id, role_id=role.id))


def _clear_stale_link(client: Client) -> None:
    """Drop a client↔user link left behind by an earlier failed activation."""
    if client.user_id is None:
        return
    linked = db.session.get(User, client.user_id)
    if linked is not None and linked.email.lower() == client.email.lower():
        return
    logger.warning("Client %s linked to user %s with a different email; clearing link",
                   client.id, client.user_id)
    if linked is not None and linked.client_id == client.id:
        linked.client_id = None
    client.user_id = None
    client.status = "pending"
    db.session.flush()


def _activate_client(client_id: int, password_hash: str, now: datetime) -> User:
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError("Client", client_id)

    _clear_stale_link(client)

    try:
        email = validate_email(client.email, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(f"Client email is invalid: {exc}") from exc

    user = User.query.filter(func.lower(User.email) == email.lower()).first()
    if user is None:
        user = User(email=email, full_name=client.name, status="invited")
        db.session.add(user)
        db.session.flush()
    _ensure_role(user, CLIENT_ROLE_LABEL)

    user.password_hash = password_hash
    user.status = "active"
    user.activated_at = now
    user.client_id = client.id

    client.user_id = user.id
    client.status = "active"
    client.activated_at = now
    return user


def _activate_collaborator(user_id: int, password_hash: str, now: datetime) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    user.password_hash = password_hash
    user.status = "active"
    user.activated_at = now
    return user


def consume_activation_token(token: str, password: str) -> dict:
    """Spend the token and activate its subject in one transaction."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            details={"password": "too short"},
        )
    now = _now()
    password_hash = hash_password(password)

    try:
        record = _claim(token, now)
        if record.subject_type == "client":
            user = _activate_client(record.subject_id, password_hash, now)
        else:
            user = _activate_collaborator(record.subject_id, password_hash, now)
        db.session.flush()
        write_audit(
            entity_type="activation_token",
            entity_id=record.id,
            action="activation.consume",
            actor_user_id=user.id,
            diff={"subject_type": record.subject_type, "subject_id": record.subject_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Account activated: %s/%s → user %s",
                record.subject_type, record.subject_id, user.id)
    return user.to_dict(include_roles=True)
