"""
Sensitive Field Vault — onboarding answers encrypted at rest.

Write path: sensitive values are Fernet-encrypted before they touch the
session; the plaintext is never stored or logged.

Read path: ``decrypt_sensitive_field`` is admin-only and records an
OnboardingAuditLog row *before* decrypting. If that row cannot be written
the call fails closed with DependencyFailure and no plaintext leaves the
service. Nothing is cached; every reveal calls back in here.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from agencyops.core.exceptions import (
    AuthorizationError,
    DependencyFailure,
    NotFoundError,
    ValidationError,
)
from agencyops.models import db
from agencyops.models.client import Client
from agencyops.models.onboarding import (
    OnboardingAuditLog,
    OnboardingInstance,
    OnboardingResponse,
)
from agencyops.services.roles import ActingContext
from agencyops.utils.crypto import InvalidToken, decrypt_secret, encrypt_secret
from agencyops.utils.helpers import clean_text

logger = logging.getLogger(__name__)

MAX_FIELD_KEY_LENGTH = 100


def _get_instance_for(ctx: ActingContext, instance_id: int) -> OnboardingInstance:
    instance = db.session.get(OnboardingInstance, instance_id)
    if instance is None:
        raise NotFoundError("OnboardingInstance", instance_id)
    if ctx.is_admin:
        return instance
    if ctx.is_client and ctx.acts_for_client(instance.client_id):
        return instance
    # Hide existence from other clients and collaborators
    raise NotFoundError("OnboardingInstance", instance_id)


def _write_access_audit(instance_id: int, field_key: str, action: str, user_id) -> OnboardingAuditLog:
    entry = OnboardingAuditLog(
        instance_id=instance_id,
        field_key=field_key,
        action=action,
        user_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def open_instance(ctx: ActingContext, client_id: int) -> OnboardingInstance:
    """Return the client's in-progress questionnaire, creating it if needed."""
    if not (ctx.is_admin or (ctx.is_client and ctx.acts_for_client(client_id))):
        raise AuthorizationError("onboarding is opened by an admin or the client")
    if db.session.get(Client, client_id) is None:
        raise NotFoundError("Client", client_id)

    instance = OnboardingInstance.query.filter_by(client_id=client_id, status="in_progress").first()
    if instance is not None:
        return instance
    try:
        instance = OnboardingInstance(client_id=client_id, status="in_progress")
        db.session.add(instance)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Onboarding opened: instance=%s client=%s", instance.id, client_id)
    return instance


def store_response(ctx: ActingContext, instance_id: int, field_key: str, section,
                   value, is_sensitive: bool) -> OnboardingResponse:
    """Upsert one answer. Sensitive values are stored as ciphertext only."""
    instance = _get_instance_for(ctx, instance_id)

    field_key = clean_text(field_key)
    if not field_key or len(field_key) > MAX_FIELD_KEY_LENGTH:
        raise ValidationError("field_key is required", details={"field_key": "required"})
    value = "" if value is None else str(value)

    stored_value = value
    if is_sensitive and value:
        try:
            stored_value = encrypt_secret(value)
        except (RuntimeError, ValueError) as exc:
            logger.error("Vault encryption unavailable for instance=%s field=%s: %s",
                         instance.id, field_key, type(exc).__name__)
            raise DependencyFailure("vault") from exc

    try:
        response = OnboardingResponse.query.filter_by(
            instance_id=instance.id, field_key=field_key
        ).first()
        if response is None:
            response = OnboardingResponse(instance_id=instance.id, field_key=field_key)
            db.session.add(response)
        response.section = clean_text(section) or None
        response.value = stored_value
        response.is_sensitive = bool(is_sensitive)

        if is_sensitive:
            _write_access_audit(instance.id, field_key, "encrypt_sensitive", ctx.subject_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info("Onboarding response stored: instance=%s field=%s sensitive=%s",
                instance.id, field_key, bool(is_sensitive))
    return response


def list_responses(ctx: ActingContext, instance_id: int) -> list[dict]:
    """All answers of an instance; sensitive values are masked."""
    instance = _get_instance_for(ctx, instance_id)
    rows = (
        OnboardingResponse.query
        .filter_by(instance_id=instance.id)
        .order_by(OnboardingResponse.section, OnboardingResponse.field_key)
        .all()
    )
    return [r.to_dict() for r in rows]


def decrypt_sensitive_field(ctx: ActingContext, instance_id: int, field_key: str) -> dict:
    """Reveal one answer to an admin.

    Returns ``{"value", "encrypted"}``. Non-sensitive answers are returned
    as stored and are not audited. A sensitive reveal commits exactly one
    ``decrypt_sensitive_view`` audit row.
    """
    if not ctx.is_admin:
        logger.warning("Decrypt denied: subject=%s role=%s instance=%s field=%s",
                       ctx.subject_id, ctx.role.value, instance_id, field_key)
        raise AuthorizationError("decrypt requires admin")

    response = OnboardingResponse.query.filter_by(
        instance_id=instance_id, field_key=field_key
    ).first()
    if response is None:
        raise NotFoundError("OnboardingResponse", f"{instance_id}/{field_key}")

    if not response.is_sensitive:
        return {"value": response.value, "encrypted": False}

    try:
        _write_access_audit(instance_id, field_key, "decrypt_sensitive_view", ctx.subject_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Decrypt refused, audit write failed: instance=%s field=%s",
                     instance_id, field_key)
        raise DependencyFailure("audit_log") from exc

    try:
        plaintext = decrypt_secret(response.value) if response.value else ""
    except (InvalidToken, RuntimeError, ValueError) as exc:
        db.session.rollback()
        logger.error("Decrypt failed: instance=%s field=%s error=%s",
                     instance_id, field_key, type(exc).__name__)
        raise DependencyFailure("vault", "Could not decrypt the value; it may be corrupted") from exc

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise DependencyFailure("audit_log") from exc

    logger.info("Sensitive field revealed: instance=%s field=%s by subject=%s",
                instance_id, field_key, ctx.subject_id)
    return {"value": plaintext, "encrypted": True}
