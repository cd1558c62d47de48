"""Keep the local user table in step with the external identity provider."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from claimflow import db
from claimflow.exceptions import UserNotFound, ValidationError
from claimflow.models import User, UserRole
from claimflow.utils.helpers import utcnow
from claimflow.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

LOGIN_REFRESH_INTERVAL = timedelta(minutes=5)

# claim name -> User attribute
PROFILE_CLAIMS = {
    "employee_id": "employee_id",
    "department": "department",
    "position": "title",
}


def _claim(claims: Mapping[str, Any], name: str) -> Optional[str]:
    value = claims.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _role_from_claims(claims: Mapping[str, Any]) -> Optional[UserRole]:
    raw = _claim(claims, "user_type") or _claim(claims, "role")
    if raw is None:
        return None
    try:
        return UserRole[raw.upper()]
    except KeyError:
        logger.warning("Ignoring unknown role claim %r", raw)
        return None


def _apply_claims(user: User, claims: Mapping[str, Any], external_id: Optional[str]) -> bool:
    changed = False

    name = _claim(claims, "name") or _claim(claims, "preferred_username")
    if name and name != user.name:
        user.name = name
        changed = True

    for claim_name, attribute in PROFILE_CLAIMS.items():
        value = _claim(claims, claim_name)
        if value and value != getattr(user, attribute):
            setattr(user, attribute, value)
            changed = True

    role = _role_from_claims(claims)
    if role is not None and role != user.role:
        user.role = role
        changed = True

    if external_id and external_id != user.external_id:
        user.external_id = external_id
        changed = True

    return changed


def _upsert(email: str, external_id: Optional[str], claims: Mapping[str, Any]) -> User:
    user = User.find_by_email(email)
    if user is None and external_id:
        user = User.find_by_external_id(external_id)
    if user is None:
        logger.info("Creating local user for %s", email)
        user = User(email=email, name=email, role=UserRole.EMPLOYEE, is_active=True)
        db.session.add(user)

    changed = _apply_claims(user, claims, external_id)

    # Skip the login stamp inside the refresh window to avoid needless version bumps.
    now = utcnow()
    if changed or user.last_login_at is None or user.last_login_at < now - LOGIN_REFRESH_INTERVAL:
        user.last_login_at = now
        user.updated_at = now

    db.session.commit()
    return user


def sync_identity(claims: Mapping[str, Any], max_attempts: Optional[int] = None) -> User:
    """Create or update the local user described by identity-provider claims.

    Users are matched by email first, then by the provider subject id. Version
    conflicts with concurrent logins are retried with a growing delay; once
    retries run out the stored record is returned unmodified.
    """
    email = _claim(claims, "email")
    if email is None:
        raise ValidationError("Identity claims carry no email address.", details={"field": "email"})
    external_id = _claim(claims, "sub")

    if max_attempts is None:
        max_attempts = current_app.config.get("IDENTITY_SYNC_MAX_ATTEMPTS", 3)

    def rollback(_exc: BaseException) -> None:
        db.session.rollback()

    def stored_user() -> User:
        user = User.find_by_email(email)
        if user is None:
            raise UserNotFound(email)
        return user

    return retry_on_conflict(
        lambda: _upsert(email, external_id, claims),
        conflicts=(StaleDataError,),
        max_attempts=max_attempts,
        on_conflict=rollback,
        on_exhausted=stored_user,
    )
