# classes/auth.py
"""
Bearer-token gate shared by every handler.

A request is authenticated by asking Supabase who owns the access token.
Paid and admin checks then read the caller's profile row.
"""

import re
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy.exc import SQLAlchemyError

from classes.base_utils import ApiError, BaseUtils, mask_email
from classes.entities import AdminEmail, Profile
from classes.settings import ADMIN_EMAILS, DEV_BEARER_TOKEN, IS_DEV, logger

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
_AUTH_HEADERS = ("authorization", "x-authorization", "x-forwarded-authorization")


@dataclass
class AuthUser:
    id: str
    email: str
    is_dev: bool = False


def parse_bearer(headers: Mapping[str, str]) -> str | None:
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    for name in _AUTH_HEADERS:
        raw = (lowered.get(name) or "").strip()
        if not raw:
            continue
        m = _BEARER_RE.match(raw)
        if m:
            return m.group(1).strip() or None
    return None


def admin_allowlist(raw: str | None = None) -> set[str]:
    raw = ADMIN_EMAILS if raw is None else raw
    return {s.strip().lower() for s in re.split(r"[,;\s]+", raw or "") if s.strip()}


def is_admin_email(email: str | None, raw: str | None = None) -> bool:
    return bool(email) and str(email).lower() in admin_allowlist(raw)


class Authenticator(BaseUtils):
    def __init__(self, supabase, session_factory):
        self.supabase = supabase
        self.SessionFactory = session_factory

    def resolve_user(self, token: str | None) -> AuthUser:
        if not token:
            logger.info("require-auth: Missing Authorization bearer token")
            raise ApiError(401, "Authentication required", "auth_required")

        if IS_DEV and DEV_BEARER_TOKEN and token == DEV_BEARER_TOKEN:
            logger.info("require-auth: DEV token accepted")
            return AuthUser(id="dev", email="dev-user@local", is_dev=True)

        try:
            resp = self.supabase.auth.get_user(token)
        except Exception as e:
            logger.info(f"require-auth: Supabase user lookup failed ({e})")
            raise ApiError(401, "Invalid authentication token", "invalid_token") from e

        user = getattr(resp, "user", None)
        if user is None or not getattr(user, "id", None):
            raise ApiError(401, "Invalid authentication token", "invalid_token")

        email = str(getattr(user, "email", "") or "").lower().strip()
        logger.info(f"require-auth: user={mask_email(email)}")
        return AuthUser(id=str(user.id), email=email)

    def get_profile(self, user_id: str) -> Profile | None:
        session = self._session()
        try:
            return session.get(Profile, str(user_id))
        finally:
            session.close()

    def require_paid(self, user: AuthUser) -> Profile | None:
        if user.is_dev:
            return None
        profile = self.get_profile(user.id)
        if profile is None or not profile.has_paid:
            logger.info(f"require-paid: payment required for {mask_email(user.email)}")
            raise ApiError(403, "Payment required", "payment_required")
        return profile

    def is_listed_admin(self, email: str | None) -> bool:
        if not email:
            return False
        session = self._session()
        try:
            return session.get(AdminEmail, str(email).lower()) is not None
        except SQLAlchemyError as e:
            logger.error(f"require-admin: admin_emails lookup failed ({e})")
            return False
        finally:
            session.close()

    def require_admin(self, user: AuthUser) -> AuthUser:
        if user.is_dev:
            return user
        if is_admin_email(user.email) or self.is_listed_admin(user.email):
            return user
        profile = self.get_profile(user.id)
        if profile is not None and profile.is_admin:
            return user
        logger.warning(f"require-admin: Access denied for {mask_email(user.email)}")
        raise ApiError(403, "Admin access required", "admin_required")
