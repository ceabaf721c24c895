# classes/promo_service.py

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from classes.base_utils import ApiError, BaseUtils, utcnow
from classes.entities import PromoCode
from classes.settings import logger


def _parse_expiry(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ApiError(400, "expires_at must be an ISO-8601 timestamp", "validation_error") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _validate_discount(value) -> int:
    try:
        discount = int(value)
    except (TypeError, ValueError) as e:
        raise ApiError(400, "Discount percentage must be between 1 and 100", "validation_error") from e
    if discount < 1 or discount > 100:
        raise ApiError(400, "Discount percentage must be between 1 and 100", "validation_error")
    return discount


def is_expired(promo: PromoCode, now: datetime | None = None) -> bool:
    if promo.expires_at is None:
        return False
    expires_at = promo.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return (now or utcnow()) > expires_at


def promo_to_dict(promo: PromoCode) -> dict:
    return {
        "id": promo.id,
        "code": promo.code,
        "description": promo.description,
        "discount_percent": promo.discount_percent,
        "expires_at": promo.expires_at.isoformat() if promo.expires_at else None,
        "active": promo.active,
        "created_at": promo.created_at.isoformat() if promo.created_at else None,
    }


class PromoService(BaseUtils):
    def __init__(self, session_factory):
        self.SessionFactory = session_factory

    def find_active(self, code: str) -> PromoCode | None:
        session = self._session()
        try:
            return session.scalars(
                select(PromoCode).where(
                    PromoCode.code == str(code).strip().upper(),
                    PromoCode.active.is_(True),
                )
            ).one_or_none()
        finally:
            session.close()

    def validate_promo_code(self, code) -> dict:
        if not code or not str(code).strip():
            raise ApiError(400, "Promo code is required", "validation_error", extra={"valid": False})

        promo = self.find_active(code)
        if promo is None:
            logger.info("Promo code not found or inactive")
            return {"valid": False, "error": "Invalid or expired promo code"}
        if is_expired(promo):
            logger.info(f"Promo code {promo.code} expired")
            return {"valid": False, "error": "This promo code has expired"}

        return {
            "valid": True,
            "code": promo.code,
            "discount_percent": promo.discount_percent,
            "description": promo.description,
        }

    def discount_for(self, code) -> int:
        """
        Discount percent for checkout; raises 400 INVALID_PROMO when unusable.
        """
        promo = self.find_active(code)
        if promo is None:
            raise ApiError(400, "Invalid or expired promo code", "INVALID_PROMO")
        if is_expired(promo):
            raise ApiError(400, "Promo code has expired", "INVALID_PROMO")
        return int(promo.discount_percent)

    # -----------------------
    # Admin CRUD
    # -----------------------

    def list_promo_codes(self) -> dict:
        session = self._session()
        try:
            rows = session.scalars(select(PromoCode).order_by(PromoCode.created_at.desc())).all()
        finally:
            session.close()
        logger.info(f"Retrieved {len(rows)} promo codes")
        return {"success": True, "promoCodes": [promo_to_dict(p) for p in rows]}

    def create_promo_code(self, code, discount_percent, description=None, expires_at=None) -> dict:
        if not code or not discount_percent:
            raise ApiError(400, "Code and discount percentage are required", "validation_error")
        promo = PromoCode(
            code=str(code).strip().upper(),
            description=(description or "").strip() or None,
            discount_percent=_validate_discount(discount_percent),
            expires_at=_parse_expiry(expires_at),
            active=True,
        )

        session = self._session()
        try:
            session.add(promo)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ApiError(409, "Promo code already exists", "duplicate_code") from e
        finally:
            session.close()

        logger.info(f"Created promo code: {promo.code}")
        return {"success": True, "message": "Promo code created successfully", "promoCode": promo_to_dict(promo)}

    def update_promo_code(self, promo_id, fields: dict) -> dict:
        if not promo_id:
            raise ApiError(400, "Promo code ID is required", "validation_error")

        session = self._session()
        try:
            promo = session.get(PromoCode, str(promo_id))
            if promo is None:
                raise ApiError(404, "Promo code not found", "not_found")

            if fields.get("code"):
                promo.code = str(fields["code"]).strip().upper()
            if "description" in fields:
                promo.description = (fields["description"] or "").strip() or None
            if fields.get("discount_percent") is not None:
                promo.discount_percent = _validate_discount(fields["discount_percent"])
            if "expires_at" in fields:
                promo.expires_at = _parse_expiry(fields["expires_at"])
            if fields.get("active") is not None:
                promo.active = bool(fields["active"])

            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ApiError(409, "Promo code already exists", "duplicate_code") from e
            return {"success": True, "message": "Promo code updated successfully", "promoCode": promo_to_dict(promo)}
        finally:
            session.close()

    def delete_promo_code(self, promo_id) -> dict:
        if not promo_id:
            raise ApiError(400, "Promo code ID is required", "validation_error")

        session = self._session()
        try:
            promo = session.get(PromoCode, str(promo_id))
            if promo is None:
                raise ApiError(404, "Promo code not found", "not_found")
            code = promo.code
            session.delete(promo)
            session.commit()
        finally:
            session.close()

        logger.info(f"Deleted promo code: {code}")
        return {"success": True, "message": "Promo code deleted successfully"}
