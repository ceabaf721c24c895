# classes/payment_service.py

import json

import stripe
from sqlalchemy import select

from classes import settings
from classes.app_config import CURRENCY, get_plan, plan_for_interval
from classes.auth import AuthUser
from classes.base_utils import ApiError, BaseUtils, mask_email, utcnow
from classes.entities import Profile
from classes.payment_event_recorder import record_stripe_event, was_processed
from classes.promo_service import PromoService
from classes.settings import logger


def profile_to_status(profile: Profile) -> dict:
    return {
        "is_paid": profile.is_paid,
        "subscription_plan": profile.subscription_plan,
        "is_active": profile.is_active,
        "stripe_customer_id": profile.stripe_customer_id,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
    }


class PaymentService(BaseUtils):
    def __init__(self, session_factory):
        self.SessionFactory = session_factory
        self.promos = PromoService(session_factory)

    def _stripe(self):
        if not settings.STRIPE_SECRET_KEY:
            logger.error("[stripe] STRIPE_SECRET_KEY not configured")
            raise ApiError(500, "STRIPE_SECRET_KEY is not set", "MISSING_ENV")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        return stripe

    # -----------------------
    # Checkout
    # -----------------------

    def create_checkout_session(self, email, plan="monthly", user_id=None, promo_code=None) -> dict:
        client = self._stripe()

        if not isinstance(email, str) or not email.strip():
            raise ApiError(400, "Valid email address is required", "MISSING_EMAIL")
        email = email.strip()
        plan = (plan or "monthly").lower()
        plan_cfg = get_plan(plan)
        if plan_cfg is None:
            raise ApiError(400, "Invalid plan selected", "VALIDATION_ERROR")

        discount = self.promos.discount_for(promo_code) if promo_code else 0
        logger.info(f"[create-checkout-session] Creating session for {mask_email(email)} plan={plan} promo={bool(promo_code)}")

        session_config = {
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": {
                        "name": f"{settings.APP_NAME} - {plan_cfg.get('label', plan.capitalize())}",
                        "description": f"{plan_cfg.get('label', plan.capitalize())} subscription to {settings.APP_NAME}",
                    },
                    "recurring": {"interval": plan_cfg["interval"]},
                    "unit_amount": int(plan_cfg["amount"]),
                },
                "quantity": 1,
            }],
            "mode": "subscription",
            "customer_email": email,
            "client_reference_id": user_id or None,
            "success_url": (
                f"{settings.SITE_URL}/payment-success.html?session_id={{CHECKOUT_SESSION_ID}}"
                f"&checkout=success&user_id={user_id or ''}"
            ),
            "cancel_url": f"{settings.SITE_URL}/register.html?payment=cancelled",
            "metadata": {
                "user_email": email,
                "user_id": user_id or "",
                "plan": plan,
                "promo_code": (promo_code or "").upper(),
                "discount_applied": str(discount),
            },
        }

        try:
            if discount > 0:
                coupon = client.Coupon.create(
                    percent_off=discount,
                    duration="once",
                    name=f"{str(promo_code).upper()} - {discount}% off",
                )
                session_config["discounts"] = [{"coupon": coupon["id"]}]
            if not session_config["client_reference_id"]:
                del session_config["client_reference_id"]

            checkout = client.checkout.Session.create(**session_config)
        except stripe.InvalidRequestError as e:
            logger.error(f"[create-checkout-session] Stripe rejected request: {e}")
            raise ApiError(400, f"Payment processing error: {e.user_message or e}", "STRIPE_ERROR") from e
        except stripe.StripeError as e:
            logger.error(f"[create-checkout-session] Stripe error: {e}")
            raise ApiError(500, "Failed to create checkout session", "INTERNAL_ERROR") from e

        logger.info(f"[create-checkout-session] Checkout session created: {checkout['id']}")
        return {"url": checkout["url"], "id": checkout["id"]}

    def verify_checkout_session(self, user: AuthUser, session_id) -> dict:
        if not session_id:
            raise ApiError(400, "session_id is required", "validation_error")
        client = self._stripe()
        try:
            checkout = client.checkout.Session.retrieve(str(session_id)).to_dict()
        except stripe.InvalidRequestError as e:
            raise ApiError(404, "Checkout session not found", "not_found") from e

        metadata = dict(checkout.get("metadata") or {})
        owner_id = metadata.get("user_id") or checkout.get("client_reference_id")
        owner_email = (metadata.get("user_email") or checkout.get("customer_email") or "").lower()
        if owner_id != user.id and owner_email != user.email:
            raise ApiError(403, "Checkout session belongs to another user", "forbidden")

        if checkout.get("status") != "complete" or checkout.get("payment_status") != "paid":
            raise ApiError(400, "Payment not successful", "payment_incomplete")

        session = self._session()
        try:
            profile = self._activate_profile(
                session,
                user_id=user.id,
                email=user.email,
                plan=metadata.get("plan") or "monthly",
                customer_id=checkout.get("customer"),
                subscription_id=checkout.get("subscription"),
            )
            session.commit()
            return {"success": True, "hasPaid": True, "paymentStatus": profile_to_status(profile)}
        finally:
            session.close()

    # -----------------------
    # Profiles
    # -----------------------

    def check_payment_status(self, user: AuthUser) -> dict:
        session = self._session()
        try:
            profile = session.get(Profile, user.id)
        finally:
            session.close()

        if profile is None:
            return {
                "hasPaid": False,
                "needsRegistration": True,
                "message": "User needs to register and make payment",
            }
        return {
            "hasPaid": profile.has_paid,
            "needsRegistration": False,
            "paymentStatus": profile_to_status(profile),
        }

    def ensure_profile(self, user: AuthUser) -> dict:
        session = self._session()
        try:
            profile = session.get(Profile, user.id)
            if profile is not None:
                return {"success": True, "message": "Profile already exists", "profileExists": True}

            profile = Profile(id=user.id, email=user.email, is_paid=False, is_active=False)
            if settings.IS_DEV:
                profile.is_paid = True
                profile.is_active = True
                profile.subscription_plan = "development"
                profile.stripe_customer_id = f"dev_{user.id[:8]}"
                profile.payment_date = utcnow()
            session.add(profile)
            session.commit()
            logger.info(f"Profile created for {mask_email(user.email)}")
            return {
                "success": True,
                "message": "Profile created successfully",
                "profile": {"id": profile.id, "email": profile.email, **profile_to_status(profile)},
                "profileExists": False,
            }
        finally:
            session.close()

    def _activate_profile(self, session, *, user_id=None, email=None, plan=None,
                          customer_id=None, subscription_id=None) -> Profile | None:
        email = (email or "").strip().lower() or None
        profile = session.get(Profile, str(user_id)) if user_id else None
        if profile is None and email:
            profile = session.scalars(select(Profile).where(Profile.email == email)).first()
        if profile is None:
            if not user_id or not email:
                logger.warning(f"No profile to activate for {mask_email(email)}")
                return None
            profile = Profile(id=str(user_id), email=email)
            session.add(profile)

        profile.is_paid = True
        profile.is_active = True
        profile.subscription_plan = plan or profile.subscription_plan
        profile.stripe_customer_id = customer_id or profile.stripe_customer_id
        profile.stripe_subscription_id = subscription_id or profile.stripe_subscription_id
        profile.payment_date = utcnow()
        return profile

    def _update_by_customer(self, session, customer_id, **fields) -> int:
        if not customer_id:
            return 0
        rows = session.scalars(select(Profile).where(Profile.stripe_customer_id == str(customer_id))).all()
        for profile in rows:
            for k, v in fields.items():
                setattr(profile, k, v)
        return len(rows)

    # -----------------------
    # Webhook
    # -----------------------

    def handle_webhook(self, payload: bytes, signature: str | None) -> dict:
        try:
            stripe.Webhook.construct_event(payload, signature or "", settings.STRIPE_WEBHOOK_SECRET)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise ApiError(400, f"Webhook Error: {e}", "invalid_signature") from e

        event = json.loads(payload)
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_id and was_processed(self.SessionFactory, event_id):
            logger.info(f"Webhook {event_id} already processed")
            return {"received": True, "duplicate": True}

        session = self._session()
        try:
            if event_type == "checkout.session.completed":
                self._on_checkout_completed(session, obj)
            elif event_type == "customer.subscription.updated":
                self._on_subscription_updated(session, obj)
            elif event_type == "customer.subscription.deleted":
                count = self._update_by_customer(session, obj.get("customer"), is_active=False, is_paid=False)
                logger.info(f"Deactivated {count} profile(s) for customer {obj.get('customer')}")
            elif event_type == "invoice.payment_succeeded":
                count = self._update_by_customer(session, obj.get("customer"), is_active=True, is_paid=True)
                logger.info(f"Activated {count} profile(s) after payment for customer {obj.get('customer')}")
            elif event_type == "invoice.payment_failed":
                logger.warning(f"Payment failed for customer {obj.get('customer')}")
            else:
                logger.info(f"Unhandled event type: {event_type}")
            session.commit()
        except Exception as e:
            session.rollback()
            logger.exception(f"Webhook handler error for {event_type}")
            if event_id:
                record_stripe_event(self.SessionFactory, event_id=event_id, event_type=event_type or "",
                                    status="FAILED", error_message=str(e))
            raise ApiError(500, "Webhook handler failed", "webhook_failed") from e
        finally:
            session.close()

        if event_id:
            record_stripe_event(self.SessionFactory, event_id=event_id, event_type=event_type or "")
        return {"received": True}

    def _on_checkout_completed(self, session, checkout: dict) -> None:
        metadata = checkout.get("metadata") or {}
        email = metadata.get("user_email") or checkout.get("customer_email") \
            or (checkout.get("customer_details") or {}).get("email")
        user_id = metadata.get("user_id") or checkout.get("client_reference_id")
        if not email and not user_id:
            raise ValueError("Missing user_email and user_id in checkout session")

        profile = self._activate_profile(
            session,
            user_id=user_id,
            email=email,
            plan=metadata.get("plan") or "monthly",
            customer_id=checkout.get("customer"),
            subscription_id=checkout.get("subscription"),
        )
        if profile is not None:
            logger.info(f"Checkout completed, profile {profile.id} activated")

    def _on_subscription_updated(self, session, subscription: dict) -> None:
        items = (subscription.get("items") or {}).get("data") or []
        interval = None
        if items:
            interval = ((items[0].get("price") or {}).get("recurring") or {}).get("interval")
        is_active = subscription.get("status") == "active"
        count = self._update_by_customer(
            session,
            subscription.get("customer"),
            is_active=is_active,
            is_paid=is_active,
            subscription_plan=plan_for_interval(interval),
        )
        logger.info(f"Subscription {subscription.get('id')} status={subscription.get('status')} updated {count} profile(s)")
