# classes/public_config.py

from classes import settings
from classes.app_config import CURRENCY, PLANS

CACHE_CONTROL = "public, max-age=300"

FEATURES = {
    "STRICT_PAYMENT_ENFORCEMENT": True,
    "DEBUG_AUTH": False,
    "AUTO_LOGOUT_UNPAID": True,
    "SESSION_MONITORING": True,
}


def _pricing() -> dict:
    pricing = {}
    for plan_id, plan in PLANS.items():
        entry = {
            "amount": int(plan.get("amount", 0)) / 100,
            "currency": CURRENCY.upper(),
            "interval": plan.get("interval"),
            "plan_id": plan_id,
        }
        if plan.get("savings") is not None:
            entry["savings"] = plan["savings"]
        pricing[plan_id.upper()] = entry
    return pricing


def get_public_config() -> dict:
    """Browser-safe settings only; never secret keys."""
    return {
        "SUPABASE_URL": settings.SUPABASE_URL,
        "SUPABASE_ANON_KEY": settings.SUPABASE_ANON_KEY,
        "STRIPE_PUBLISHABLE_KEY": settings.STRIPE_PUBLISHABLE_KEY,
        "APP_NAME": settings.APP_NAME,
        "VERSION": settings.APP_VERSION,
        "API_BASE": "/api",
        "PAYMENT_FIRST": True,
        "FEATURES": dict(FEATURES),
        "PRICING": _pricing(),
    }
