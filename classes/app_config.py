# classes/app_config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import commentjson

from classes.settings import FLEXICAD_CONFIG_PATH


_REQUIRED_KEYS = (
    "PLANS",
    "GENERATION",
    "MODEL_BASE_PRICE_TABLE",
    "DESIGN_CATEGORIES",
    "COMPLEXITY_INDICATORS",
)


def _load_app_config() -> Dict[str, Any]:
    """
    Load plans, generation parameters and keyword tables from a JSON-with-comments file.
    Fails fast if the file or required top-level keys are missing.
    """
    cfg_path = Path(FLEXICAD_CONFIG_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(
            f"FlexiCAD config file not found at '{cfg_path}'. "
        )

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    for key in _REQUIRED_KEYS:
        if key not in data or not isinstance(data[key], dict):
            raise ValueError(f"FlexiCAD config missing or invalid key: {key}")

    return data


_APP_CONFIG = _load_app_config()
CURRENCY: str = str(_APP_CONFIG.get("CURRENCY", "aud")).lower()
PLANS: Dict[str, Dict[str, Any]] = _APP_CONFIG["PLANS"]
GENERATION: Dict[str, Any] = _APP_CONFIG["GENERATION"]
MODEL_BASE_PRICE_TABLE: Dict[str, Any] = _APP_CONFIG["MODEL_BASE_PRICE_TABLE"]
DESIGN_CATEGORIES: Dict[str, List[str]] = _APP_CONFIG["DESIGN_CATEGORIES"]
COMPLEXITY_INDICATORS: Dict[str, List[str]] = _APP_CONFIG["COMPLEXITY_INDICATORS"]
STOP_WORDS: frozenset[str] = frozenset(w.lower() for w in _APP_CONFIG.get("STOP_WORDS", []))

#! PLANS

def get_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    if not plan_id:
        return None
    plan = PLANS.get(str(plan_id).lower())
    if not plan or int(plan.get("amount", 0)) <= 0:
        return None
    return plan

def plan_for_interval(interval: str | None) -> str:
    """Maps a Stripe recurring interval back to our plan id (monthly by default)."""
    for plan_id, plan in PLANS.items():
        if plan.get("interval") == interval:
            return plan_id
    return "monthly"

#! PRICING API

def _per_million(rate_usd: float, tokens: int) -> float:
    if rate_usd <= 0.0 or tokens <= 0:
        return 0.0
    return rate_usd * (tokens / 1_000_000.0)

def estimate_cost_usd(
    llm_model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    service_tier: str = None,
) -> float:
    """
    Estimate USD cost for a single request, using per-1M-token prices.
    Unknown models cost 0.0 so accounting never blocks a generation.
    """
    pricing = MODEL_BASE_PRICE_TABLE.get(llm_model_name)
    if pricing is None:
        return 0.0

    pricing = pricing.get(service_tier or "default", pricing.get("default", None))
    if not pricing:
        raise ValueError(f"Missing Price Tiers for GPT Model {llm_model_name}")

    in_rate = float(pricing["input_short"])
    out_rate = float(pricing["output_short"])
    return _per_million(in_rate, prompt_tokens) + _per_million(out_rate, completion_tokens)

# !######################################################################################################
#! UTILS
# !######################################################################################################

def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any(str(model_name).startswith(p) for p in prefixes)

def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-4o-mini'
        - 'gpt-5.1_standard'
        - 'gpt-5.1_fast-flex'
        - 'gpt-5.1_low_high'
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError(f"parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high"}
    service_tier_tokens = {"auto", "default", "flex", "priority"}

    wildcards: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
        "standard": ("low", "low", None),
        "std": ("low", "low", None),
        "fast": ("low", "none", None),
        "deep": ("medium", "high", None),
        "standard-flex": ("low", "low", "flex"),
        "fast-flex": ("low", "none", "flex"),
        "standard-priority": ("low", "low", "priority"),
    }

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue

        if t in wildcards:
            w_verb, w_reason, w_tier = wildcards[t]
            if verbosity is None and w_verb is not None:
                verbosity = w_verb
            if reasoning_effort is None and w_reason is not None:
                reasoning_effort = w_reason
            if service_tier is None and w_tier is not None:
                service_tier = w_tier
            continue

        if verbosity is None and t in verbosity_tokens:
            verbosity = t
            continue

        if reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
            continue

        if service_tier is None and t in service_tier_tokens:
            service_tier = t
            continue

        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    params["service_tier"] = service_tier or "default"

    return base, params
