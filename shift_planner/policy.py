from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from .database import get_active_policy, upsert_policy


LABOR_DEFAULTS: Dict[str, Any] = {
    "max_daily_hours": 12.0,
    "max_weekly_hours": 40.0,
    "enforce_weekly_cap": False,
    "allow_overnight": True,
}

CACHE_DEFAULTS: Dict[str, Any] = {
    "template_ttl_seconds": 10 * 60,
    "pattern_ttl_seconds": 15 * 60,
    "max_entries": 5000,
    "sweep_interval_seconds": 10 * 60,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Default Labor Rules",
    "labor": LABOR_DEFAULTS,
    "cache": CACHE_DEFAULTS,
}


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so the engine always has labor rules to read."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Default Labor Rules")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


def load_active_policy(conn, company_id: Optional[int] = None) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session, company_id)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn, company_id)
    return _normalize_policy(policy.params_dict() if policy else {})


def _normalize_policy(policy: Dict) -> Dict:
    """Fill in defaults and coerce numeric settings so runtime matches code expectations."""
    normalized = copy.deepcopy(policy) if isinstance(policy, dict) else {}
    labor = normalized.get("labor")
    if not isinstance(labor, dict):
        labor = {}
    normalized["labor"] = _deep_update(copy.deepcopy(LABOR_DEFAULTS), labor)
    cache_cfg = normalized.get("cache")
    if not isinstance(cache_cfg, dict):
        cache_cfg = {}
    normalized["cache"] = _deep_update(copy.deepcopy(CACHE_DEFAULTS), cache_cfg)

    labor = normalized["labor"]
    labor["max_daily_hours"] = _as_hours(labor.get("max_daily_hours"), LABOR_DEFAULTS["max_daily_hours"])
    labor["max_weekly_hours"] = _as_hours(labor.get("max_weekly_hours"), LABOR_DEFAULTS["max_weekly_hours"])
    labor["enforce_weekly_cap"] = bool(labor.get("enforce_weekly_cap"))
    labor["allow_overnight"] = bool(labor.get("allow_overnight", True))

    cache_cfg = normalized["cache"]
    for key, default in CACHE_DEFAULTS.items():
        try:
            value = int(cache_cfg.get(key, default))
        except (TypeError, ValueError):
            value = default
        cache_cfg[key] = value if value > 0 else default
    return normalized


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _as_hours(value: Any, default: float) -> Optional[float]:
    # None or 0 switches the cap off.
    if value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return default
    return hours if hours > 0 else None


def labor_rules(policy: Dict) -> Dict[str, Any]:
    labor = policy.get("labor") if isinstance(policy, dict) else None
    if not isinstance(labor, dict):
        return copy.deepcopy(LABOR_DEFAULTS)
    return labor


def cache_settings(policy: Dict) -> Dict[str, Any]:
    cache_cfg = policy.get("cache") if isinstance(policy, dict) else None
    if not isinstance(cache_cfg, dict):
        return copy.deepcopy(CACHE_DEFAULTS)
    return cache_cfg
