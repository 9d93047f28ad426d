"""Helpers for reading Stripe payloads that may be StripeObjects or plain dicts"""
from typing import Any, Dict, Optional


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


def get_stripe_id(obj: Any) -> Optional[str]:
    """Return the id of an expandable field: either the id string itself or an object's id"""
    if isinstance(obj, str):
        return obj or None
    value = get_stripe_value(obj, "id")
    return value if isinstance(value, str) and value else None


def as_plain_dict(obj: Any) -> Dict[str, Any]:
    """Dict copy of a Stripe object or mapping; anything else becomes {}"""
    if isinstance(obj, dict):
        return dict(obj)
    # Newer StripeObjects are not dict subclasses but expose to_dict()
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        converted = to_dict()
        if isinstance(converted, dict):
            return dict(converted)
    return {}
