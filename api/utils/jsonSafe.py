# utils/jsonSafe.py
from datetime import date, datetime
from decimal import Decimal
from typing import Any

def jsonSafe(value: Any) -> Any:
    """
    Recursively convert datetimes/dates/decimals/sets into JSON-friendly values
    so settlement payloads can go straight to jsonify() or a socket emit.
    """
    if isinstance(value, datetime):
        # keep timezone info if present
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: jsonSafe(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return [jsonSafe(v) for v in sorted(value)]
    if isinstance(value, (list, tuple)):
        return [jsonSafe(v) for v in value]
    return value
