"""Convert engine dataclasses to JSON-safe dicts.

Decimals are rendered with str() so no precision is lost on the wire.
"""

from dataclasses import fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from invest.models import Change, Holding, PortfolioSnapshot


def to_json(obj: Any) -> Any:
    """Recursively convert Decimal, datetime, Enum and dataclass values."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Holding):
        return holding_to_dict(obj)
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_json(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, dict):
        return {k: to_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json(item) for item in obj]
    return obj


def holding_to_dict(holding: Holding) -> dict:
    return {
        "instrument_id": holding.instrument_id,
        "shares": str(holding.shares),
        "total_cost": str(holding.total_cost),
        "average_cost": str(holding.average_cost),
    }


def change_to_dict(change: Change) -> dict:
    return {
        "absolute": str(change.absolute),
        "percent": str(change.percent),
        "is_positive": change.is_positive,
    }


def snapshot_to_dict(snapshot: PortfolioSnapshot) -> dict:
    return {
        "cash_balance": str(snapshot.cash_balance),
        "version": snapshot.version,
        "holdings": [
            holding_to_dict(h)
            for _, h in sorted(snapshot.holdings.items())
        ],
    }
