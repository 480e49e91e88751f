"""
Loyalty rules: points conversion, balance clamping, prepaid card maths and
the dashboard counters. Pure functions, no store access.
"""
import math
import random
import re
from typing import Any, Dict, Iterable, Optional, Union

from schemas import ORDER_ISSUED

# 10 zł spent = 1 point
POINTS_RATE = 10

PURCHASE_NOTE = "Zakup karty"
TOP_UP_NOTE = "Doładowanie (admin)"
DEDUCTION_NOTE = "Korekta / odjęcie (admin)"

Number = Union[int, float]

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_int(value: Any) -> Optional[int]:
    """Leading integer of a number or numeric string ("12 zł" -> 12), None when there is none."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_number(value: Any) -> Number:
    """Coerce to a finite number, 0 for anything missing or invalid."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number) if number.is_integer() else number


def resolve_points(points: Any, amount: Any) -> int:
    """Explicit positive points win, otherwise floor(amount / POINTS_RATE).

    Raises ValueError when the result is not a positive integer.
    """
    pts = parse_int(points)
    if not pts or pts <= 0:
        pts = math.floor(parse_number(amount) / POINTS_RATE)
    if pts <= 0:
        raise ValueError("points must be greater than 0")
    return pts


def normalize_op(op: Any) -> str:
    return "sub" if op == "sub" else "add"


def apply_points(balance: Any, points: int, op: str) -> int:
    delta = -points if op == "sub" else points
    return max(0, (parse_int(balance) or 0) + delta)


def current_balance(card: Dict[str, Any]) -> Number:
    for key in ("balance", "total", "value"):
        if card.get(key) is not None:
            return parse_number(card[key])
    return 0


def adjust_balance(card: Dict[str, Any], delta: Number) -> Number:
    """New balance after applying delta; ValueError if it would go negative."""
    new_balance = current_balance(card) + delta
    if new_balance < 0:
        raise ValueError("balance cannot be negative")
    return new_balance


def default_adjust_note(delta: Number) -> str:
    return TOP_UP_NOTE if delta > 0 else DEDUCTION_NOTE


def generate_card_code() -> str:
    # no uniqueness guarantee, callers only log collisions
    return str(random.randint(100000, 999999))


def is_order_active(order: Dict[str, Any]) -> bool:
    return str(order.get("status") or "").lower() != ORDER_ISSUED.lower()


def summarize(users: Iterable[dict], points_ops: Iterable[dict],
              orders: Iterable[dict], cards: Iterable[dict]) -> Dict[str, int]:
    users = list(users)
    return {
        "users": len(users),
        "pointsTotal": sum(parse_int(u.get("points")) or 0 for u in users),
        # every debit counts, there is no separate redemption record
        "redeems": sum(1 for op in points_ops if op.get("op") == "sub"),
        "ordersActive": sum(1 for o in orders if is_order_active(o)),
        "prepaid": len(list(cards)),
    }
