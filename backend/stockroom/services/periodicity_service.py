# Overview: Return obligations; classifies held items against configured holding limits.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from flask import current_app, has_app_context

from ..extensions import db
from ..models import CollaboratorPeriodicity, Product
from stockroom.time_utils import normalize_datetime, to_utc_z, utcnow, whole_days_between
from .possession_service import possession_for, possession_summary

DEFAULT_WARNING_DAYS = 5


class DueState(str, Enum):
    ON_TIME = "on_time"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class ReturnObligation:
    collaborator_code: str
    product: Product
    quantity: float
    first_withdrawal_at: datetime
    days_held: int
    max_days: int
    due_state: DueState

    @property
    def days_remaining(self) -> int:
        return self.max_days - self.days_held

    def to_dict(self) -> dict:
        return {
            "collaborator_code": self.collaborator_code,
            "product_id": self.product.id,
            "product_name": self.product.name,
            "quantity": self.quantity,
            "first_withdrawal_at": to_utc_z(self.first_withdrawal_at),
            "days_held": self.days_held,
            "max_days": self.max_days,
            "days_remaining": self.days_remaining,
            "due_state": self.due_state.value,
        }


def classify(days_held: int, max_days: int, warning_days: int) -> DueState:
    if days_held >= max_days:
        return DueState.OVERDUE
    if days_held >= max_days - warning_days:
        return DueState.DUE_SOON
    return DueState.ON_TIME


def _warning_days(value) -> int:
    if value is not None:
        return int(value)
    if has_app_context():
        return int(current_app.config.get("DUE_SOON_WINDOW_DAYS", DEFAULT_WARNING_DAYS))
    return DEFAULT_WARNING_DAYS


def _limits(collaborator_code: str | None = None) -> dict[tuple[str, str], int]:
    q = db.session.query(CollaboratorPeriodicity).filter(CollaboratorPeriodicity.is_active.is_(True))
    if collaborator_code is not None:
        q = q.filter(CollaboratorPeriodicity.collaborator_code == collaborator_code)
    return {(p.collaborator_code, p.product_id): p.max_days for p in q.all()}


def _obligations(code, items, limits, now, warning) -> list[ReturnObligation]:
    out = []
    for item in items:
        max_days = limits.get((code, item.product.id))
        if max_days is None:
            continue
        days = whole_days_between(item.first_withdrawal_at, now)
        out.append(
            ReturnObligation(
                collaborator_code=code,
                product=item.product,
                quantity=item.quantity,
                first_withdrawal_at=item.first_withdrawal_at,
                days_held=days,
                max_days=max_days,
                due_state=classify(days, max_days, warning),
            )
        )
    return out


def overdue_items(
    collaborator_code: str,
    *,
    now: datetime | None = None,
    warning_days: int | None = None,
) -> list[ReturnObligation]:
    """
    Obligations for every held item that has an active periodicity.

    Pairs without a periodicity are not tracked. `now` defaults to the
    current UTC time.
    """
    now = normalize_datetime(now) if now is not None else utcnow()
    return _obligations(
        collaborator_code,
        possession_for(collaborator_code),
        _limits(collaborator_code),
        now,
        _warning_days(warning_days),
    )


def all_obligations(
    *,
    now: datetime | None = None,
    states=None,
    warning_days: int | None = None,
) -> list[ReturnObligation]:
    """Obligations across collaborators, most urgent first."""
    now = normalize_datetime(now) if now is not None else utcnow()
    warning = _warning_days(warning_days)
    limits = _limits()
    wanted = {DueState(s) for s in states} if states else None

    out = []
    for code, items in possession_summary().items():
        for obligation in _obligations(code, items, limits, now, warning):
            if wanted is None or obligation.due_state in wanted:
                out.append(obligation)
    out.sort(key=lambda o: (o.days_remaining, o.collaborator_code))
    return out
