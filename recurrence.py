from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union
from zoneinfo import ZoneInfo

from categories import category_style
from config import get_settings
from models import Frequency, TransactionType


class ValidationError(ValueError):
    pass


class InvalidFrequency(ValidationError):
    pass


@dataclass(frozen=True)
class RecurringTemplate:
    title: str
    amount: Decimal
    category: str
    type: TransactionType
    frequency: Frequency
    anchor_date: date
    next_due_date: date
    icon: str
    color: str
    id: Optional[int] = None


@dataclass(frozen=True)
class TransactionInstance:
    title: str
    amount: Decimal
    category: str
    type: TransactionType
    icon: str
    color: str
    date: date
    is_recurring: bool = False


@dataclass(frozen=True)
class Materialization:
    instance: TransactionInstance
    updated_template: RecurringTemplate


_MAX_AMOUNT = Decimal("1e10")

DateLike = Union[date, datetime, str]

# Average month lengths used to normalize amounts for summaries.
_MONTHLY_FACTORS = {
    Frequency.daily: Decimal("30.44"),
    Frequency.weekly: Decimal("4.35"),
    Frequency.monthly: Decimal("1"),
    Frequency.yearly: Decimal("1") / Decimal("12"),
}


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Clamp to the last day of shorter months: Jan 31 -> Feb 28/29.
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def _as_date(value: DateLike, field: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"Invalid {field}: {value!r}") from exc
    raise ValidationError(f"Invalid {field}: {value!r}")


def coerce_frequency(value) -> Frequency:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidFrequency(f"Unsupported frequency: {value!r}") from exc


def _coerce_amount(value) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Invalid amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    if abs(amount) >= _MAX_AMOUNT:
        raise ValidationError("Amount is too large")
    # Stored as Numeric(12, 2); round here so the template matches the row.
    amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError("Amount must be at least 0.01")
    return amount


def _coerce_type(value) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported transaction type: {value!r}") from exc


def compute_next_due_date(from_date: DateLike, frequency) -> date:
    """Advance ``from_date`` by exactly one period of ``frequency``.

    Monthly and yearly steps clamp to the end of shorter months, so
    2024-01-31 becomes 2024-02-29 and 2024-02-29 plus a year becomes
    2025-02-28. The result only depends on ``from_date``; a clamped day is
    carried into later periods.
    """
    frequency = coerce_frequency(frequency)
    base = _as_date(from_date)
    if frequency == Frequency.daily:
        return base + timedelta(days=1)
    if frequency == Frequency.weekly:
        return base + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return _add_months(base, 1)
    return _add_months(base, 12)


def create_template(
    *,
    title: str,
    amount,
    category: str,
    type: TransactionType,
    frequency,
    anchor_date: DateLike,
) -> RecurringTemplate:
    """Validate user input and build a new template.

    The first due date is one period after ``anchor_date``; the anchor
    itself is never materialized.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title cannot be empty")
    category = (category or "").strip()
    if not category:
        raise ValidationError("Category cannot be empty")
    amount = _coerce_amount(amount)
    type_value = _coerce_type(type)
    frequency = coerce_frequency(frequency)
    anchor = _as_date(anchor_date, "anchor date")

    style = category_style(category)
    return RecurringTemplate(
        title=title,
        amount=amount,
        category=category,
        type=type_value,
        frequency=frequency,
        anchor_date=anchor,
        next_due_date=compute_next_due_date(anchor, frequency),
        icon=style.icon,
        color=style.color,
    )


def is_due(template: RecurringTemplate, as_of: DateLike) -> bool:
    return template.next_due_date <= _as_date(as_of, "as_of")


def materialize_if_due(
    template: RecurringTemplate, as_of: DateLike
) -> Optional[Materialization]:
    """Produce the instance for ``template.next_due_date`` if it has arrived.

    Pure: nothing records that the occurrence was produced. Callers must
    persist ``updated_template`` before calling again or they will get the
    same instance twice.
    """
    if not is_due(template, as_of):
        return None
    due = template.next_due_date
    instance = TransactionInstance(
        title=template.title,
        amount=template.amount,
        category=template.category,
        type=template.type,
        icon=template.icon,
        color=template.color,
        date=due,
    )
    updated = replace(
        template, next_due_date=compute_next_due_date(due, template.frequency)
    )
    return Materialization(instance=instance, updated_template=updated)


def materialize_all_due(
    template: RecurringTemplate, as_of: DateLike, *, limit: Optional[int] = None
) -> tuple[list[TransactionInstance], RecurringTemplate]:
    instances: list[TransactionInstance] = []
    current = template
    while limit is None or len(instances) < limit:
        result = materialize_if_due(current, as_of)
        if result is None:
            break
        instances.append(result.instance)
        current = result.updated_template
    return instances, current


def upcoming_due_dates(template: RecurringTemplate, count: int) -> list[date]:
    dates: list[date] = []
    current = template.next_due_date
    for _ in range(max(count, 0)):
        dates.append(current)
        current = compute_next_due_date(current, template.frequency)
    return dates


def monthly_equivalent(template: RecurringTemplate) -> Decimal:
    factor = _MONTHLY_FACTORS[coerce_frequency(template.frequency)]
    return (Decimal(template.amount) * factor).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
