from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_transactions
from models import RecurringTemplateRecord, TransactionRecord, TransactionType
from recurrence import (
    Materialization,
    RecurringTemplate,
    TransactionInstance,
    create_template,
    is_due,
    local_today,
    materialize_if_due,
    monthly_equivalent,
)
from schemas import RecurringTemplateIn


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def _is_duplicate_occurrence(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    # SQLite names the columns, PostgreSQL names the constraint.
    return "uq_txn_origin_template_date" in message or (
        "UNIQUE constraint failed" in message
        and "transactions.origin_template_id" in message
    )


def to_template(record: RecurringTemplateRecord) -> RecurringTemplate:
    return RecurringTemplate(
        id=record.id,
        title=record.title,
        amount=Decimal(record.amount),
        category=record.category,
        type=record.type,
        frequency=record.frequency,
        anchor_date=record.anchor_date,
        next_due_date=record.next_due_date,
        icon=record.icon,
        color=record.color,
    )


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, template_id: int) -> RecurringTemplateRecord:
        record = self.session.get(RecurringTemplateRecord, template_id)
        if not record or record.user_id != self.user_id:
            raise ValueError("Template not found")
        return record

    def load(self, template_id: int) -> RecurringTemplate:
        return to_template(self.get(template_id))

    def list(self, active_only: bool = False) -> list[RecurringTemplateRecord]:
        stmt = select(RecurringTemplateRecord).where(
            RecurringTemplateRecord.user_id == self.user_id
        )
        if active_only:
            stmt = stmt.where(RecurringTemplateRecord.active.is_(True))
        stmt = stmt.order_by(
            RecurringTemplateRecord.next_due_date, RecurringTemplateRecord.id
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringTemplateIn) -> RecurringTemplateRecord:
        template = create_template(
            title=data.title,
            amount=data.amount,
            category=data.category,
            type=data.type,
            frequency=data.frequency,
            anchor_date=data.anchor_date,
        )
        record = RecurringTemplateRecord(
            user_id=self.user_id,
            title=template.title,
            amount=template.amount,
            category=template.category,
            type=template.type,
            frequency=template.frequency,
            anchor_date=template.anchor_date,
            next_due_date=template.next_due_date,
            icon=template.icon,
            color=template.color,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        logger.info(
            f"template_created: id={record.id} frequency={record.frequency.value} "
            f"next_due_date={record.next_due_date}"
        )
        return record

    def save(self, template: RecurringTemplate, expected_next_due_date: date) -> bool:
        """Advance the stored template only if nobody advanced it first."""
        result = self.session.execute(
            update(RecurringTemplateRecord)
            .where(
                RecurringTemplateRecord.id == template.id,
                RecurringTemplateRecord.user_id == self.user_id,
                RecurringTemplateRecord.next_due_date == expected_next_due_date,
            )
            .values(
                next_due_date=template.next_due_date,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    def insert(
        self, instance: TransactionInstance, template_id: Optional[int]
    ) -> TransactionRecord:
        txn = TransactionRecord(
            user_id=self.user_id,
            title=instance.title,
            amount=instance.amount,
            category=instance.category,
            type=instance.type,
            icon=instance.icon,
            color=instance.color,
            date=instance.date,
            is_recurring=instance.is_recurring,
            origin_template_id=template_id,
        )
        self.session.add(txn)
        self.session.flush()
        return txn

    def _instance_exists(self, template_id: int, on_date: date) -> bool:
        stmt = (
            select(TransactionRecord.id)
            .where(
                TransactionRecord.origin_template_id == template_id,
                TransactionRecord.date == on_date,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def apply(
        self, previous: RecurringTemplate, result: Materialization
    ) -> Optional[TransactionRecord]:
        """Persist one materialization atomically.

        Returns the new transaction, or None when the occurrence was already
        taken by another writer. Raises LookupError when the template moved
        on and the caller should stop; other integrity errors propagate.
        """
        template_id = previous.id
        try:
            if not self.save(result.updated_template, previous.next_due_date):
                self.session.rollback()
                raise LookupError(
                    f"Template {template_id} was advanced past {previous.next_due_date}"
                )
            if self._instance_exists(template_id, result.instance.date):
                self.session.commit()
                logger.info(
                    f"materialize_skipped: template_id={template_id} "
                    f"date={result.instance.date} reason=exists"
                )
                return None
            txn = self.insert(result.instance, template_id)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if not _is_duplicate_occurrence(exc):
                logger.error(
                    f"materialize_failed: template_id={template_id} "
                    f"date={result.instance.date} error={exc.orig}"
                )
                raise
            logger.warning(
                f"materialize_conflict: template_id={template_id} "
                f"date={result.instance.date}"
            )
            raise LookupError(
                f"Occurrence {result.instance.date} of template {template_id} "
                "already exists"
            ) from exc
        logger.info(
            f"materialized: template_id={template_id} date={txn.date} "
            f"next_due_date={result.updated_template.next_due_date}"
        )
        return txn

    def materialize_due(
        self, template_id: int, as_of: Optional[date] = None
    ) -> list[TransactionRecord]:
        as_of = as_of or local_today()
        template = self.load(template_id)
        max_steps = get_settings().max_catch_up
        created: list[TransactionRecord] = []
        steps = 0
        while steps < max_steps:
            result = materialize_if_due(template, as_of)
            if result is None:
                break
            try:
                txn = self.apply(template, result)
            except LookupError as exc:
                logger.warning(f"materialize_stopped: {exc}")
                break
            if txn is not None:
                created.append(txn)
            template = result.updated_template
            steps += 1
        if steps >= max_steps and is_due(template, as_of):
            logger.warning(
                f"materialize_limit: template_id={template_id} steps={steps} "
                f"next_due_date={template.next_due_date}"
            )
        return created

    def catch_up_all(self, as_of: Optional[date] = None) -> int:
        as_of = as_of or local_today()
        stmt = (
            select(RecurringTemplateRecord.id)
            .where(
                RecurringTemplateRecord.user_id == self.user_id,
                RecurringTemplateRecord.active.is_(True),
                RecurringTemplateRecord.next_due_date <= as_of,
            )
            .order_by(RecurringTemplateRecord.next_due_date)
        )
        template_ids = list(self.session.scalars(stmt).all())
        count = 0
        for template_id in template_ids:
            try:
                count += len(self.materialize_due(template_id, as_of))
            except IntegrityError:
                logger.exception(f"catch_up_failed: template_id={template_id}")
        return count

    def set_active(self, template_id: int, active: bool) -> RecurringTemplateRecord:
        record = self.get(template_id)
        record.active = active
        self.session.commit()
        return record

    def delete(self, template_id: int) -> None:
        record = self.get(template_id)
        self.session.delete(record)
        self.session.commit()

    def summary(self) -> dict[str, object]:
        income = Decimal("0")
        expenses = Decimal("0")
        income_count = 0
        expense_count = 0
        for record in self.list(active_only=True):
            monthly = monthly_equivalent(to_template(record))
            if record.type == TransactionType.income:
                income += monthly
                income_count += 1
            else:
                expenses += monthly
                expense_count += 1
        return {
            "total_monthly_income": income,
            "total_monthly_expenses": expenses,
            "net_monthly": income - expenses,
            "template_counts": {
                "income": income_count,
                "expense": expense_count,
                "total": income_count + expense_count,
            },
        }


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[TransactionRecord]:
        if start and end and start > end:
            raise ValueError("Start date must be before end date")
        stmt = select(TransactionRecord).where(
            TransactionRecord.user_id == self.user_id
        )
        if start:
            stmt = stmt.where(TransactionRecord.date >= start)
        if end:
            stmt = stmt.where(TransactionRecord.date <= end)
        stmt = stmt.order_by(TransactionRecord.date, TransactionRecord.id)
        return list(self.session.scalars(stmt).all())

    def export_csv(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> str:
        return export_transactions(self.list(start, end))
