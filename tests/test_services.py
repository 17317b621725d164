from datetime import date
from decimal import Decimal
import logging
from dataclasses import replace
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Base
from models import Frequency, RecurringTemplateRecord, TransactionRecord, TransactionType
from recurrence import InvalidFrequency, ValidationError, materialize_if_due
from schemas import RecurringTemplateIn
from services import RecurringTemplateService, TransactionService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _payload(**overrides) -> RecurringTemplateIn:
    data = dict(
        title="Rent",
        amount=Decimal("950.00"),
        category="bills",
        type=TransactionType.expense,
        frequency="monthly",
        anchor_date=date(2024, 1, 15),
    )
    data.update(overrides)
    return RecurringTemplateIn(**data)


def test_create_persists_template_with_next_due_date() -> None:
    with _session() as session:
        record = RecurringTemplateService(session).create(_payload())
        assert record.id is not None
        assert record.next_due_date == date(2024, 2, 15)
        assert record.frequency == Frequency.monthly
        assert (record.icon, record.color) == ("💳", "#ef4444")
        assert record.active is True


def test_create_rejects_invalid_input() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        with pytest.raises(InvalidFrequency):
            service.create(_payload(frequency="fortnightly"))
        with pytest.raises(ValidationError):
            service.create(_payload(amount=Decimal("0")))
        assert service.list() == []


def test_get_missing_template_raises() -> None:
    with _session() as session:
        with pytest.raises(ValueError, match="Template not found"):
            RecurringTemplateService(session).get(42)


def test_get_hides_other_users_templates() -> None:
    with _session() as session:
        record = RecurringTemplateService(session, user_id=2).create(_payload())
        with pytest.raises(ValueError):
            RecurringTemplateService(session, user_id=1).get(record.id)


def test_materialize_due_creates_instances_and_advances() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())

        created = service.materialize_due(record.id, date(2024, 4, 20))

        assert [txn.date for txn in created] == [
            date(2024, 2, 15),
            date(2024, 3, 15),
            date(2024, 4, 15),
        ]
        assert all(txn.is_recurring is False for txn in created)
        assert all(txn.amount == Decimal("950.00") for txn in created)
        assert service.get(record.id).next_due_date == date(2024, 5, 15)


def test_materialize_due_is_idempotent_once_persisted() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        service.materialize_due(record.id, date(2024, 2, 16))
        again = service.materialize_due(record.id, date(2024, 2, 16))

        assert again == []
        count = len(session.scalars(select(TransactionRecord)).all())
        assert count == 1


def test_materialize_due_not_due_creates_nothing() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        assert service.materialize_due(record.id, date(2024, 2, 14)) == []
        assert service.get(record.id).next_due_date == date(2024, 2, 15)


def test_stale_materialization_does_not_duplicate() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        stale = service.load(record.id)

        # Two workers computed the same occurrence from the same snapshot.
        first = materialize_if_due(stale, date(2024, 2, 16))
        second = materialize_if_due(stale, date(2024, 2, 16))

        assert service.apply(stale, first) is not None
        with pytest.raises(LookupError):
            service.apply(stale, second)

        rows = session.scalars(select(TransactionRecord)).all()
        assert [txn.date for txn in rows] == [date(2024, 2, 15)]
        assert service.get(record.id).next_due_date == date(2024, 3, 15)


def test_existing_occurrence_is_skipped_but_template_advances() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        first = materialize_if_due(service.load(record.id), date(2024, 2, 15))
        service.insert(first.instance, record.id)
        session.commit()

        created = service.materialize_due(record.id, date(2024, 2, 20))

        assert created == []
        assert service.get(record.id).next_due_date == date(2024, 3, 15)
        assert len(session.scalars(select(TransactionRecord)).all()) == 1


def test_materialize_due_stops_at_catch_up_limit(monkeypatch) -> None:
    monkeypatch.setattr(
        "services.get_settings", lambda: SimpleNamespace(max_catch_up=3)
    )
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload(frequency="daily"))

        created = service.materialize_due(record.id, date(2024, 12, 31))

        assert len(created) == 3
        assert service.get(record.id).next_due_date == date(2024, 1, 19)


def test_catch_up_all_skips_inactive_templates() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        rent = service.create(_payload())
        salary = service.create(
            _payload(
                title="Salary",
                amount=Decimal("3000"),
                category="salary",
                type=TransactionType.income,
            )
        )
        service.set_active(salary.id, False)

        count = service.catch_up_all(date(2024, 3, 1))

        assert count == 1
        assert service.get(rent.id).next_due_date == date(2024, 3, 15)
        assert service.get(salary.id).next_due_date == date(2024, 2, 15)


def test_delete_keeps_materialized_transactions() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        service.materialize_due(record.id, date(2024, 2, 15))

        service.delete(record.id)

        assert session.get(RecurringTemplateRecord, record.id) is None
        rows = TransactionService(session).list()
        assert len(rows) == 1
        assert rows[0].origin_template_id is None


def test_summary_uses_monthly_equivalents() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        service.create(_payload(amount=Decimal("1200"), frequency="yearly"))
        service.create(
            _payload(
                title="Salary",
                amount=Decimal("3000"),
                category="salary",
                type=TransactionType.income,
            )
        )

        summary = service.summary()

        assert summary["total_monthly_income"] == Decimal("3000.00")
        assert summary["total_monthly_expenses"] == Decimal("100.00")
        assert summary["net_monthly"] == Decimal("2900.00")
        assert summary["template_counts"] == {"income": 1, "expense": 1, "total": 2}


def test_transaction_list_filters_by_date_range() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        service.materialize_due(record.id, date(2024, 5, 15))

        rows = TransactionService(session).list(date(2024, 3, 1), date(2024, 4, 30))

        assert [txn.date for txn in rows] == [date(2024, 3, 15), date(2024, 4, 15)]
        with pytest.raises(ValueError):
            TransactionService(session).list(date(2024, 5, 1), date(2024, 4, 1))


def test_export_csv_sanitizes_titles() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload(title="=HYPERLINK(evil)"))
        service.materialize_due(record.id, date(2024, 2, 15))

        content = TransactionService(session).export_csv()

        lines = content.strip().splitlines()
        assert lines[0] == "Date,Type,Title,Amount,Category"
        assert lines[1] == "2024-02-15,expense,\t=HYPERLINK(evil),950.00,bills"


def test_sub_cent_amount_is_rejected_before_storage() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        with pytest.raises(ValidationError):
            service.create(_payload(amount=Decimal("0.004")))
        assert service.list() == []


def test_stored_amount_matches_engine_amount() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload(amount=Decimal("12.345")))
        session.expire_all()

        assert service.get(record.id).amount == Decimal("12.35")
        assert service.load(record.id).amount == Decimal("12.35")
        created = service.materialize_due(record.id, date(2024, 5, 1))
        assert [txn.amount for txn in created] == [Decimal("12.35")] * 3


def test_non_duplicate_integrity_error_reaches_caller() -> None:
    with _session() as session:
        service = RecurringTemplateService(session)
        record = service.create(_payload())
        template = service.load(record.id)
        result = materialize_if_due(template, date(2024, 2, 15))
        broken = replace(
            result, instance=replace(result.instance, amount=Decimal("0"))
        )

        with pytest.raises(IntegrityError):
            service.apply(template, broken)

        assert service.get(record.id).next_due_date == date(2024, 2, 15)
        assert session.scalars(select(TransactionRecord)).all() == []


def test_catch_up_limit_warns_only_when_still_due(monkeypatch, caplog) -> None:
    monkeypatch.setattr(
        "services.get_settings", lambda: SimpleNamespace(max_catch_up=3)
    )
    with _session() as session:
        service = RecurringTemplateService(session)
        exact = service.create(_payload(frequency="daily"))
        behind = service.create(_payload(title="Coffee", frequency="daily"))

        with caplog.at_level(logging.WARNING, logger="services"):
            assert len(service.materialize_due(exact.id, date(2024, 1, 18))) == 3
        assert "materialize_limit" not in caplog.text

        with caplog.at_level(logging.WARNING, logger="services"):
            assert len(service.materialize_due(behind.id, date(2024, 1, 30))) == 3
        assert f"materialize_limit: template_id={behind.id}" in caplog.text
