from datetime import timedelta

import pytest

from billing import database, tasks
from billing.errors import ValidationError
from billing.models import BillingRun, Invoice, Subscriber, utcnow


def test_default_schedule_is_daily_at_nine():
    schedule = tasks.beat_schedule("0 9 * * *")["recurring-billing"]
    assert schedule["task"] == tasks.run_recurring_billing.name
    assert schedule["schedule"].hour == {9}
    assert schedule["schedule"].minute == {0}
    assert schedule["schedule"].day_of_week == set(range(7))


def test_weekday_and_multi_time_expressions():
    weekdays = tasks.schedule_from_expression("0 9 * * 1-5")
    assert weekdays.day_of_week == {1, 2, 3, 4, 5}
    twice = tasks.schedule_from_expression("30 8,17 * * *")
    assert twice.hour == {8, 17}
    assert twice.minute == {30}


def test_invalid_expressions_are_refused():
    for bad in ("every day", "0 9 * *", "0 24 * * *", "61 9 * * *"):
        with pytest.raises(ValidationError):
            tasks.schedule_from_expression(bad)


def test_schedule_uses_billing_timezone():
    assert str(tasks.app.conf.timezone) == tasks.config.BILLING_TIMEZONE


def test_task_runs_the_scheduler(db, session_factory, dispatcher, monkeypatch):
    monkeypatch.setattr(database, "init_db", lambda url: None)
    monkeypatch.setattr(database, "SessionLocal", session_factory)
    monkeypatch.setattr(tasks, "get_dispatcher", lambda: dispatcher)
    db.add(Subscriber(id="student-1", registration_tier="premier", is_recurring=True, active=True,
                      next_billing_date=utcnow() - timedelta(days=1)))
    db.commit()

    summary = tasks.run_recurring_billing()

    assert (summary["eligible"], summary["billed"], summary["total_amount"]) == (1, 1, 70000)
    assert db.query(Invoice).count() == 1
    assert db.get(BillingRun, summary["run_id"]) is not None
    assert dispatcher.notifications("student-1")[-1]["kind"] == "invoice_created"
