"""Celery application running the recurring billing on a beat schedule.

Start a worker with the embedded beat scheduler::

    celery -A billing.tasks worker -B --loglevel=INFO
"""
import logging

from celery import Celery
from celery.schedules import ParseException, crontab

from billing import config, database, events
from billing.errors import ValidationError
from billing.scheduler import RecurringBillingScheduler

logger = logging.getLogger(__name__)

app = Celery("billing", broker=config.RABBITMQ_URL)
app.conf.timezone = config.BILLING_TIMEZONE
app.conf.enable_utc = True

_dispatcher = None


def schedule_from_expression(expression: str) -> crontab:
    """Turn a five-field cron expression into a Celery ``crontab``."""
    fields = (expression or "").split()
    if len(fields) != 5:
        raise ValidationError(f"Cron expression needs five fields: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(minute=minute, hour=hour, day_of_month=day_of_month,
                       month_of_year=month_of_year, day_of_week=day_of_week)
    except (ParseException, ValueError) as exc:
        raise ValidationError(f"Invalid cron expression {expression!r}: {exc}") from None


def beat_schedule(expression: str = None) -> dict:
    return {
        "recurring-billing": {
            "task": "billing.tasks.run_recurring_billing",
            "schedule": schedule_from_expression(expression or config.BILLING_CRON),
        },
    }


if config.BILLING_SCHEDULER_ENABLED:
    app.conf.beat_schedule = beat_schedule()


def get_dispatcher() -> events.JobDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = events.RabbitJobDispatcher(config.RABBITMQ_URL).start()
    return _dispatcher


@app.task(name="billing.tasks.run_recurring_billing")
def run_recurring_billing(dry_run=False):
    database.init_db(config.DATABASE_URL)
    scheduler = RecurringBillingScheduler(database.SessionLocal, events.Notifier(get_dispatcher()))
    result = scheduler.run_once(dry_run=dry_run)
    return {
        "run_id": result.run_id,
        "dry_run": result.dry_run,
        "eligible": result.eligible,
        "billed": result.billed,
        "skipped": result.skipped,
        "failed": result.failed,
        "total_amount": result.total_amount,
    }
