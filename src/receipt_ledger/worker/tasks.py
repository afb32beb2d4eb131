from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import receipt_ledger.models  # noqa: F401
# isort: on

import time
import uuid
from datetime import date

from celery.signals import worker_process_init, worker_process_shutdown

from receipt_ledger.core.db import Database, create_database
from receipt_ledger.core.logging import (
    configure_logging,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from receipt_ledger.worker.celery_app import celery_app

logger = get_logger(__name__)

_database: Database | None = None


def use_database(database: Database | None) -> None:
    """Hand the tasks a database owned by the host process (API lifespan, tests)."""
    global _database  # noqa: PLW0603
    _database = database


def _require_database() -> Database:
    if _database is None or not _database.is_open:
        raise RuntimeError("Worker database is not open")
    return _database


@worker_process_init.connect
def _open_worker_database(**_) -> None:
    configure_logging()
    use_database(create_database().open())


@worker_process_shutdown.connect
def _close_worker_database(**_) -> None:
    if _database is not None:
        _database.close()
    use_database(None)


def _run(task, task_name: str, fn, **fields):
    task_id = getattr(task.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(logger, "celery.task.start", task_name=task_name, celery_task_id=task_id, **fields)
    try:
        result = fn()
        log_event(
            logger,
            "celery.task.finish",
            task_name=task_name,
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        return result
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name=task_name,
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        raise
    finally:
        reset_task_context(token)


@celery_app.task(name="process_receipt", bind=True)
def process_receipt_task(self, receipt_id: str, reprocess: bool = False) -> dict:
    from receipt_ledger.modules.extraction.ai import ReceiptExtractor
    from receipt_ledger.modules.receipts.processing import ReceiptProcessor

    def work() -> dict:
        processor = ReceiptProcessor(database=_require_database(), extractor=ReceiptExtractor())
        rid = uuid.UUID(receipt_id)
        outcome = processor.reprocess(rid) if reprocess else processor.process(rid)
        return outcome.model_dump(mode="json")

    return _run(self, "process_receipt", work, receipt_id=receipt_id, reprocess=reprocess)


@celery_app.task(name="generate_all_expected_payments", bind=True)
def generate_all_expected_payments_task(self) -> dict[str, int]:
    from receipt_ledger.modules.subscriptions.models import Subscription, SubscriptionStatus
    from receipt_ledger.modules.subscriptions.schedule import (
        generate_expected_payments,
        subscription_ids_with_status,
    )

    def work() -> dict[str, int]:
        today = date.today()
        created = 0
        with _require_database().session() as session:
            ids = subscription_ids_with_status(session, SubscriptionStatus.ACTIVE)
            for subscription_id in ids:
                subscription = session.get(Subscription, subscription_id)
                if subscription is None:
                    continue
                created += generate_expected_payments(
                    session, subscription=subscription, today=today
                )
        return {"processed": len(ids), "created": created}

    return _run(self, "generate_all_expected_payments", work)


@celery_app.task(name="mark_missed_payments", bind=True)
def mark_missed_payments_task(self) -> int:
    from receipt_ledger.modules.subscriptions.matching import mark_missed_payments

    def work() -> int:
        with _require_database().session() as session:
            return mark_missed_payments(session, today=date.today())

    return _run(self, "mark_missed_payments", work)
