from celery import Celery

from dealengine.core.config import get_settings
from dealengine.core.database import SessionLocal
from dealengine.deals.service import deal_event_service

settings = get_settings()

celery_app = Celery("dealengine", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "purge-idempotency-records": {
        "task": "dealengine.tasks.purge_idempotency_records",
        "schedule": 3600.0,
    },
}


@celery_app.task(name="dealengine.tasks.purge_idempotency_records")
def purge_idempotency_records_task() -> int:
    session = SessionLocal()
    try:
        return deal_event_service.purge_idempotency(session)
    finally:
        session.close()
