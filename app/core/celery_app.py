from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("homepro_crm", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "check-lead-inactivity": {
        "task": "app.tasks.check_lead_inactivity",
        "schedule": float(settings.inactivity_sweep_interval_seconds),
    },
}


@celery_app.task(name="app.tasks.check_lead_inactivity")
def check_lead_inactivity_task() -> dict:
    from app.crm.followups import inactivity_sweep

    session = SessionLocal()
    try:
        result = inactivity_sweep.run(session, trigger="celery")
    finally:
        session.close()
    return result.model_dump(by_alias=True, exclude_none=True)
