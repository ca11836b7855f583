import os
from celery import Celery
from pathlib import Path
from dotenv import load_dotenv

_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env", override=False)
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)

SWEEP_INTERVAL_SECONDS = 10 * 60


def make_celery() -> Celery:
    broker = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL")
    backend = os.getenv("CELERY_RESULT_BACKEND") or broker
    app = Celery("compliance", broker=broker, backend=backend)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        imports=("ComplianceBackend.background_tasks.ingestion_cleanup",),
        worker_concurrency=1,
        broker_connection_retry_on_startup=True,
        beat_schedule={
            "sweep-stale-ingestions": {
                "task": "sweep_stale_ingestions",
                "schedule": SWEEP_INTERVAL_SECONDS,
            },
        },
    )
    return app

celery = make_celery()
