import os
from celery import Celery


def make_celery() -> Celery:
    broker = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    backend = os.getenv("CELERY_RESULT_BACKEND", broker)
    app = Celery("claimdesk", broker=broker, backend=backend, include=[
        "claimdesk.tasks.jobs.holds",
    ])
    sweep_minutes = int(os.getenv("HOLD_SWEEP_MINUTES", "15"))
    app.conf.update(
        task_track_started=True,
        beat_schedule={
            "sweep-expired-holds": {
                "task": "claimdesk.tasks.jobs.holds.sweep_expired_holds_task",
                "schedule": sweep_minutes * 60.0,
            },
        },
    )
    return app

celery_app = make_celery()
