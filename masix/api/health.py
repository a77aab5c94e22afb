from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from masix.monitoring.metrics import metrics_response

router = APIRouter(tags=["system"])


@router.get("/health")
def health(request: Request) -> dict:
    store = getattr(request.app.state, "store", None)
    runtime = getattr(request.app.state, "runtime", None)
    db_ok = False
    if store is not None and store.engine is not None:
        try:
            with store.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "workers": [worker.name for worker in runtime.workers] if runtime is not None else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
def metrics():
    return metrics_response()
