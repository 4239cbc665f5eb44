from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from services.failure_policy import FailurePolicy
from services.tracker_store import TrackerStore

logger = logging.getLogger(__name__)


def build_health(tracker: TrackerStore) -> Dict[str, Any]:
    record = tracker.load()
    latest = sorted(record)[-1] if record else "None"
    return {"status": "ok", "trackedFiles": len(record), "lastOrderProcessed": latest}


def build_status(tracker: TrackerStore, policy: FailurePolicy) -> Dict[str, Any]:
    out = build_health(tracker)
    out["lastError"] = policy.last_error
    out["failedOrders"] = len(tracker.load_failed())
    return out


def create_app(tracker: TrackerStore, policy: FailurePolicy) -> FastAPI:
    app = FastAPI(title="Order fulfillment status", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health():
        try:
            return build_health(tracker)
        except Exception as e:
            logger.error("health check failed: %s", e)
            return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})

    @app.get("/status")
    def status():
        try:
            return build_status(tracker, policy)
        except Exception as e:
            logger.error("status check failed: %s", e)
            return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})

    return app
