import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import Cookie, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from backend import app_context  # noqa: E402
from backend.app.routes.subscriptions import router as subscriptions_router  # noqa: E402
from backend.app.services.subscriptions import get_subscription_config  # noqa: E402
from backend.app.subscriptions import SubscriberRef  # noqa: E402
from backend.renewals import (  # noqa: E402
    get_renewal_metrics,
    shutdown_renewal_scheduler,
    start_renewal_scheduler,
)

load_dotenv()

logger = logging.getLogger("subscriptions")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
RENEWAL_SCHEDULER_ENABLED = os.getenv("SUBSCRIPTION_RENEWAL_ENABLED", "1").lower() in {"1", "true", "yes"}


def get_conn():
    return psycopg2.connect(**get_subscription_config().database.as_connect_kwargs())


def resolve_subscriber_from_session_token(session_token: str) -> Optional[SubscriberRef]:
    """Session tokens carry the subscriber reference (``type:id``) as ``sub``."""

    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        return SubscriberRef.parse(str(subject))
    except (JWTError, ValueError):
        return None


def get_current_subscriber(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SubscriberRef:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    subscriber = resolve_subscriber_from_session_token(session_token)
    if subscriber is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return subscriber


app_context.configure(
    get_conn=get_conn,
    get_current_subscriber=get_current_subscriber,
)

app = FastAPI(title="Unified Subscriptions API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions_router)


@app.on_event("startup")
def _start_renewal_scheduler() -> None:
    if RENEWAL_SCHEDULER_ENABLED:
        start_renewal_scheduler()
    else:
        logger.info("Subscription renewal scheduler disabled")


@app.on_event("shutdown")
def _shutdown_renewal_scheduler() -> None:
    shutdown_renewal_scheduler()


@app.get("/api/metrics/subscription-renewals")
def read_subscription_renewal_metrics() -> Dict[str, Any]:
    return get_renewal_metrics()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
