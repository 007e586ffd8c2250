import logging
import math
import os
from typing import Any, Optional

from fastapi import Cookie, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
import psycopg2.extras
from dotenv import load_dotenv
from jose import JWTError, jwt

from backend import app_context
from backend.app.billing import Actor, ActorRole, billing_routes_enabled, load_billing_config
from backend.app.routes.billing import router as billing_router
from backend.app.services.billing import init_billing, teardown_billing

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("billing")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def get_conn():
    return psycopg2.connect(**DB_CFG)


def _role_from_db(value: Any) -> ActorRole:
    try:
        return ActorRole(str(value or "").lower())
    except ValueError:
        return ActorRole.USER


def get_actor_by_id(uid: int) -> Optional[Actor]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute("SELECT id, role, school_id, email FROM users WHERE id = %s", (uid,))
        row = cur.fetchone()
    if not row:
        return None
    school_id = row.get("school_id")
    return Actor(
        user_id=str(row["id"]),
        role=_role_from_db(row.get("role")),
        organization_id=str(school_id) if school_id is not None else None,
        email=row.get("email"),
    )


def resolve_actor_from_token(token: str) -> Optional[Actor]:
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        user_id = int(subject)
    except (JWTError, ValueError):
        return None

    return get_actor_by_id(user_id)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def get_current_actor(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> Actor:
    token = _bearer_token(authorization) or session_token
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    actor = resolve_actor_from_token(token)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return actor


app = FastAPI(title="Billing Sync API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[load_billing_config().frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if billing_routes_enabled():
    app.include_router(billing_router)
else:
    logger.info("BILLING_ENABLED is off; billing routes are not mounted")


@app.on_event("startup")
def setup_billing() -> None:
    init_billing(conn_factory=get_conn)


@app.on_event("shutdown")
def shutdown_billing() -> None:
    teardown_billing()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


app_context.configure(
    get_conn=get_conn,
    get_current_actor=get_current_actor,
)
