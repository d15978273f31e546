from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from .settings import settings

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(ts: datetime) -> datetime:
    # naive values are taken to be UTC already
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

class UTCTimestamp(TypeDecorator):
    """Timezone-aware UTC on the Python side on every backend. SQLite keeps no
    offset, so values are normalised to UTC going in and tagged coming out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None

def add_cors(app: FastAPI):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o for o in settings.cors_origins if o],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
