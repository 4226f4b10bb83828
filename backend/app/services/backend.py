"""Construction of the backend client shared by the route handlers."""

from __future__ import annotations

import logging
from functools import lru_cache

from app.config import get_settings
from app.database import SessionLocal, engine
from app.models import Base
from app.services.realtime import change_feed
from connecthub.backend import Backend, LocalStorage, RestBackend, SqlBackend, TokenAuth

logger = logging.getLogger(__name__)

settings = get_settings()


@lru_cache
def get_token_auth() -> TokenAuth:
    return TokenAuth(settings.jwt_secret_key, algorithm=settings.jwt_algorithm, audience=settings.jwt_audience)


@lru_cache
def get_local_storage() -> LocalStorage:
    return LocalStorage(
        settings.storage_root,
        base_url=settings.storage_base_url,
        public_buckets=settings.public_buckets,
        signing_key=settings.jwt_secret_key,
    )


@lru_cache
def get_backend() -> Backend:
    """Return the backend client for this process.

    The hosted service is used when ``SUPABASE_URL`` is configured; otherwise
    queries run against the local SQL database.
    """

    if settings.uses_hosted_backend:
        key = settings.supabase_service_role_key or settings.supabase_anon_key
        if not key:
            raise RuntimeError("SUPABASE_URL is set but no service role or anon key is configured")
        logger.info("Using hosted backend", extra={"url": settings.supabase_url})
        return RestBackend(
            settings.supabase_url,
            key,
            public_buckets=settings.public_buckets,
            timeout=settings.backend_timeout_seconds,
            changes=change_feed,
        )
    return SqlBackend(
        SessionLocal,
        Base.metadata,
        storage=get_local_storage(),
        auth=get_token_auth(),
        changes=change_feed,
        max_workers=1 if settings.database_url.startswith("sqlite") else None,
    )


def init_datastore() -> None:
    """Create the local tables when running without the hosted service."""

    if settings.uses_hosted_backend:
        return
    Base.metadata.create_all(engine)
    settings.storage_root.mkdir(parents=True, exist_ok=True)


async def close_backend() -> None:
    if get_backend.cache_info().currsize:
        await get_backend().aclose()
