"""Supabase client singleton and storage health check."""

import asyncio
import time
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from src.core.config import get_settings

HEALTH_CHECK_TABLE = "orders"


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton for repository access.

    Uses the secret key, which bypasses RLS at the PostgREST level. Callers are
    the repositories and the audit log, never end users.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def check_database_connection(client: Client | None = None) -> dict[str, Any]:
    """Check that the orders table answers within the repository timeout.

    Returns:
        dict: ``healthy``, ``latency_ms`` and, on failure, ``error``.
    """
    timeout = get_settings().repository_timeout_seconds
    start_time = time.perf_counter()
    try:
        client = client or get_supabase_client()
        query = client.table(HEALTH_CHECK_TABLE).select("id").limit(1)
        await asyncio.wait_for(asyncio.to_thread(query.execute), timeout=timeout)
    except asyncio.TimeoutError:
        return {"healthy": False, "latency_ms": round(timeout * 1000, 2), "error": f"timed out after {timeout}s"}
    except Exception as e:
        return {"healthy": False, "latency_ms": _elapsed_ms(start_time), "error": str(e)}
    return {"healthy": True, "latency_ms": _elapsed_ms(start_time)}


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)
