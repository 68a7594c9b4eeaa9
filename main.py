"""Entry point for the sales CRM read API with realtime cache sync.

This service answers the dashboard, pipeline and gamification reads of
the CRM web app from an in‑process query cache. The cache is kept fresh
by listening to Supabase's row‑change stream: whenever a lead, an
observation or a gamification event changes, the affected cache keys
are invalidated (debounced, so a bulk import causes one refresh and not
hundreds) and the next read goes back to Supabase.

Browsers can follow the same invalidations over Server‑Sent Events at
``/realtime/invalidations`` and refetch only what changed.

To run this locally:

```sh
pip install -e .
export SUPABASE_URL=... SUPABASE_ANON_KEY=...
python main.py
```

Without the Supabase variables the server still starts, realtime stays
off and the data endpoints answer 503.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from supabase import AsyncClient, acreate_client

from crm_realtime.cache import QueryCache
from crm_realtime.config import Settings
from crm_realtime.hooks import (
    DASHBOARD_STATS_KEY,
    GAMIFICATION_EVENTS_KEY,
    KANBAN_LEADS_KEY,
    LEAD_STATS_KEY,
    LEADERBOARD_KEY,
    LEADS_KEY,
)
from crm_realtime.ranking import RankingTracker
from crm_realtime.repository import CrmRepository
from crm_realtime.sync import InvalidationBroadcaster, RealtimeSync

logger = logging.getLogger("crm_api")

# Seconds between SSE keep-alive comments when no invalidation arrives.
SSE_PING_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Supabase initialization
#
# The async client serves both the table queries and the realtime
# channels. If SUPABASE_URL and SUPABASE_ANON_KEY are not set, or the
# client cannot be created, the service keeps running without a backend
# so health checks and the docs stay reachable.

async def create_supabase(settings: Settings) -> Optional[AsyncClient]:
    if not settings.supabase_configured:
        logger.warning("SUPABASE_URL/SUPABASE_ANON_KEY not set; running without a backend")
        return None
    try:
        return await acreate_client(settings.supabase_url, settings.supabase_anon_key)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Failed to initialize Supabase client: %s", exc)
        return None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the cache, connect Supabase and mount the realtime hooks.

    Everything is stored on ``app.state`` so endpoints receive it through
    dependencies and tests can swap any piece.
    """
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    client = await create_supabase(settings)
    cache = QueryCache(stale_after=settings.cache_stale_seconds)
    sync = RealtimeSync(cache, settings, transport=client)

    app.state.settings = settings
    app.state.cache = cache
    app.state.repository = CrmRepository(client) if client is not None else None
    app.state.sync = sync
    app.state.broadcaster = InvalidationBroadcaster(cache)
    app.state.ranking = RankingTracker()

    sync.start()
    try:
        yield
    finally:
        await sync.stop()
        app.state.broadcaster.close()


# ---------------------------------------------------------------------------
# FastAPI app and dependencies

app = FastAPI(title="Sales CRM Realtime Read API", lifespan=lifespan)

# Permissive CORS so the browser app can call the API and open the SSE
# stream from its own origin. Restrict allow_origins in production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_cache(request: Request) -> QueryCache:
    return request.app.state.cache


def get_sync(request: Request) -> RealtimeSync:
    return request.app.state.sync


def get_broadcaster(request: Request) -> InvalidationBroadcaster:
    return request.app.state.broadcaster


def get_ranking(request: Request) -> RankingTracker:
    return request.app.state.ranking


def get_repository(request: Request) -> CrmRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Supabase is not configured")
    return repository


# ---------------------------------------------------------------------------
# Health and realtime status

@app.get("/health", summary="Health check endpoint")
def health():
    return {"status": "ok"}


@app.get("/realtime/status", summary="State of the realtime listeners")
def realtime_status(sync: RealtimeSync = Depends(get_sync)):
    """
    Report whether realtime sync is on, which channels each hook holds
    and which cache keys are waiting for the current debounce window.
    """
    return sync.status()


@app.get("/realtime/invalidations", summary="Stream cache invalidations (SSE)")
async def realtime_invalidations(
    request: Request,
    broadcaster: InvalidationBroadcaster = Depends(get_broadcaster),
):
    """
    Server‑Sent Events stream of invalidated cache keys.

    Every debounced flush is sent as an ``invalidate`` event whose data
    is a JSON list of key arrays, e.g. ``[["leads"], ["kanban-leads"]]``.
    A comment line is sent every few seconds to keep proxies from
    closing the connection.
    """
    queue = broadcaster.subscribe()

    async def stream():
        try:
            yield "retry: 5000\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    batch = await asyncio.wait_for(queue.get(), timeout=SSE_PING_SECONDS)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                if batch is None:
                    # Broadcaster closed during shutdown.
                    break
                data = json.dumps([list(key) for key in batch], ensure_ascii=True)
                yield f"event: invalidate\ndata: {data}\n\n"
        finally:
            broadcaster.unsubscribe(queue)

    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
    return StreamingResponse(stream(), media_type="text/event-stream", headers=headers)


# ---------------------------------------------------------------------------
# Lead reads
#
# Cache keys mirror the browser's query keys: ("leads", company, status)
# sits under ("leads",), so a lead change refreshes every list at once.

@app.get("/tenant/{company_id}/leads", summary="List leads for a company")
async def list_leads(
    company_id: str,
    status: Optional[str] = None,
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
):
    key = LEADS_KEY + (company_id, status or "all")
    return await cache.fetch(key, lambda: repository.list_leads(company_id, status))


@app.get("/tenant/{company_id}/kanban-leads", summary="Leads grouped by pipeline stage")
async def kanban_leads(
    company_id: str,
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
):
    return await cache.fetch(KANBAN_LEADS_KEY + (company_id,), lambda: repository.kanban_leads(company_id))


@app.get("/tenant/{company_id}/lead-stats", summary="Lead counts per status")
async def lead_stats(
    company_id: str,
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
):
    return await cache.fetch(LEAD_STATS_KEY + (company_id,), lambda: repository.lead_stats(company_id))


@app.get("/tenant/{company_id}/dashboard-stats", summary="Headline dashboard numbers")
async def dashboard_stats(
    company_id: str,
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
):
    """
    Totals for the dashboard cards: lead counts, won/lost, open pipeline
    value and conversion rate.
    """
    return await cache.fetch(DASHBOARD_STATS_KEY + (company_id,), lambda: repository.dashboard_stats(company_id))


# ---------------------------------------------------------------------------
# Gamification reads

@app.get("/gamification/leaderboard", summary="Points ranking for the last 30 days")
async def leaderboard(
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
    ranking: RankingTracker = Depends(get_ranking),
):
    """
    Return the leaderboard and the position changes since it was last
    fetched. Changes are computed once per refetch, so repeated reads of
    a fresh cache entry report the same movement.
    """

    async def fetch() -> Dict[str, Any]:
        rows = await repository.leaderboard()
        changes = ranking.update(rows)
        return {"leaderboard": rows, "changes": [c.model_dump() for c in changes]}

    return await cache.fetch(LEADERBOARD_KEY, fetch)


@app.get("/gamification/events", summary="Latest gamification events")
async def gamification_events(
    limit: int = 50,
    cache: QueryCache = Depends(get_cache),
    repository: CrmRepository = Depends(get_repository),
) -> List[Dict[str, Any]]:
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    return await cache.fetch(GAMIFICATION_EVENTS_KEY + (str(limit),), lambda: repository.gamification_events(limit))


@app.get("/gamification/latest-sale", summary="Most recent closed sale seen live")
def latest_sale(sync: RealtimeSync = Depends(get_sync)):
    return {"sale": sync.gamification_events.latest_sale}


@app.delete("/gamification/latest-sale", summary="Acknowledge the latest sale")
def clear_latest_sale(sync: RealtimeSync = Depends(get_sync)):
    sync.gamification_events.clear_latest_sale()
    return {"sale": None}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
