"""Read queries against the CRM tables in Supabase.

The aggregation helpers are plain functions over row dictionaries so
they can be exercised without a database; :class:`CrmRepository` only
runs the queries and hands the rows over.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Pipeline stages in board order. Won/lost close the pipeline.
PIPELINE_STATUSES = ["novo", "contato_feito", "proposta", "negociacao", "ganho", "perdido"]
OPEN_STATUSES = ["novo", "contato_feito", "proposta", "negociacao"]
WON_STATUS = "ganho"
LOST_STATUS = "perdido"

LEADERBOARD_WINDOW_DAYS = 30


# ---------------------------------------------------------------------------
# Aggregations


def count_by_status(leads: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = {status: 0 for status in PIPELINE_STATUSES}
    for lead in leads:
        status = lead.get("status") or "novo"
        counts[status] = counts.get(status, 0) + 1
    return counts


def group_for_kanban(leads: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Bucket leads into board columns; unknown statuses get their own column."""
    columns: Dict[str, List[Dict[str, Any]]] = {status: [] for status in PIPELINE_STATUSES}
    for lead in leads:
        columns.setdefault(lead.get("status") or "novo", []).append(lead)
    return columns


def summarize_dashboard(leads: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Headline numbers for the dashboard cards.

    Pipeline value sums ``estimated_value`` over open leads; conversion
    rate is won / total as a percentage.
    """
    total = len(leads)
    won = sum(1 for lead in leads if lead.get("status") == WON_STATUS)
    lost = sum(1 for lead in leads if lead.get("status") == LOST_STATUS)
    open_leads = [lead for lead in leads if (lead.get("status") or "novo") in OPEN_STATUSES]
    pipeline_value = sum(float(lead.get("estimated_value") or 0) for lead in open_leads)
    won_value = sum(float(lead.get("estimated_value") or 0) for lead in leads if lead.get("status") == WON_STATUS)
    return {
        "total_leads": total,
        "open_leads": len(open_leads),
        "won_leads": won,
        "lost_leads": lost,
        "pipeline_value": pipeline_value,
        "won_value": won_value,
        "conversion_rate": round(won / total * 100, 2) if total else 0.0,
    }


def build_leaderboard(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sum points per user, best first. Ties keep first-seen order."""
    totals: Dict[str, Dict[str, Any]] = {}
    for event in events:
        user_id = event.get("user_id")
        if not user_id:
            continue
        row = totals.setdefault(user_id, {"user_id": user_id, "points": 0, "sales_closed": 0})
        row["points"] += int(event.get("points") or 0)
        if event.get("event_type") == "sale_closed":
            row["sales_closed"] += 1
    return sorted(totals.values(), key=lambda r: r["points"], reverse=True)


# ---------------------------------------------------------------------------
# Supabase queries


class CrmRepository:
    """Thin wrapper over the async Supabase client's table queries."""

    def __init__(self, client: Any):
        self.client = client

    async def list_leads(self, company_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.client.table("leads").select("*").eq("company_id", company_id)
        if status:
            query = query.eq("status", status)
        response = await query.order("created_at", desc=True).execute()
        return response.data or []

    async def kanban_leads(self, company_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return group_for_kanban(await self.list_leads(company_id))

    async def lead_stats(self, company_id: str) -> Dict[str, int]:
        response = await self.client.table("leads").select("status").eq("company_id", company_id).execute()
        return count_by_status(response.data or [])

    async def dashboard_stats(self, company_id: str) -> Dict[str, Any]:
        response = await (
            self.client.table("leads")
            .select("id, status, estimated_value")
            .eq("company_id", company_id)
            .execute()
        )
        return summarize_dashboard(response.data or [])

    async def gamification_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        response = await (
            self.client.table("gamification_events")
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []

    async def leaderboard(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=LEADERBOARD_WINDOW_DAYS)).isoformat()
        response = await (
            self.client.table("gamification_events")
            .select("user_id, points, event_type, created_at")
            .gte("created_at", since)
            .execute()
        )
        return build_leaderboard(response.data or [])
