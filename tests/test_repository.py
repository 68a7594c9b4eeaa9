"""Tests for the CRM read queries and their aggregations."""

from types import SimpleNamespace

import pytest

from crm_realtime.repository import (
    CrmRepository,
    build_leaderboard,
    count_by_status,
    group_for_kanban,
    summarize_dashboard,
)

LEADS = [
    {"id": "1", "status": "novo", "estimated_value": 1000},
    {"id": "2", "status": "proposta", "estimated_value": 2500.5},
    {"id": "3", "status": "ganho", "estimated_value": 4000},
    {"id": "4", "status": "perdido", "estimated_value": 300},
]


def test_count_by_status_includes_empty_stages() -> None:
    counts = count_by_status(LEADS)
    assert counts["novo"] == 1
    assert counts["negociacao"] == 0
    assert counts["ganho"] == 1


def test_kanban_groups_in_board_order() -> None:
    columns = group_for_kanban(LEADS + [{"id": "5", "status": "arquivado"}])
    assert list(columns)[:6] == ["novo", "contato_feito", "proposta", "negociacao", "ganho", "perdido"]
    assert [lead["id"] for lead in columns["proposta"]] == ["2"]
    assert [lead["id"] for lead in columns["arquivado"]] == ["5"]


def test_dashboard_summary() -> None:
    summary = summarize_dashboard(LEADS)
    assert summary["total_leads"] == 4
    assert summary["open_leads"] == 2
    assert summary["won_leads"] == 1
    assert summary["lost_leads"] == 1
    assert summary["pipeline_value"] == 3500.5
    assert summary["won_value"] == 4000.0
    assert summary["conversion_rate"] == 25.0


def test_dashboard_summary_empty() -> None:
    assert summarize_dashboard([])["conversion_rate"] == 0.0


def test_leaderboard_sums_points_best_first() -> None:
    events = [
        {"user_id": "ana", "points": 10, "event_type": "lead_created"},
        {"user_id": "bruno", "points": 50, "event_type": "sale_closed"},
        {"user_id": "ana", "points": 5, "event_type": "observation_added"},
        {"user_id": None, "points": 99},
    ]
    board = build_leaderboard(events)
    assert [row["user_id"] for row in board] == ["bruno", "ana"]
    assert board[0]["sales_closed"] == 1
    assert board[1]["points"] == 15


class FakeQuery:
    """Records the PostgREST builder calls and returns canned rows."""

    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    def __getattr__(self, name):
        def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return call

    async def execute(self):
        return SimpleNamespace(data=self.rows)


class FakeClient:
    def __init__(self, rows):
        self.query = FakeQuery(rows)
        self.tables = []

    def table(self, name):
        self.tables.append(name)
        return self.query


@pytest.mark.asyncio
async def test_list_leads_filters_company_and_status() -> None:
    client = FakeClient(LEADS[:1])
    repo = CrmRepository(client)

    rows = await repo.list_leads("c1", status="novo")

    assert rows == LEADS[:1]
    assert client.tables == ["leads"]
    assert ("eq", ("company_id", "c1"), {}) in client.query.calls
    assert ("eq", ("status", "novo"), {}) in client.query.calls


@pytest.mark.asyncio
async def test_leaderboard_query_uses_thirty_day_window() -> None:
    client = FakeClient([{"user_id": "ana", "points": 3}])
    repo = CrmRepository(client)

    board = await repo.leaderboard()

    assert board == [{"user_id": "ana", "points": 3, "sales_closed": 0}]
    assert client.tables == ["gamification_events"]
    assert any(name == "gte" for name, _, _ in client.query.calls)


@pytest.mark.asyncio
async def test_missing_data_returns_empty() -> None:
    repo = CrmRepository(FakeClient(None))
    assert await repo.list_leads("c1") == []
    assert (await repo.dashboard_stats("c1"))["total_leads"] == 0
