"""Realtime cache synchronization for the sales CRM read API."""

from crm_realtime.cache import QueryCache
from crm_realtime.changes import ChangeEvent, ChangeKind, ChangeStreamClient, EventFilter, SubscriptionHandle
from crm_realtime.config import Settings
from crm_realtime.hooks import GamificationEvents, HookState, RealtimeGamification, RealtimeLeads
from crm_realtime.invalidator import DebouncedInvalidator, DebouncePolicy
from crm_realtime.ranking import RankingChange, RankingTracker
from crm_realtime.sync import InvalidationBroadcaster, RealtimeSync

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ChangeStreamClient",
    "DebouncePolicy",
    "DebouncedInvalidator",
    "EventFilter",
    "GamificationEvents",
    "HookState",
    "InvalidationBroadcaster",
    "QueryCache",
    "RankingChange",
    "RankingTracker",
    "RealtimeGamification",
    "RealtimeLeads",
    "RealtimeSync",
    "Settings",
    "SubscriptionHandle",
]
