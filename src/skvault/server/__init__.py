"""Managed vault service: key registry, sync rules, versions, sessions."""

from .api import VaultApi, serve
from .store import KeyRegistry, SessionStore, SyncRulesStore, VaultDatabase, VersionLedger

__all__ = [
    "KeyRegistry",
    "SessionStore",
    "SyncRulesStore",
    "VaultApi",
    "VaultDatabase",
    "VersionLedger",
    "serve",
]
