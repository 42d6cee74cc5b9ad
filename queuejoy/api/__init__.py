"""API module - Routes and dependencies"""
from .deps import get_database, get_telegram_client, get_ticket_store, require_master_key_dep

__all__ = ["get_database", "get_telegram_client", "get_ticket_store", "require_master_key_dep"]
