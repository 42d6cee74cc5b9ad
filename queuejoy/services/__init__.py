"""Service modules - Business logic layer"""
from .telegram_client import TelegramClient
from .notifier import Notifier
from .linking_service import LinkingService
from .link_service import LinkService
from .tenant_service import TenantService
from .counter_service import CounterService
from .announce_service import AnnounceService
from .client_config_service import ClientConfigService

__all__ = [
    "TelegramClient",
    "Notifier",
    "LinkingService",
    "LinkService",
    "TenantService",
    "CounterService",
    "AnnounceService",
    "ClientConfigService",
]
