"""
Domain Services
"""
from webhook_hub.domain.services.dedup_service import DedupService
from webhook_hub.domain.services.action_lookup import ActionLookup, ActionStore
from webhook_hub.domain.services.action_dispatch_service import (
    ActionDispatcher,
    ActionExecutionService,
    ActionExecutor,
)
from webhook_hub.domain.services.ingestion_service import IngestionService
from webhook_hub.domain.services.outgoing_service import OutgoingDeliveryService
from webhook_hub.domain.services.archival_service import ArchivalService

__all__ = [
    "DedupService",
    "ActionLookup",
    "ActionStore",
    "ActionDispatcher",
    "ActionExecutionService",
    "ActionExecutor",
    "IngestionService",
    "OutgoingDeliveryService",
    "ArchivalService",
]
