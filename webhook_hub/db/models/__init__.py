"""
Database Models
"""
from webhook_hub.db.models.incoming_event import IncomingEvent
from webhook_hub.db.models.incoming_event_action import IncomingEventAction
from webhook_hub.db.models.action import Action
from webhook_hub.db.models.outgoing_event import OutgoingEvent

__all__ = [
    "IncomingEvent",
    "IncomingEventAction",
    "Action",
    "OutgoingEvent",
]
