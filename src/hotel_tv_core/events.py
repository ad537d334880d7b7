"""Event envelopes and event type names pushed to admin sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol


@dataclass
class SystemEvent:
    """System event with type, timestamp, and data."""

    event_type: str
    timestamp: str
    data: Dict[str, Any]

    @classmethod
    def create(cls, event_type: str, data: Optional[Dict[str, Any]] = None) -> "SystemEvent":
        """Create a new system event with current timestamp."""
        return cls(
            event_type=event_type,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            data=data or {},
        )

    def to_message(self) -> Dict[str, Any]:
        """Wire envelope sent to realtime clients."""
        return {
            "type": self.event_type,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class Broadcaster(Protocol):
    """Anything that can fan an event out to admin sessions without blocking."""

    def broadcast(
        self, event_type: str, data: Dict[str, Any], topic: Optional[str] = None
    ) -> int:
        ...


# Connection lifecycle
EVENT_CONNECTION_ESTABLISHED = "connection_established"
EVENT_PING = "ping"
EVENT_PONG = "pong"
EVENT_SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
EVENT_UNSUBSCRIPTION_CONFIRMED = "unsubscription_confirmed"
EVENT_ERROR = "error"

# Devices
EVENT_DEVICE_REGISTERED = "device_registered"
EVENT_DEVICE_UPDATED = "device_updated"
EVENT_DEVICE_SYNCED = "device_synced"
EVENT_DEVICES_OFFLINE = "devices_offline"

# Notifications
EVENT_NOTIFICATION_GENERATED = "notification_generated"
EVENT_NOTIFICATION_SCHEDULED = "notification_scheduled"
EVENT_NOTIFICATION_STATUS_UPDATED = "notification_status_updated"
EVENT_NOTIFICATIONS_SENT = "notifications_sent"
EVENT_SCHEDULED_NOTIFICATIONS_PROCESSED = "scheduled_notifications_processed"

# PMS and system
EVENT_PMS_SYNC_COMPLETED = "pms_sync_completed"
EVENT_PMS_CONFIGURATION_UPDATED = "pms_configuration_updated"
EVENT_HEALTH_CHECK_COMPLETED = "health_check_completed"
EVENT_JOB_FAILED = "job_failed"

# Subscription topics
TOPIC_DEVICE_SYNC = "device_sync"
