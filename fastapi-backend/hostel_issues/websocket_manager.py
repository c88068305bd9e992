"""
WebSocket feeds for the caretaker dashboard.

Each connection owns one document-store subscription. Every snapshot the store
pushes is forwarded to the socket as a JSON event; when the socket goes away the
subscription is cancelled with it.
"""
import logging
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone

from fastapi import WebSocket
from pydantic import BaseModel

from .document_store import Document, Subscription
from .metrics import ACTIVE_FEED_CONNECTIONS

logger = logging.getLogger(__name__)

FEEDS = ("issues", "pending_users")


class WebSocketEvent(BaseModel):
    """Base model for WebSocket events."""
    event_type: str
    timestamp: Optional[datetime] = None
    data: Dict[str, Any] = {}

    def __init__(self, **data):
        if 'timestamp' not in data:
            data['timestamp'] = datetime.now(timezone.utc)
        super().__init__(**data)


class IssuesSnapshotEvent(WebSocketEvent):
    """Full list of active issues matching the dashboard view."""
    event_type: str = "issues_snapshot"

    def __init__(self, issues: List[Document], **kwargs):
        data = {
            "count": len(issues),
            "issues": [doc.to_dict() for doc in issues],
        }
        super().__init__(data=data, **kwargs)


class PendingUsersSnapshotEvent(WebSocketEvent):
    """Profiles waiting for room verification, oldest first."""
    event_type: str = "pending_users_snapshot"

    def __init__(self, profiles: List[Document], **kwargs):
        data = {
            "count": len(profiles),
            "users": [doc.to_dict() for doc in profiles],
        }
        super().__init__(data=data, **kwargs)


class ConnectionManager:
    """Tracks feed connections and the subscriptions that drive them."""

    def __init__(self):
        self.active_connections: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, user_id: str, feed: str):
        """Accept a WebSocket connection and store user info."""
        await websocket.accept()
        self.active_connections[websocket] = {
            "user_id": user_id,
            "feed": feed,
            "subscription": None,
            "connected_at": datetime.now(timezone.utc),
        }
        ACTIVE_FEED_CONNECTIONS.labels(feed=feed).inc()
        logger.info(f"WebSocket connected: user_id={user_id}, feed={feed}")

    def attach(self, websocket: WebSocket, subscription: Subscription) -> None:
        info = self.active_connections.get(websocket)
        if info is None:
            # Socket dropped while the first snapshot was being sent
            subscription.cancel()
            return
        info["subscription"] = subscription

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection and stop its subscription."""
        info = self.active_connections.pop(websocket, None)
        if info is None:
            return
        if info["subscription"] is not None:
            info["subscription"].cancel()
        ACTIVE_FEED_CONNECTIONS.labels(feed=info["feed"]).dec()
        logger.info(f"WebSocket disconnected: user_id={info.get('user_id')}, feed={info['feed']}")

    async def send_event(self, websocket: WebSocket, event: WebSocketEvent):
        """Send an event to one connection, dropping the connection if that fails."""
        try:
            await websocket.send_text(event.model_dump_json())
        except Exception as e:
            logger.error(f"Error sending {event.event_type}: {e}")
            self.disconnect(websocket)

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    def get_connections_by_feed(self) -> Dict[str, int]:
        counts = {feed: 0 for feed in FEEDS}
        for info in self.active_connections.values():
            counts[info["feed"]] = counts.get(info["feed"], 0) + 1
        return counts


# Global connection manager instance
manager = ConnectionManager()
