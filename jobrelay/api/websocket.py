"""
WebSocket streaming of job status changes.

Each connection subscribes to the status channel. Without explicit job
subscriptions a client receives every event; after a "subscribe" action
it only receives events for the jobs it named.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect

from jobrelay.channel import StatusChannel
from jobrelay.types.events import JobEvent, WebSocketMessage

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Information about a WebSocket connection."""

    websocket: WebSocket
    subscribed_jobs: set[UUID] = field(default_factory=set)

    def wants(self, event: JobEvent) -> bool:
        """Whether the event should be forwarded to this connection."""
        return not self.subscribed_jobs or event.job_id in self.subscribed_jobs


async def _forward_events(
    connection: ConnectionInfo,
    events: asyncio.Queue[JobEvent],
) -> None:
    while True:
        event = await events.get()
        if not connection.wants(event):
            continue
        message = WebSocketMessage.from_event(event)
        try:
            await connection.websocket.send_text(message.model_dump_json())
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning(f"Failed to send WebSocket message: {e}")
            return


async def handle_command(connection: ConnectionInfo, data: str) -> dict:
    """
    Apply one client command and return the reply.

    Supported actions: subscribe, unsubscribe (with job_id) and ping.
    """
    try:
        message = json.loads(data)
        action = message.get("action")

        if action == "subscribe":
            job_id = UUID(message.get("job_id"))
            connection.subscribed_jobs.add(job_id)
            return {"type": "subscribed", "job_id": str(job_id)}

        if action == "unsubscribe":
            job_id = UUID(message.get("job_id"))
            connection.subscribed_jobs.discard(job_id)
            return {"type": "unsubscribed", "job_id": str(job_id)}

        if action == "ping":
            return {"type": "pong"}

        return {"type": "error", "message": f"Unknown action: {action}"}

    except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
        return {"type": "error", "message": f"Invalid message: {e}"}


async def websocket_handler(websocket: WebSocket, channel: StatusChannel) -> None:
    """
    Handle a WebSocket connection for job updates.

    Args:
        websocket: The WebSocket connection.
        channel: Status channel to stream from.
    """
    await websocket.accept()
    connection = ConnectionInfo(websocket=websocket)
    logger.info("WebSocket connected")

    async with channel.subscription() as events:
        sender = asyncio.create_task(_forward_events(connection, events))
        try:
            while True:
                data = await websocket.receive_text()
                await websocket.send_json(await handle_command(connection, data))
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
