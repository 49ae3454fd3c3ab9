"""
Routes inbound socket frames to handlers.

A frame is ``{"event": <name>, "data": {...}}``. The payload is validated
against the event's schema before the handler runs. Errors raised by a
handler are reported to the originating session only, under the event name
registered for that handler.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from lifestream.core.exceptions import LifeStreamError, ValidationError
from lifestream.realtime.manager import ClientSession, ConnectionManager

logger = logging.getLogger(__name__)

GENERIC_ERROR_EVENT = "error"


@dataclass
class SocketContext:
    session: ClientSession
    manager: ConnectionManager
    session_factory: async_sessionmaker[AsyncSession]

    @property
    def identity(self):
        return self.session.identity

    async def emit(self, event: str, payload: Any) -> None:
        await self.manager.emit(self.session, event, payload)


Handler = Callable[[SocketContext, Any], Awaitable[None]]


@dataclass
class Route:
    handler: Handler
    schema: Type[BaseModel]
    error_event: str


def _describe(error: SchemaValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return f"{location}: {first.get('msg', 'invalid value')}"


class EventDispatcher:
    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}

    def on(self, event: str, schema: Type[BaseModel], error_event: str = GENERIC_ERROR_EVENT):
        """Register the decorated coroutine as the handler for ``event``."""
        def decorator(handler: Handler) -> Handler:
            self.routes[event] = Route(handler=handler, schema=schema, error_event=error_event)
            return handler
        return decorator

    async def dispatch(self, ctx: SocketContext, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            frame = None
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await ctx.emit(GENERIC_ERROR_EVENT, ValidationError("Malformed frame").to_payload())
            return

        event = frame["event"]
        route: Optional[Route] = self.routes.get(event)
        if route is None:
            await ctx.emit(GENERIC_ERROR_EVENT, ValidationError(f"Unknown event '{event}'").to_payload())
            return

        data = frame.get("data")
        try:
            payload = route.schema.model_validate(data if data is not None else {})
        except SchemaValidationError as e:
            await ctx.emit(route.error_event, ValidationError(_describe(e)).to_payload())
            return

        try:
            await route.handler(ctx, payload)
        except LifeStreamError as e:
            logger.info(f"{event} from user {ctx.identity.id} rejected: {e.code} {e.message}")
            await ctx.emit(route.error_event, e.to_payload())
        except Exception:
            logger.exception(f"Unhandled error in {event} handler for session {ctx.session.id}")
            await ctx.emit(GENERIC_ERROR_EVENT, {"message": "Internal server error", "code": "INTERNAL_ERROR"})
