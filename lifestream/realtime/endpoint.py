import logging
from datetime import datetime, timezone
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from lifestream.core.exceptions import AuthenticationError, LifeStreamError, PersistenceError, ValidationError
from lifestream.realtime.dispatcher import GENERIC_ERROR_EVENT, SocketContext
from lifestream.realtime.handlers import dispatcher
from lifestream.services.identity import authenticate, socket_credential

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def socket_endpoint(websocket: WebSocket):
    """
    Authenticated event socket.

    The handshake is refused with 1008 before accept when the credential
    does not resolve to an active user, so an unauthenticated connection
    never joins a room or receives an event.
    """
    manager = websocket.app.state.connection_manager
    session_factory = websocket.app.state.session_factory

    try:
        credential = socket_credential(websocket)
        async with session_factory() as db:
            identity = await authenticate(credential, db)
    except PersistenceError:
        logger.error("Socket handshake failed: identity store unavailable")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    except AuthenticationError as e:
        client = websocket.client.host if websocket.client else "unknown"
        logger.warning(f"Socket handshake rejected from {client}: {e.code}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return
    except LifeStreamError as e:
        logger.warning(f"Socket handshake rejected: {e.code}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    session = manager.connect(websocket, identity)
    ctx = SocketContext(session=session, manager=manager, session_factory=session_factory)
    try:
        await ctx.emit("welcome", {
            "message": "Connected to LifeStream",
            "socketId": session.id,
            "userId": identity.id,
            "timestamp": datetime.now(timezone.utc),
        })
        # Events from one connection are handled strictly in arrival order
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"Session {session.id} closed by client (code {message.get('code')})")
                break
            raw = message.get("text")
            if raw is None:
                await ctx.emit(GENERIC_ERROR_EVENT, ValidationError("Binary frames are not supported").to_payload())
                continue
            await dispatcher.dispatch(ctx, raw)
    except WebSocketDisconnect as e:
        logger.info(f"Session {session.id} closed by client (code {e.code})")
    finally:
        manager.disconnect(session)
