from lifestream.core.exceptions import AuthorizationError

USER_ROOM_PREFIX = "user:"
CONVERSATION_ROOM_PREFIX = "conversation:"


def user_room(user_id: int) -> str:
    return f"{USER_ROOM_PREFIX}{user_id}"


def conversation_room(request_id: int) -> str:
    return f"{CONVERSATION_ROOM_PREFIX}{request_id}"


def authorize_user_room(identity_id: int, requested_user_id: int) -> str:
    """A session may only join its own private room."""
    if identity_id != requested_user_id:
        raise AuthorizationError("Cannot join another user's room")
    return user_room(identity_id)
