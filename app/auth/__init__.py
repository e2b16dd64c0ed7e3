from app.auth.token import (
    CurrentUser,
    StreamUser,
    TokenPayload,
    get_current_user,
    get_stream_user,
    verify_token,
)

__all__ = [
    "TokenPayload", "get_current_user", "get_stream_user", "verify_token",
    "CurrentUser", "StreamUser",
]
