from fastapi import Request

from chatrelay.core.changes import ChangeFeed
from chatrelay.core.ratelimit import RateLimiter
from chatrelay.services.chats import ChatRepository
from chatrelay.services.relay import ChatRelay
from chatrelay.services.sessions import StreamSessionStore
from chatrelay.services.storage import ObjectStore


# Components are built once in create_app() and live on app.state

def get_relay(request: Request) -> ChatRelay:
    return request.app.state.relay


def get_chats(request: Request) -> ChatRepository:
    return request.app.state.chats


def get_sessions(request: Request) -> StreamSessionStore:
    return request.app.state.sessions


def get_storage(request: Request) -> ObjectStore:
    return request.app.state.storage


def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
