"""
Orderflow - Shared FastAPI dependencies
"""
from fastapi import Request

from orderflow.services.broadcast import BroadcastChannel


def get_broadcast(request: Request) -> BroadcastChannel:
    return request.app.state.broadcast
