from fastapi import Request, WebSocket

from app.services.relay_hub import RelayHub
from app.services.room_directory import MatchmakingDirectory


def get_directory(request: Request) -> MatchmakingDirectory:
    return request.app.state.directory


def get_relay_hub(websocket: WebSocket) -> RelayHub:
    return websocket.app.state.relay_hub
