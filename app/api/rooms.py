"""
app.api.rooms
~~~~~~~~~~~~~

房间目录 REST 接口 —— 建房、匹配、释放。

路由前缀 ``/api``，所有房间相关操作统一在此处。

端点:
  - ``POST /rooms?userId=``            → 新建 waiting 房间 + 令牌
  - ``GET  /rooms?userId=``            → 认领一个 waiting 房间（可能为空）+ 令牌
  - ``PUT  /rooms/{room_id}?userId=``  → 调用者离开，房间回到 waiting 或被回收
  - ``GET  /rooms/{room_id}``          → 房间详情
"""
from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_directory
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.schemas.api_response import ApiResponse
from app.schemas.rooms import CreateRoomData, ReleaseRoomData, RoomData, RoomListData
from app.services.room_directory import MatchmakingDirectory

router: APIRouter = APIRouter()

_USER_ID = Query(..., alias="userId", min_length=1, max_length=64, description="临时用户 ID")


@router.post("/rooms", summary="新建房间", response_model=ApiResponse[CreateRoomData])
@limiter.limit(settings.ROOMS_RATE_LIMIT)
async def create_room(
    request: Request,
    user_id: str = _USER_ID,
    directory: MatchmakingDirectory = Depends(get_directory),
):
    """新建一个 waiting 房间，调用者是唯一参与者。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        user_id: 调用者的临时用户 ID。
    """
    data = await directory.create_room(user_id)
    return ApiResponse.ok(data=data)


@router.get("/rooms", summary="匹配房间", response_model=ApiResponse[RoomListData])
@limiter.limit(settings.ROOMS_RATE_LIMIT)
async def request_room(
    request: Request,
    user_id: str = _USER_ID,
    directory: MatchmakingDirectory = Depends(get_directory),
):
    """认领一个 waiting 房间。

    ``rooms`` 为空表示暂无可加入的房间，调用方应改为 ``POST /rooms``。
    """
    data = await directory.request_room(user_id)
    return ApiResponse.ok(data=data)


@router.put("/rooms/{room_id}", summary="释放房间", response_model=ApiResponse[ReleaseRoomData])
@limiter.limit(settings.ROOMS_RATE_LIMIT)
async def release_room(
    request: Request,
    room_id: str,
    user_id: str = _USER_ID,
    directory: MatchmakingDirectory = Depends(get_directory),
):
    """调用者离开房间：剩一人则回到 waiting，无人则关闭回收。

    房间不存在时返回 404。
    """
    data = await directory.release_room(room_id, user_id)
    return ApiResponse.ok(data=data)


@router.get("/rooms/{room_id}", summary="房间详情", response_model=ApiResponse[RoomData])
@limiter.limit(settings.ROOMS_RATE_LIMIT)
async def room_info(
    request: Request,
    room_id: str,
    directory: MatchmakingDirectory = Depends(get_directory),
):
    data = await directory.get_room(room_id)
    return ApiResponse.ok(data=data)
