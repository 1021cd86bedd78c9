"""
app.geo.geofence
~~~~~~~~~~~~~~~~

校园地理围栏 —— 根据两点之间的球面距离判断是否允许进入。

``is_within_radius`` 是纯函数：不校验输入，越界经纬度也只会按三角恒等式
得到一个距离，永不抛异常。``check_campus_access`` 负责一次性读取坐标并给出
面向用户的结论。
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from app.core.exceptions import GeolocationUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM: float = 6371.0

# VIT 校园参考坐标与允许半径（固定常量，不走配置）
CAMPUS_LATITUDE: float = 12.9692
CAMPUS_LONGITUDE: float = 79.1559
CAMPUS_RADIUS_KM: float = 5.0

MSG_GEOLOCATION_UNAVAILABLE = "Geolocation permission denied or unavailable."
MSG_OUTSIDE_CAMPUS = "Access Denied: You are not on the VIT campus."
MSG_WELCOME = "Welcome to the VIT Campus!"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """两点之间的大圆距离（公里），地球按半径 6371 km 的球体计算。"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_within_radius(
    lat1: float, lng1: float, lat2: float, lng2: float, radius_km: float,
) -> bool:
    """两点距离不超过 ``radius_km`` 时返回 True（恰好等于半径也算在内）。"""
    return haversine_km(lat1, lng1, lat2, lng2) <= radius_km


# ── 坐标读取边界 ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


class CoordinateReader(Protocol):
    """一次性坐标读取（浏览器定位、GPS 等）。

    无法获取坐标时必须抛出 ``GeolocationUnavailable``。
    """

    async def read(self) -> Coordinates: ...


@dataclass(frozen=True)
class AccessDecision:
    """准入结论。``granted`` 为 False 时，``message`` 应作为全屏提示展示。"""

    granted: bool
    message: str


async def check_campus_access(reader: CoordinateReader) -> AccessDecision:
    """读取一次坐标并判断是否位于校园半径内。不自动重试。"""
    try:
        coords = await reader.read()
    except GeolocationUnavailable as e:
        logger.warning("无法获取地理坐标: %s", e)
        return AccessDecision(granted=False, message=MSG_GEOLOCATION_UNAVAILABLE)

    inside = is_within_radius(
        coords.latitude, coords.longitude,
        CAMPUS_LATITUDE, CAMPUS_LONGITUDE,
        CAMPUS_RADIUS_KM,
    )
    if not inside:
        logger.info(
            "校外访问被拒绝 | lat=%.4f | lng=%.4f", coords.latitude, coords.longitude,
        )
        return AccessDecision(granted=False, message=MSG_OUTSIDE_CAMPUS)
    return AccessDecision(granted=True, message=MSG_WELCOME)
