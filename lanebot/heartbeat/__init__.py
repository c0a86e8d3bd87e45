"""心跳服务：定期在主会话中执行 HEARTBEAT.md 巡检。"""

from lanebot.heartbeat.service import HeartbeatService

__all__ = ["HeartbeatService"]
