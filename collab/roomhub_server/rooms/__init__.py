"""
Room and message services for RoomHub.
"""

from .service import DirectRoom, JoinResult, MessageService, RoomService, direct_room_name

__all__ = ["DirectRoom", "JoinResult", "MessageService", "RoomService", "direct_room_name"]
