"""System messages posted into brand/creator chat rooms."""

import logging

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from nexa_platform.domain.enums import MessageType
from nexa_platform.domain.models import ChatRoom, Message
from nexa_platform.domain.timeutils import utcnow
from nexa_platform.infra.socket_relay import SocketRelay

logger = logging.getLogger(__name__)


class ChatService:
    """Writes chat messages and relays them to connected clients."""

    def __init__(self, db: AsyncSession, relay: SocketRelay | None = None):
        self.db = db
        self.relay = relay

    async def send_system_message(
        self,
        chat_room_id: str,
        message: str,
        data: BaseModel | dict | None = None,
    ) -> Message:
        """Create a ``system`` message (no sender) and push ``new_message``.

        The row is flushed, not committed. Relay failures are logged by the
        relay and never propagate.
        """
        room = await self.db.get(ChatRoom, chat_room_id)
        if room is None:
            raise LookupError(f"Chat room {chat_room_id} not found")

        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", exclude_none=True)

        now = utcnow()
        chat_message = Message(
            chat_room_id=room.id,
            sender_id=None,
            message=message,
            message_type=MessageType.SYSTEM.value,
            offer_data=data,
            created_at=now,
        )
        self.db.add(chat_message)
        room.last_message_at = now
        await self.db.flush()

        logger.info("System message %s posted to room %s", chat_message.id, room.room_id)

        if self.relay is not None:
            await self.relay.emit(
                "new_message",
                {
                    "room_id": room.room_id,
                    "message": {
                        "id": chat_message.id,
                        "message": message,
                        "message_type": MessageType.SYSTEM.value,
                        "sender_id": None,
                        "offer_data": data,
                        "created_at": now.isoformat(),
                        "is_system_message": True,
                    },
                },
            )
        return chat_message
