from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Tuple
from uuid import uuid4

from marketplace.errors import ValidationError
from marketplace.models import ChatMessage, ChatThreadMetadata


class ChatStore:
    """Booking-scoped message threads with per-participant read markers."""

    def __init__(self):
        self._lock = Lock()
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._read_markers: Dict[Tuple[str, str], int] = {}

    def post_message(self, booking_id: str, sender_id: str, sender_name: str, message: str) -> ChatMessage:
        text = message.strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        record = ChatMessage(
            id=f"msg_{uuid4().hex[:10]}",
            booking_id=booking_id,
            sender_id=sender_id,
            sender_name=sender_name,
            message=text,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            thread = self._messages.setdefault(booking_id, [])
            thread.append(record)
            self._read_markers[(booking_id, sender_id)] = len(thread)
        return record

    def mark_read(self, booking_id: str, user_id: str) -> None:
        with self._lock:
            self._read_markers[(booking_id, user_id)] = len(self._messages.get(booking_id, []))

    def list_messages(self, booking_id: str) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages.get(booking_id, []))

    def thread_metadata(self, user_id: str, booking_ids: Iterable[str]) -> List[ChatThreadMetadata]:
        threads: List[ChatThreadMetadata] = []
        with self._lock:
            for booking_id in booking_ids:
                thread = self._messages.get(booking_id)
                if not thread:
                    continue
                seen = self._read_markers.get((booking_id, user_id), 0)
                unread = sum(1 for msg in thread[seen:] if msg.sender_id != user_id)
                last = thread[-1]
                threads.append(
                    ChatThreadMetadata(
                        booking_id=booking_id,
                        last_message=last,
                        last_message_at=last.created_at,
                        unread_count=unread,
                    )
                )
        return threads


chat_store = ChatStore()
