import logging
import os
from typing import Iterator, List, Optional, Protocol

from marketplace.errors import NotFoundError, ValidationError
from marketplace.models import BookingSnapshot, ChatThreadMetadata, ChatThreadSummary, RecentThreadsView
from marketplace.services.booking_store import BookingStore, booking_store
from marketplace.services.catalog_store import CatalogStore, catalog_store
from marketplace.services.chat_store import chat_store
from marketplace.services.profile_store import ProfileStore, profile_store

logger = logging.getLogger(__name__)


def _recent_limit() -> int:
    try:
        value = int(os.getenv("RECENT_THREADS_LIMIT", "5"))
    except ValueError:
        return 5
    return value if value > 0 else 5


RECENT_THREADS_LIMIT = _recent_limit()
THREAD_ROLES = {"client", "provider"}


class ThreadSource(Protocol):
    def thread_metadata(self, user_id: str, booking_ids: List[str]) -> List[ChatThreadMetadata]: ...


class RecentThreads:
    """Top-N thread summaries, joined to bookings each time it is iterated."""

    def __init__(self, aggregator: "ChatThreadAggregator", user_id: str, role: str, entries: List[ChatThreadMetadata], limit: int):
        self._aggregator = aggregator
        self._user_id = user_id
        self._role = role
        self._entries = entries
        self.limit = limit

    @property
    def total_count(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChatThreadSummary]:
        yielded = 0
        for entry in self._entries:
            if yielded >= self.limit:
                return
            summary = self._aggregator.summarize(self._user_id, self._role, entry)
            if summary is None:
                continue
            yielded += 1
            yield summary

    def view(self) -> RecentThreadsView:
        return RecentThreadsView(threads=list(self), total_count=self.total_count)


class ChatThreadAggregator:
    def __init__(
        self,
        bookings: BookingStore,
        threads: ThreadSource,
        catalog: CatalogStore,
        profiles: ProfileStore,
        limit: int = RECENT_THREADS_LIMIT,
    ) -> None:
        self.bookings = bookings
        self.threads = threads
        self.catalog = catalog
        self.profiles = profiles
        self.limit = limit

    def recent_threads(self, user_id: str, role: str) -> RecentThreads:
        normalized_role = (role or "").strip().lower()
        if normalized_role not in THREAD_ROLES:
            raise ValidationError("Invalid role value. Allowed: client, provider")
        booking_ids = [booking.id for booking in self.bookings.list_bookings_for_user(user_id, normalized_role)]
        listed = set(booking_ids)
        entries = [entry for entry in self.threads.thread_metadata(user_id, booking_ids) if entry.booking_id in listed]
        entries.sort(key=lambda entry: entry.last_message_at, reverse=True)
        return RecentThreads(self, user_id, normalized_role, entries, self.limit)

    def summarize(self, user_id: str, role: str, entry: ChatThreadMetadata) -> Optional[ChatThreadSummary]:
        try:
            booking = self.bookings.get_booking(entry.booking_id)
        except NotFoundError:
            logger.warning("Chat thread %s has no booking", entry.booking_id)
            return None
        counterpart_id = booking.provider_id if role == "client" else booking.client_id
        return ChatThreadSummary(
            booking_id=entry.booking_id,
            last_message=entry.last_message,
            last_message_at=entry.last_message_at,
            unread_count=entry.unread_count,
            booking=BookingSnapshot(
                service_name=self.catalog.service_name(booking.service_id),
                counterpart_name=self.profiles.display_name(counterpart_id),
                status=booking.status,
                scheduled_time=booking.scheduled_time,
            ),
        )


chat_thread_aggregator = ChatThreadAggregator(
    bookings=booking_store,
    threads=chat_store,
    catalog=catalog_store,
    profiles=profile_store,
)
