import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.errors import NotFoundError, ValidationError
from marketplace.models import (
    BookingAction,
    BookingCreateRequest,
    BookingStatus,
    ChatMessage,
    ChatThreadMetadata,
    Location,
    ProviderProfileRequest,
    RoleVerdict,
    ServiceCreateRequest,
)
from marketplace.services.booking_store import Actor, BookingStore
from marketplace.services.catalog_store import CatalogStore
from marketplace.services.chat_store import ChatStore
from marketplace.services.chat_threads import ChatThreadAggregator
from marketplace.services.profile_store import ProfileStore

CLIENT = Actor(
    user_id="client_1",
    verdict=RoleVerdict(is_client=True, is_authenticated=True, is_verified=True),
)
PROVIDER = Actor(
    user_id="provider_1",
    verdict=RoleVerdict(is_client=True, is_provider=True, is_authenticated=True, is_verified=True),
)


class FixedThreads:
    """Thread source with explicit timestamps."""

    def __init__(self, timestamps):
        self.timestamps = timestamps

    def thread_metadata(self, user_id, booking_ids):
        entries = []
        for booking_id in booking_ids:
            if booking_id not in self.timestamps:
                continue
            at = self.timestamps[booking_id]
            entries.append(
                ChatThreadMetadata(
                    booking_id=booking_id,
                    last_message=ChatMessage(
                        id=f"msg_{booking_id}",
                        booking_id=booking_id,
                        sender_id=PROVIDER.user_id,
                        sender_name="Pat Plumber",
                        message="On my way",
                        created_at=at,
                    ),
                    last_message_at=at,
                    unread_count=1,
                )
            )
        return entries


@pytest.fixture
def setup(tmp_path):
    db_path = str(tmp_path / "chat.sqlite3")
    bookings = BookingStore(db_path=db_path)
    catalog = CatalogStore(db_path=db_path)
    profiles = ProfileStore(db_path=db_path)
    profiles.upsert_provider_profile(PROVIDER.user_id, ProviderProfileRequest(full_name="Pat Plumber", trade="plumbing"))
    service = catalog.add_service(
        PROVIDER.user_id,
        ServiceCreateRequest(name="Boiler service", category="plumbing", base_price=Decimal("70")),
    )
    booking_ids = []
    for day in range(1, 8):
        booking = bookings.create_booking(
            CLIENT,
            BookingCreateRequest(
                service_id=service.id,
                location=Location(address=f"{day} Mill Lane"),
                scheduled_time=f"2026-11-0{day}T10:00:00+00:00",
            ),
            service,
        )
        booking_ids.append(booking.id)
    return bookings, catalog, profiles, booking_ids


def test_recent_threads_are_newest_first_and_capped(setup):
    bookings, catalog, profiles, booking_ids = setup
    timestamps = {booking_id: f"2026-11-10T10:0{index}:00+00:00" for index, booking_id in enumerate(booking_ids)}
    aggregator = ChatThreadAggregator(bookings, FixedThreads(timestamps), catalog, profiles, limit=5)

    recent = aggregator.recent_threads(CLIENT.user_id, "client")
    summaries = list(recent)

    assert recent.total_count == 7
    assert [s.booking_id for s in summaries] == list(reversed(booking_ids))[:5]
    assert summaries[0].booking.service_name == "Boiler service"
    assert summaries[0].booking.counterpart_name == "Pat Plumber"
    assert summaries[0].booking.status == BookingStatus.PENDING


def test_recent_threads_can_be_iterated_again_and_reflect_booking_changes(setup):
    bookings, catalog, profiles, booking_ids = setup
    newest = booking_ids[0]
    aggregator = ChatThreadAggregator(
        bookings,
        FixedThreads({newest: "2026-11-10T12:00:00+00:00"}),
        catalog,
        profiles,
    )
    recent = aggregator.recent_threads(PROVIDER.user_id, "provider")

    first_pass = list(recent)
    bookings.transition(newest, BookingAction.ACCEPT, PROVIDER, fee=Decimal("70"))
    second_pass = list(recent)

    assert len(first_pass) == len(second_pass) == 1
    assert first_pass[0].booking.status == BookingStatus.PENDING
    assert second_pass[0].booking.status == BookingStatus.ACCEPTED
    assert second_pass[0].booking.counterpart_name == CLIENT.user_id


def test_threads_without_messages_are_skipped(setup):
    bookings, catalog, profiles, _ = setup
    aggregator = ChatThreadAggregator(bookings, ChatStore(), catalog, profiles)

    view = aggregator.recent_threads(CLIENT.user_id, "client").view()
    assert view.threads == []
    assert view.total_count == 0


def test_role_must_be_client_or_provider(setup):
    bookings, catalog, profiles, _ = setup
    aggregator = ChatThreadAggregator(bookings, ChatStore(), catalog, profiles)
    with pytest.raises(ValidationError):
        aggregator.recent_threads(CLIENT.user_id, "all")


def test_unread_counts_ignore_own_messages_and_reset_on_read():
    chat = ChatStore()
    chat.post_message("bk_1", "client_1", "Casey", "Is Tuesday ok?")
    chat.post_message("bk_1", "provider_1", "Pat", "Yes")
    chat.post_message("bk_1", "provider_1", "Pat", "Around 10")

    [client_view] = chat.thread_metadata("client_1", ["bk_1", "bk_2"])
    [provider_view] = chat.thread_metadata("provider_1", ["bk_1"])
    assert client_view.unread_count == 2
    assert client_view.last_message.message == "Around 10"
    assert provider_view.unread_count == 0

    chat.mark_read("bk_1", "client_1")
    assert chat.thread_metadata("client_1", ["bk_1"])[0].unread_count == 0

    with pytest.raises(ValidationError):
        chat.post_message("bk_1", "client_1", "Casey", "   ")


class ThreadsWithOrphan(FixedThreads):
    """Also reports a thread whose booking was never listed for the user."""

    def thread_metadata(self, user_id, booking_ids):
        entries = super().thread_metadata(user_id, booking_ids)
        orphan = super().thread_metadata(user_id, ["bk_orphan"])
        return entries + orphan


def test_threads_outside_the_users_bookings_are_not_counted(setup):
    bookings, catalog, profiles, booking_ids = setup
    timestamps = {booking_id: f"2026-11-10T10:0{index}:00+00:00" for index, booking_id in enumerate(booking_ids[:2])}
    timestamps["bk_orphan"] = "2026-11-10T23:00:00+00:00"
    aggregator = ChatThreadAggregator(bookings, ThreadsWithOrphan(timestamps), catalog, profiles, limit=5)

    view = aggregator.recent_threads(CLIENT.user_id, "client").view()

    assert view.total_count == 2
    assert [thread.booking_id for thread in view.threads] == [booking_ids[1], booking_ids[0]]


def test_missing_booking_does_not_shrink_the_capped_view(setup, monkeypatch):
    bookings, catalog, profiles, booking_ids = setup
    timestamps = {booking_id: f"2026-11-10T10:0{index}:00+00:00" for index, booking_id in enumerate(booking_ids)}
    aggregator = ChatThreadAggregator(bookings, FixedThreads(timestamps), catalog, profiles, limit=5)
    vanished = booking_ids[-1]
    real_get_booking = bookings.get_booking

    def get_booking(booking_id):
        if booking_id == vanished:
            raise NotFoundError("Booking not found")
        return real_get_booking(booking_id)

    monkeypatch.setattr(bookings, "get_booking", get_booking)
    summaries = list(aggregator.recent_threads(CLIENT.user_id, "client"))

    assert len(summaries) == 5
    assert vanished not in [s.booking_id for s in summaries]
    assert [s.booking_id for s in summaries] == list(reversed(booking_ids[:-1]))[:5]
