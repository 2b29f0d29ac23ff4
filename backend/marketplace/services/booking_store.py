import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from marketplace.errors import (
    ConflictError,
    InvalidFeeError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from marketplace.models import (
    Booking,
    BookingAction,
    BookingCreateRequest,
    BookingStatus,
    BookingStatusChange,
    BookingTransitionResult,
    Coordinates,
    Location,
    RoleVerdict,
    Service,
    cents_to_money,
    money_to_cents,
)
from marketplace.services.sqlite_base import SqliteStore, configured_db_path, utc_now

logger = logging.getLogger(__name__)

ActorKind = Literal["client", "provider", "system"]


@dataclass(frozen=True)
class Actor:
    user_id: str
    verdict: RoleVerdict
    is_system: bool = False


SYSTEM_ACTOR = Actor(user_id="system", verdict=RoleVerdict(), is_system=True)


@dataclass(frozen=True)
class Edge:
    source: BookingStatus
    target: BookingStatus
    actor: ActorKind


TRANSITIONS: Dict[BookingAction, Edge] = {
    BookingAction.ACCEPT: Edge(BookingStatus.PENDING, BookingStatus.ACCEPTED, "provider"),
    BookingAction.REJECT: Edge(BookingStatus.PENDING, BookingStatus.REJECTED, "provider"),
    BookingAction.PAY: Edge(BookingStatus.ACCEPTED, BookingStatus.PAID, "system"),
    BookingAction.MARK_DONE: Edge(BookingStatus.PAID, BookingStatus.DONE, "provider"),
    BookingAction.COMPLETE: Edge(BookingStatus.DONE, BookingStatus.COMPLETED, "client"),
}

_unmapped_actions = set(BookingAction) - set(TRANSITIONS)
if _unmapped_actions:
    raise RuntimeError(f"Booking actions without a transition: {sorted(a.value for a in _unmapped_actions)}")

TERMINAL_STATUSES = frozenset(
    status for status in BookingStatus if not any(edge.source == status for edge in TRANSITIONS.values())
)

BOOKING_ROLES = {"all", "client", "provider"}


class BookingStore(SqliteStore):
    """Booking records and the only code path that changes their status.

    Status changes commit with ``WHERE status = ? AND version = ?`` against
    the snapshot the decision was made on; losing that race is a
    ``ConflictError`` and the caller re-reads.
    """

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bookings (
                id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                service_id TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                address TEXT NOT NULL,
                latitude REAL,
                longitude REAL,
                scheduled_time TEXT NOT NULL,
                fee_cents INTEGER,
                status TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS booking_status_history (
                id TEXT PRIMARY KEY,
                booking_id TEXT NOT NULL,
                actor_user_id TEXT NOT NULL,
                action TEXT NOT NULL,
                from_status TEXT NOT NULL,
                to_status TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_client ON bookings(client_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings(provider_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_booking_history ON booking_status_history(booking_id)")

    def create_booking(self, client: Actor, request: BookingCreateRequest, service: Service) -> Booking:
        if not client.verdict.is_client:
            raise UnauthorizedError("Only clients can request a service")
        if service.id != request.service_id:
            raise ValidationError("Service does not match booking request")
        if service.provider_id == client.user_id:
            raise ValidationError("You cannot book your own service")
        if not request.location.address.strip():
            raise ValidationError("Address is required")
        scheduled_time = self._parse_scheduled_time(request.scheduled_time)

        now = utc_now()
        booking = Booking(
            id=f"bk_{uuid4().hex[:10]}",
            client_id=client.user_id,
            provider_id=service.provider_id,
            service_id=service.id,
            description=request.description.strip(),
            location=Location(
                address=request.location.address.strip(),
                coordinates=request.location.coordinates,
            ),
            scheduled_time=scheduled_time,
            fee=None,
            status=BookingStatus.PENDING,
            created_at=now,
            updated_at=now,
            version=1,
        )
        coordinates = booking.location.coordinates
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO bookings (
                    id, client_id, provider_id, service_id, description, address, latitude, longitude,
                    scheduled_time, fee_cents, status, version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    booking.id,
                    booking.client_id,
                    booking.provider_id,
                    booking.service_id,
                    booking.description,
                    booking.location.address,
                    coordinates.latitude if coordinates else None,
                    coordinates.longitude if coordinates else None,
                    booking.scheduled_time,
                    None,
                    booking.status.value,
                    booking.version,
                    booking.created_at,
                    booking.updated_at,
                ),
            )
        logger.info("Booking %s requested by %s for service %s", booking.id, client.user_id, service.id)
        return booking

    def get_booking(self, booking_id: str) -> Booking:
        with self.reading() as conn:
            return self._load_booking(conn, booking_id)

    def get_booking_for(self, actor: Actor, booking_id: str) -> Booking:
        booking = self.get_booking(booking_id)
        if actor.user_id not in {booking.client_id, booking.provider_id}:
            raise UnauthorizedError("Only booking participants can view this booking")
        return booking

    def list_bookings_for_user(self, user_id: str, role: str = "all") -> List[Booking]:
        normalized_role = (role or "all").strip().lower()
        if normalized_role not in BOOKING_ROLES:
            raise ValidationError("Invalid role value. Allowed: all, client, provider")

        query = "SELECT * FROM bookings"
        params: List[Any] = []
        if normalized_role == "client":
            query += " WHERE client_id = ?"
            params.append(user_id)
        elif normalized_role == "provider":
            query += " WHERE provider_id = ?"
            params.append(user_id)
        else:
            query += " WHERE client_id = ? OR provider_id = ?"
            params.extend([user_id, user_id])
        query += " ORDER BY created_at DESC, id DESC"

        with self.reading() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def history(self, booking_id: str) -> List[BookingStatusChange]:
        with self.reading() as conn:
            self._load_booking(conn, booking_id)
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
                (booking_id,),
            ).fetchall()
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_user_id=row["actor_user_id"],
                action=BookingAction(row["action"]),
                from_status=BookingStatus(row["from_status"]),
                to_status=BookingStatus(row["to_status"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def transition(
        self,
        booking_id: str,
        action: BookingAction,
        actor: Actor,
        *,
        fee: Optional[Decimal] = None,
        expected_status: Optional[BookingStatus] = None,
    ) -> BookingTransitionResult:
        edge = TRANSITIONS[action]
        booking = self._read_booking(booking_id)
        self._authorize(booking, edge, actor)

        if edge.actor == "system":
            raise InvalidTransitionError("Bookings are marked paid only by payment confirmation")

        fee_cents = self._validated_fee(fee) if action == BookingAction.ACCEPT and fee is not None else None

        if booking.status == edge.target:
            if fee_cents is not None and fee_cents != booking.fee_cents:
                raise InvalidTransitionError("Booking already accepted with a different fee")
            logger.info("Ignoring repeated %s on booking %s", action.value, booking_id)
            return BookingTransitionResult(booking=booking, applied=False)

        if expected_status is not None and booking.status != expected_status:
            raise ConflictError(f"Booking is {booking.status.value}, expected {expected_status.value}; reload and retry")

        if booking.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Booking is already {booking.status.value}")
        if booking.status != edge.source:
            raise InvalidTransitionError(f"Cannot {action.value} a booking that is {booking.status.value}")

        if action == BookingAction.ACCEPT:
            if fee_cents is None:
                raise InvalidFeeError("A fee is required to accept a booking")
        else:
            fee_cents = booking.fee_cents

        with self.transaction() as conn:
            self._apply(conn, booking, action, edge, actor.user_id, fee_cents)
            updated = self._load_booking(conn, booking_id)
        logger.info(
            "Booking %s: %s -> %s by %s",
            booking_id,
            edge.source.value,
            edge.target.value,
            actor.user_id,
        )
        return BookingTransitionResult(booking=updated, applied=True)

    def mark_paid(self, conn: sqlite3.Connection, booking_id: str, amount_cents: int) -> Booking:
        """Apply accepted -> paid inside the caller's payment transaction.

        The payment record for ``booking_id`` must already be written on
        ``conn``; both commit or roll back together.
        """
        action = BookingAction.PAY
        edge = TRANSITIONS[action]
        booking = self._load_booking(conn, booking_id)
        if booking.status != edge.source:
            raise InvalidTransitionError(f"Cannot mark a {booking.status.value} booking as paid")
        if booking.fee_cents != amount_cents:
            raise InvalidFeeError("Charged amount does not match the booking fee")
        recorded = conn.execute("SELECT 1 FROM payment_records WHERE booking_id = ?", (booking_id,)).fetchone()
        if not recorded:
            raise InvalidTransitionError("A payment must be recorded before the booking is marked paid")
        self._apply(conn, booking, action, edge, SYSTEM_ACTOR.user_id, booking.fee_cents)
        return self._load_booking(conn, booking_id)

    def _authorize(self, booking: Booking, edge: Edge, actor: Actor) -> None:
        if edge.actor == "system":
            if not actor.is_system:
                raise UnauthorizedError("Only payment confirmation can mark a booking paid")
            return
        if edge.actor == "provider":
            if not actor.verdict.is_provider or actor.user_id != booking.provider_id:
                raise UnauthorizedError("Only the booking's provider can apply this action")
            return
        if not actor.verdict.is_client or actor.user_id != booking.client_id:
            raise UnauthorizedError("Only the booking's client can apply this action")

    def _validated_fee(self, fee: Decimal) -> int:
        if not fee.is_finite() or fee <= 0:
            raise InvalidFeeError("Fee must be greater than 0")
        try:
            return money_to_cents(fee)
        except ValueError as exc:
            raise InvalidFeeError(str(exc)) from exc

    def _apply(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        action: BookingAction,
        edge: Edge,
        actor_user_id: str,
        fee_cents: Optional[int],
    ) -> None:
        now = utc_now()
        cursor = conn.execute(
            """
            UPDATE bookings
            SET status = ?, fee_cents = ?, version = version + 1, updated_at = ?
            WHERE id = ? AND status = ? AND version = ?
            """,
            (edge.target.value, fee_cents, now, booking.id, edge.source.value, booking.version),
        )
        if cursor.rowcount != 1:
            raise ConflictError("Booking was changed by another request; reload and retry")
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, action, from_status, to_status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"bsh_{uuid4().hex[:10]}",
                booking.id,
                actor_user_id,
                action.value,
                edge.source.value,
                edge.target.value,
                now,
            ),
        )

    def _read_booking(self, booking_id: str) -> Booking:
        return self.get_booking(booking_id)

    def _load_booking(self, conn: sqlite3.Connection, booking_id: str) -> Booking:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return self._row_to_booking(row)

    def _parse_scheduled_time(self, value: str) -> str:
        raw = (value or "").strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError("Invalid scheduled_time; expected ISO 8601 datetime") from exc
        return parsed.isoformat()

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        coordinates = None
        if row["latitude"] is not None and row["longitude"] is not None:
            coordinates = Coordinates(latitude=row["latitude"], longitude=row["longitude"])
        return Booking(
            id=row["id"],
            client_id=row["client_id"],
            provider_id=row["provider_id"],
            service_id=row["service_id"],
            description=row["description"],
            location=Location(address=row["address"], coordinates=coordinates),
            scheduled_time=row["scheduled_time"],
            fee=cents_to_money(row["fee_cents"]),
            status=BookingStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
        )


booking_store = BookingStore(db_path=configured_db_path())
