"""Payment reconciliation.

The gateway is the authority on whether a booking has been charged. Three
paths bring the booking in line with it: the primary ``confirm`` (gateway
queried for the booking's own checkout session), the gateway webhook, and
``reconcile_missing`` for when neither of those ever happened and the client
comes back with a session id. All three settle through ``_settle``, which
writes the payment record and moves the booking to ``paid`` in one
transaction.
"""

import logging
import sqlite3
from decimal import Decimal
from typing import Literal, Optional

from marketplace.errors import (
    InvalidFeeError,
    InvalidTransitionError,
    NotFoundError,
    PaymentIncompleteError,
    SessionMismatchError,
    UnauthorizedError,
)
from marketplace.models import (
    Booking,
    BookingStatus,
    CheckoutSession,
    GatewaySessionStatus,
    PaymentMetadata,
    PaymentRecord,
    money_to_cents,
)
from marketplace.services.booking_store import Actor, BookingStore, booking_store
from marketplace.services.catalog_store import CatalogStore, catalog_store
from marketplace.services.payment_gateway import CHECKOUT_COMPLETED_EVENT, PaymentGateway, build_gateway
from marketplace.services.profile_store import ProfileStore, profile_store
from marketplace.services.sqlite_base import SqliteStore, configured_db_path, utc_now

logger = logging.getLogger(__name__)

PaymentSource = Literal["confirmation", "webhook", "manual_reconciliation"]


class PaymentLedger(SqliteStore):
    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS checkout_sessions (
                session_id TEXT PRIMARY KEY,
                booking_id TEXT NOT NULL,
                checkout_url TEXT NOT NULL,
                amount_cents INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS payment_records (
                booking_id TEXT PRIMARY KEY,
                gateway_session_id TEXT NOT NULL UNIQUE,
                amount_cents INTEGER NOT NULL,
                status TEXT NOT NULL,
                service_name TEXT NOT NULL DEFAULT '',
                provider_name TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_checkout_booking ON checkout_sessions(booking_id)")

    def record_checkout(self, session: CheckoutSession) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO checkout_sessions (session_id, booking_id, checkout_url, amount_cents, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session.session_id, session.booking_id, session.checkout_url, session.amount_cents, session.created_at),
            )

    def latest_checkout(self, booking_id: str) -> Optional[CheckoutSession]:
        with self.reading() as conn:
            row = conn.execute(
                """
                SELECT * FROM checkout_sessions
                WHERE booking_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (booking_id,),
            ).fetchone()
        return self._row_to_checkout(row) if row else None

    def checkout_booking_id(self, session_id: str) -> Optional[str]:
        with self.reading() as conn:
            row = conn.execute("SELECT booking_id FROM checkout_sessions WHERE session_id = ?", (session_id,)).fetchone()
        return str(row["booking_id"]) if row else None

    def get_payment(self, booking_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[PaymentRecord]:
        if conn is not None:
            row = conn.execute("SELECT * FROM payment_records WHERE booking_id = ?", (booking_id,)).fetchone()
        else:
            with self.reading() as reader:
                row = reader.execute("SELECT * FROM payment_records WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_payment(row) if row else None

    def insert_payment(self, conn: sqlite3.Connection, record: PaymentRecord) -> None:
        conn.execute(
            """
            INSERT INTO payment_records (
                booking_id, gateway_session_id, amount_cents, status, service_name, provider_name, source, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.booking_id,
                record.gateway_session_id,
                record.amount_cents,
                record.status,
                record.metadata.service_name,
                record.metadata.provider_name,
                record.source,
                record.created_at,
            ),
        )

    def _row_to_checkout(self, row: sqlite3.Row) -> CheckoutSession:
        return CheckoutSession(
            booking_id=row["booking_id"],
            session_id=row["session_id"],
            checkout_url=row["checkout_url"],
            amount_cents=row["amount_cents"],
            created_at=row["created_at"],
        )

    def _row_to_payment(self, row: sqlite3.Row) -> PaymentRecord:
        return PaymentRecord(
            booking_id=row["booking_id"],
            gateway_session_id=row["gateway_session_id"],
            amount_cents=row["amount_cents"],
            status=row["status"],
            metadata=PaymentMetadata(service_name=row["service_name"], provider_name=row["provider_name"]),
            source=row["source"],
            created_at=row["created_at"],
        )


class PaymentReconciler:
    def __init__(
        self,
        bookings: BookingStore,
        ledger: PaymentLedger,
        gateway: PaymentGateway,
        catalog: CatalogStore,
        profiles: ProfileStore,
    ) -> None:
        if bookings.db_path != ledger.db_path:
            raise ValueError("Payment ledger must share the booking database")
        self.bookings = bookings
        self.ledger = ledger
        self.gateway = gateway
        self.catalog = catalog
        self.profiles = profiles

    def initiate_checkout(self, booking_id: str, actor: Actor, amount: Optional[Decimal] = None) -> CheckoutSession:
        booking = self.bookings.get_booking(booking_id)
        if not actor.verdict.is_client or actor.user_id != booking.client_id:
            raise UnauthorizedError("Only the booking's client can pay for it")
        if booking.status != BookingStatus.ACCEPTED or booking.fee_cents is None:
            raise InvalidTransitionError(f"Booking is {booking.status.value}; only accepted bookings can be paid")
        if amount is not None:
            try:
                requested_cents = money_to_cents(amount)
            except ValueError as exc:
                raise InvalidFeeError(str(exc)) from exc
            if requested_cents != booking.fee_cents:
                raise InvalidFeeError("Checkout amount must match the accepted fee")

        checkout = self.gateway.create_checkout_session(
            booking_id=booking.id,
            amount_cents=booking.fee_cents,
            metadata=self._metadata_for(booking),
        )
        session = CheckoutSession(
            booking_id=booking.id,
            session_id=checkout.session_id,
            checkout_url=checkout.url,
            amount_cents=booking.fee_cents,
            created_at=utc_now(),
        )
        self.ledger.record_checkout(session)
        logger.info("Checkout session %s created for booking %s", session.session_id, booking.id)
        return session

    def confirm(self, booking_id: str) -> PaymentRecord:
        existing = self.ledger.get_payment(booking_id)
        if existing:
            return existing
        self.bookings.get_booking(booking_id)
        checkout = self.ledger.latest_checkout(booking_id)
        if checkout is None:
            raise NotFoundError("No checkout session found for this booking")
        status = self.gateway.get_session_status(checkout.session_id)
        return self._settle(booking_id, status, source="confirmation")

    def reconcile_missing(self, booking_id: str, session_id: str) -> PaymentRecord:
        existing = self.ledger.get_payment(booking_id)
        if existing:
            return existing
        self.bookings.get_booking(booking_id)
        session_id = session_id.strip()
        if not session_id:
            raise SessionMismatchError("Payment session id is required")

        known_booking = self.ledger.checkout_booking_id(session_id)
        if known_booking is not None and known_booking != booking_id:
            logger.warning("Session %s belongs to booking %s, not %s", session_id, known_booking, booking_id)
            raise SessionMismatchError("Payment session does not belong to this booking")

        status = self.gateway.get_session_status(session_id)
        return self._settle(booking_id, status, source="manual_reconciliation")

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentRecord]:
        event = self.gateway.parse_webhook(payload, signature)
        if event.type != CHECKOUT_COMPLETED_EVENT:
            logger.info("Ignoring gateway event %s", event.type)
            return None
        booking_id = event.booking_id or self.ledger.checkout_booking_id(event.session_id)
        if not booking_id:
            logger.warning("Gateway event for unknown session %s", event.session_id)
            raise NotFoundError("No booking for this payment session")
        existing = self.ledger.get_payment(booking_id)
        if existing:
            return existing
        status = self.gateway.get_session_status(event.session_id)
        return self._settle(booking_id, status, source="webhook")

    def get_payment(self, booking_id: str) -> PaymentRecord:
        record = self.ledger.get_payment(booking_id)
        if record is None:
            raise NotFoundError("Payment not found")
        return record

    def _settle(self, booking_id: str, status: GatewaySessionStatus, source: PaymentSource) -> PaymentRecord:
        if status.booking_id != booking_id:
            logger.warning(
                "Session %s reports booking %s, expected %s",
                status.session_id,
                status.booking_id,
                booking_id,
            )
            raise SessionMismatchError("Payment session does not belong to this booking")
        if not status.paid:
            raise PaymentIncompleteError("Payment has not completed yet; please retry checkout")

        booking = self.bookings.get_booking(booking_id)
        if booking.fee_cents != status.amount_cents:
            raise SessionMismatchError("Charged amount does not match the booking fee")

        record = PaymentRecord(
            booking_id=booking_id,
            gateway_session_id=status.session_id,
            amount_cents=status.amount_cents,
            metadata=PaymentMetadata(
                service_name=status.metadata.get("service_name", ""),
                provider_name=status.metadata.get("provider_name", ""),
            ),
            source=source,
            created_at=utc_now(),
        )
        try:
            with self.ledger.transaction() as conn:
                existing = self.ledger.get_payment(booking_id, conn=conn)
                if existing:
                    return existing
                self.ledger.insert_payment(conn, record)
                self.bookings.mark_paid(conn, booking_id, status.amount_cents)
        except sqlite3.IntegrityError:
            # Lost the insert race to a concurrent settle for the same booking.
            existing = self.ledger.get_payment(booking_id)
            if existing is None:
                raise
            return existing
        logger.info("Payment recorded for booking %s via %s (%s cents)", booking_id, source, status.amount_cents)
        return record

    def _metadata_for(self, booking: Booking) -> PaymentMetadata:
        return PaymentMetadata(
            service_name=self.catalog.service_name(booking.service_id),
            provider_name=self.profiles.display_name(booking.provider_id),
        )


payment_ledger = PaymentLedger(db_path=configured_db_path())
payment_reconciler = PaymentReconciler(
    bookings=booking_store,
    ledger=payment_ledger,
    gateway=build_gateway(),
    catalog=catalog_store,
    profiles=profile_store,
)
