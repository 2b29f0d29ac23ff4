import json
import logging
import sqlite3
from typing import Any, List, Optional
from uuid import uuid4

from marketplace.errors import DuplicateReviewError, InvalidTransitionError, UnauthorizedError, ValidationError
from marketplace.models import Booking, BookingStatus, Review, ReviewCreateRequest, ReviewListView
from marketplace.services.booking_store import Actor
from marketplace.services.sqlite_base import SqliteStore, configured_db_path, utc_now

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class ReviewStore(SqliteStore):
    """Client reviews of completed bookings, one per booking."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reviews (
                id TEXT PRIMARY KEY,
                booking_id TEXT NOT NULL UNIQUE,
                service_id TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                rating INTEGER NOT NULL,
                comment TEXT NOT NULL DEFAULT '',
                issues_json TEXT NOT NULL DEFAULT '[]',
                detailed_feedback TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reviews_service ON reviews(service_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reviews_provider ON reviews(provider_id)")

    def create_review(self, actor: Actor, booking: Booking, request: ReviewCreateRequest) -> Review:
        if booking.id != request.booking_id:
            raise ValidationError("Booking does not match review request")
        if not actor.verdict.is_client or actor.user_id != booking.client_id:
            raise UnauthorizedError("Only the booking's client can review it")
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidTransitionError(f"Booking is {booking.status.value}; only completed bookings can be reviewed")
        if not MIN_RATING <= request.rating <= MAX_RATING:
            raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

        issues = [issue.strip() for issue in request.issues if issue.strip()]
        review = Review(
            id=f"rev_{uuid4().hex[:10]}",
            booking_id=booking.id,
            service_id=booking.service_id,
            provider_id=booking.provider_id,
            client_id=booking.client_id,
            rating=request.rating,
            comment=request.comment.strip(),
            issues=issues,
            detailed_feedback=request.detailed_feedback.strip(),
            created_at=utc_now(),
        )
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO reviews (
                        id, booking_id, service_id, provider_id, client_id, rating,
                        comment, issues_json, detailed_feedback, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review.id,
                        review.booking_id,
                        review.service_id,
                        review.provider_id,
                        review.client_id,
                        review.rating,
                        review.comment,
                        json.dumps(review.issues),
                        review.detailed_feedback,
                        review.created_at,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateReviewError("This booking has already been reviewed") from exc
        logger.info("Review %s (%s stars) posted for booking %s", review.id, review.rating, booking.id)
        return review

    def list_reviews(self, service_id: Optional[str] = None, provider_id: Optional[str] = None) -> ReviewListView:
        query = "SELECT * FROM reviews WHERE 1 = 1"
        params: List[Any] = []
        if service_id:
            query += " AND service_id = ?"
            params.append(service_id)
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY created_at DESC, rowid DESC"
        with self.reading() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        reviews = [self._row_to_review(row) for row in rows]
        average = round(sum(r.rating for r in reviews) / len(reviews), 2) if reviews else None
        return ReviewListView(reviews=reviews, total_count=len(reviews), average_rating=average)

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        try:
            issues = json.loads(row["issues_json"] or "[]")
        except json.JSONDecodeError:
            issues = []
        return Review(
            id=row["id"],
            booking_id=row["booking_id"],
            service_id=row["service_id"],
            provider_id=row["provider_id"],
            client_id=row["client_id"],
            rating=row["rating"],
            comment=row["comment"],
            issues=issues if isinstance(issues, list) else [],
            detailed_feedback=row["detailed_feedback"],
            created_at=row["created_at"],
        )


review_store = ReviewStore(db_path=configured_db_path())
