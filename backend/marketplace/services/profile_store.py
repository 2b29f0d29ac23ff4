import asyncio
import logging
import sqlite3

from marketplace.errors import ValidationError
from marketplace.models import (
    ClientProfile,
    ClientProfileRequest,
    ProfileFlags,
    ProfileOverview,
    ProviderProfile,
    ProviderProfileRequest,
    RoleRecord,
)
from marketplace.services.sqlite_base import SqliteStore, configured_db_path, utc_now

logger = logging.getLogger(__name__)


class ProfileStore(SqliteStore):
    """Durable record of which client/provider profiles a user holds."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS client_profiles (
                user_id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                phone TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS provider_profiles (
                user_id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                trade TEXT NOT NULL,
                bio TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
            """
        )

    def upsert_client_profile(self, user_id: str, request: ClientProfileRequest) -> ClientProfile:
        full_name = request.full_name.strip()
        if not full_name:
            raise ValidationError("Full name is required")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO client_profiles (user_id, full_name, phone, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    full_name = excluded.full_name,
                    phone = excluded.phone
                """,
                (user_id, full_name, request.phone, utc_now()),
            )
            row = conn.execute("SELECT * FROM client_profiles WHERE user_id = ?", (user_id,)).fetchone()
        logger.info("Client profile saved for %s", user_id)
        return self._client_from_row(row)

    def upsert_provider_profile(self, user_id: str, request: ProviderProfileRequest) -> ProviderProfile:
        full_name = request.full_name.strip()
        trade = request.trade.strip()
        if not full_name:
            raise ValidationError("Full name is required")
        if not trade:
            raise ValidationError("Trade is required")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO provider_profiles (user_id, full_name, trade, bio, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    full_name = excluded.full_name,
                    trade = excluded.trade,
                    bio = excluded.bio
                """,
                (user_id, full_name, trade, request.bio.strip(), utc_now()),
            )
            row = conn.execute("SELECT * FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
        logger.info("Provider profile saved for %s", user_id)
        return self._provider_from_row(row)

    def get_overview(self, user_id: str) -> ProfileOverview:
        with self.reading() as conn:
            client_row = conn.execute("SELECT * FROM client_profiles WHERE user_id = ?", (user_id,)).fetchone()
            provider_row = conn.execute("SELECT * FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return ProfileOverview(
            user_id=user_id,
            client_profile=self._client_from_row(client_row) if client_row else None,
            provider_profile=self._provider_from_row(provider_row) if provider_row else None,
        )

    def get_flags(self, user_id: str) -> ProfileFlags:
        with self.reading() as conn:
            row = conn.execute(
                """
                SELECT
                    EXISTS(SELECT 1 FROM client_profiles WHERE user_id = ?) AS has_client,
                    EXISTS(SELECT 1 FROM provider_profiles WHERE user_id = ?) AS has_provider
                """,
                (user_id, user_id),
            ).fetchone()
        return ProfileFlags(
            has_client_profile=bool(row["has_client"]),
            has_provider_profile=bool(row["has_provider"]),
        )

    async def fetch_flags(self, user_id: str) -> ProfileFlags:
        return await asyncio.to_thread(self.get_flags, user_id)

    def display_name(self, user_id: str) -> str:
        """Provider name wins over client name; falls back to the raw user id."""
        with self.reading() as conn:
            row = conn.execute("SELECT full_name FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
            if not row:
                row = conn.execute("SELECT full_name FROM client_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return str(row["full_name"]) if row else user_id

    def _client_from_row(self, row: sqlite3.Row) -> ClientProfile:
        return ClientProfile(
            user_id=row["user_id"],
            full_name=row["full_name"],
            phone=row["phone"],
            created_at=row["created_at"],
        )

    def _provider_from_row(self, row: sqlite3.Row) -> ProviderProfile:
        return ProviderProfile(
            user_id=row["user_id"],
            full_name=row["full_name"],
            trade=row["trade"],
            bio=row["bio"],
            created_at=row["created_at"],
        )


def role_record_from_flags(user_id: str, flags: ProfileFlags) -> RoleRecord:
    role: str = "none"
    if flags.has_provider_profile:
        role = "provider"
    elif flags.has_client_profile:
        role = "client"
    return RoleRecord(
        user_id=user_id,
        role=role,  # type: ignore[arg-type]
        has_client_profile=flags.has_client_profile,
        has_provider_profile=flags.has_provider_profile,
    )


profile_store = ProfileStore(db_path=configured_db_path())
