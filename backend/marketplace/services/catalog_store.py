import logging
import sqlite3
from typing import List, Optional
from uuid import uuid4

from marketplace.errors import NotFoundError, ValidationError
from marketplace.models import Service, ServiceCreateRequest, cents_to_money, money_to_cents
from marketplace.services.sqlite_base import SqliteStore, configured_db_path, utc_now

logger = logging.getLogger(__name__)


class CatalogStore(SqliteStore):
    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS services (
                id TEXT PRIMARY KEY,
                provider_id TEXT NOT NULL,
                name TEXT NOT NULL,
                category TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                base_price_cents INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_services_provider ON services(provider_id)")

    def add_service(self, provider_id: str, request: ServiceCreateRequest) -> Service:
        name = request.name.strip()
        category = request.category.strip().lower()
        if not name:
            raise ValidationError("Service name is required")
        if not category:
            raise ValidationError("Category is required")
        try:
            price_cents = money_to_cents(request.base_price)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        service = Service(
            id=f"svc_{uuid4().hex[:10]}",
            provider_id=provider_id,
            name=name,
            category=category,
            description=request.description.strip(),
            base_price=cents_to_money(price_cents),
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO services (id, provider_id, name, category, description, base_price_cents, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    service.id,
                    service.provider_id,
                    service.name,
                    service.category,
                    service.description,
                    price_cents,
                    utc_now(),
                ),
            )
        logger.info("Service %s added by provider %s", service.id, provider_id)
        return service

    def get_service(self, service_id: str) -> Service:
        with self.reading() as conn:
            row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise NotFoundError("Service not found")
        return self._row_to_service(row)

    def list_services(self, category: Optional[str] = None, provider_id: Optional[str] = None) -> List[Service]:
        query = "SELECT * FROM services WHERE 1 = 1"
        params: List[str] = []
        if category:
            query += " AND category = ?"
            params.append(category.strip().lower())
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY created_at DESC"
        with self.reading() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_service(row) for row in rows]

    def service_name(self, service_id: str) -> str:
        with self.reading() as conn:
            row = conn.execute("SELECT name FROM services WHERE id = ?", (service_id,)).fetchone()
        return str(row["name"]) if row else ""

    def _row_to_service(self, row: sqlite3.Row) -> Service:
        return Service(
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            category=row["category"],
            description=row["description"],
            base_price=cents_to_money(row["base_price_cents"]),
        )


catalog_store = CatalogStore(db_path=configured_db_path())
