"""
开品宝 Backend — Database Operations

All Supabase/PostgreSQL operations: projects (prd_data), chat messages,
competitor products and reviews, review-screenshot storage.

Components receive a `Database` instance (FastAPI dependency `get_db`) instead of
reaching for a module-level client, so tests can swap in an in-memory fake.

Reads degrade to empty results on failure (logged). Writes a caller depends on
raise DatabaseError so the caller can surface them.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client, create_client

from kaipinbao.config import generate_error_code, log, settings


class DatabaseError(Exception):
    """A write (or a strict read) the caller depends on failed."""

    def __init__(self, operation: str, message: str, error_code: str):
        self.operation = operation
        self.error_code = error_code
        super().__init__(f"{operation} failed: {message}")


@dataclass(frozen=True)
class TableNames:
    projects: str = "projects"
    messages: str = "chat_messages"
    competitor_products: str = "competitor_products"
    competitor_reviews: str = "competitor_reviews"
    screenshot_bucket: str = "review-screenshots"

    @classmethod
    def from_settings(cls) -> "TableNames":
        return cls(
            projects=settings.projects_table,
            messages=settings.messages_table,
            competitor_products=settings.competitor_products_table,
            competitor_reviews=settings.competitor_reviews_table,
            screenshot_bucket=settings.screenshot_bucket,
        )


def _rows(response: Any) -> list[dict]:
    if response is None or not response.data:
        return []
    data = response.data
    return [dict(r) for r in data] if isinstance(data, list) else [dict(data)]


class Database:
    """Thin async facade over a supabase Client."""

    def __init__(self, client: Client, tables: TableNames | None = None):
        self.client = client
        self.tables = tables or TableNames()

    def _fail(self, operation: str, e: Exception, **context) -> DatabaseError:
        code = generate_error_code()
        log("ERROR", "db write failed", operation=operation, error=str(e), error_code=code, **context)
        return DatabaseError(operation, str(e), code)

    # ─────────────────────────────────────────────
    # Projects / PrdData
    # ─────────────────────────────────────────────

    async def get_project(self, project_id: str, strict: bool = False) -> Optional[dict]:
        """
        Project row (id, name, description, prd_data) or None.

        With strict=True a failed read raises DatabaseError instead of looking
        like a missing project; read-modify-write callers use this so a failed
        read never becomes an empty document that overwrites the stored one.
        """
        try:
            response = (
                self.client.table(self.tables.projects)
                .select("id, name, description, prd_data")
                .eq("id", project_id)
                .maybe_single()
                .execute()
            )
            rows = _rows(response)
            return rows[0] if rows else None
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db read failed", operation="get_project", project_id=project_id,
                error=str(e), error_code=code)
            if strict:
                raise DatabaseError("get_project", str(e), code) from e
            return None

    async def get_prd_data(self, project_id: str, strict: bool = False) -> dict:
        project = await self.get_project(project_id, strict=strict)
        if not project:
            return {}
        return dict(project.get("prd_data") or {})

    async def update_prd_data(self, project_id: str, prd_data: dict) -> None:
        try:
            (
                self.client.table(self.tables.projects)
                .update({"prd_data": prd_data})
                .eq("id", project_id)
                .execute()
            )
        except Exception as e:
            raise self._fail("update_prd_data", e, project_id=project_id) from e

    # ─────────────────────────────────────────────
    # Chat messages
    # ─────────────────────────────────────────────

    async def insert_message(self, project_id: str, role: str, content: str, stage: int) -> dict:
        row = {
            "project_id": project_id,
            "role": role,
            "content": content,
            "stage": stage,
        }
        try:
            response = self.client.table(self.tables.messages).insert(row).execute()
        except Exception as e:
            raise self._fail("insert_message", e, project_id=project_id, role=role) from e
        rows = _rows(response)
        return rows[0] if rows else row

    async def list_messages(self, project_id: str, stage: Optional[int] = None) -> list[dict]:
        """Messages in creation order."""
        try:
            query = (
                self.client.table(self.tables.messages)
                .select("id, role, content, stage, created_at")
                .eq("project_id", project_id)
            )
            if stage is not None:
                query = query.eq("stage", stage)
            return _rows(query.order("created_at").execute())
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db read failed", operation="list_messages", project_id=project_id,
                error=str(e), error_code=code)
            return []

    # ─────────────────────────────────────────────
    # Competitors
    # ─────────────────────────────────────────────

    async def get_competitor_product(self, product_id: str) -> Optional[dict]:
        try:
            response = (
                self.client.table(self.tables.competitor_products)
                .select("*")
                .eq("id", product_id)
                .maybe_single()
                .execute()
            )
            rows = _rows(response)
            return rows[0] if rows else None
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db read failed", operation="get_competitor_product", product_id=product_id,
                error=str(e), error_code=code)
            return None

    async def list_competitor_products(self, project_id: str, status: Optional[str] = None) -> list[dict]:
        try:
            query = (
                self.client.table(self.tables.competitor_products)
                .select("*")
                .eq("project_id", project_id)
            )
            if status:
                query = query.eq("status", status)
            return _rows(query.order("created_at").execute())
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db read failed", operation="list_competitor_products", project_id=project_id,
                error=str(e), error_code=code)
            return []

    async def list_reviews(self, product_ids: list[str]) -> list[dict]:
        if not product_ids:
            return []
        try:
            response = (
                self.client.table(self.tables.competitor_reviews)
                .select("id, competitor_product_id, review_text, rating, sentiment, is_positive")
                .in_("competitor_product_id", product_ids)
                .execute()
            )
            return _rows(response)
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db read failed", operation="list_reviews", error=str(e), error_code=code)
            return []

    async def set_product_status(self, product_id: str, status: str) -> None:
        """pending → scraping → completed | failed"""
        try:
            (
                self.client.table(self.tables.competitor_products)
                .update({"status": status})
                .eq("id", product_id)
                .execute()
            )
        except Exception as e:
            raise self._fail("set_product_status", e, product_id=product_id, status=status) from e

    async def update_competitor_product(self, product_id: str, fields: dict) -> None:
        try:
            (
                self.client.table(self.tables.competitor_products)
                .update(fields)
                .eq("id", product_id)
                .execute()
            )
        except Exception as e:
            raise self._fail("update_competitor_product", e, product_id=product_id) from e

    async def insert_reviews(self, product_id: str, reviews: list[dict]) -> int:
        """Bulk insert. Sentiment starts neutral until the reviews are analysed."""
        if not reviews:
            return 0
        rows = [
            {
                "competitor_product_id": product_id,
                "review_text": r["text"],
                "rating": r.get("rating"),
                "sentiment": "neutral",
                "is_positive": None,
            }
            for r in reviews
        ]
        try:
            self.client.table(self.tables.competitor_reviews).insert(rows).execute()
        except Exception as e:
            code = generate_error_code()
            log("ERROR", "db write failed", operation="insert_reviews", product_id=product_id,
                count=len(rows), error=str(e), error_code=code)
            return 0
        return len(rows)

    async def update_review_sentiment(self, review_id: str, sentiment: str, is_positive: Optional[bool]) -> None:
        """sentiment: positive | negative | neutral; is_positive stays None for neutral."""
        try:
            (
                self.client.table(self.tables.competitor_reviews)
                .update({"sentiment": sentiment, "is_positive": is_positive})
                .eq("id", review_id)
                .execute()
            )
        except Exception as e:
            raise self._fail("update_review_sentiment", e, review_id=review_id) from e

    # ─────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────

    async def upload_screenshot(self, product_id: str, image_bytes: bytes) -> Optional[str]:
        """Upload a PNG to the screenshot bucket; return its public URL or None."""
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        filename = f"review-screenshot-{product_id}-{stamp}.png"
        try:
            bucket = self.client.storage.from_(self.tables.screenshot_bucket)
            bucket.upload(filename, image_bytes, file_options={"content-type": "image/png"})
            return bucket.get_public_url(filename)
        except Exception as e:
            log("WARN", "screenshot upload failed", product_id=product_id, error=str(e))
            return None


# ─────────────────────────────────────────────────────────────────────────────
# Supabase Client (singleton)
# ─────────────────────────────────────────────────────────────────────────────

_supabase: Client | None = None


def get_supabase() -> Client:
    """Return the Supabase client singleton. Creates it on first call."""
    global _supabase
    if _supabase is None:
        _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    return _supabase


def get_db() -> Database:
    """FastAPI dependency. Override in tests via app.dependency_overrides[get_db]."""
    return Database(get_supabase(), TableNames.from_settings())
