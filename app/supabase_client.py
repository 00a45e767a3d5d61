"""
Supabase client module for database operations.

Reads and inserts go through the admin-proxy Edge Function (bypasses RLS,
the public visitor has no Supabase session). Guarded state transitions use
PostgREST conditional updates with the service key so that the guard and
the write are one statement.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple, Union

import httpx
from supabase import create_client, Client

from app.config import get_settings, Settings
from app.models import (
    AccessConsumedReason,
    AccessSession,
    Document,
    DocumentStatus,
)
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

Filter = Union[Any, Tuple[str, Any]]


class SupabaseClient:
    """Supabase client wrapper: admin-proxy reads plus guarded PostgREST updates."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._base_client: Optional[Client] = None
        self._http_client = httpx.AsyncClient(base_url=self.settings.supabase_url, timeout=15.0)

    @property
    def client(self) -> Client:
        """PostgREST client authenticated with the service key."""
        if self._base_client is None:
            self._base_client = create_client(
                self.settings.supabase_url,
                self.settings.supabase_service_key,
            )
        return self._base_client

    def table(self, table_name: str):
        return self.client.table(table_name)

    def _admin_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Admin-Secret": self.settings.admin_api_secret,
        }

    @staticmethod
    def _unwrap(result: Any) -> List[Dict[str, Any]]:
        """
        Normalize admin-proxy responses:
        plain array, {"data": [...]} or a single object.
        """
        if isinstance(result, list):
            return result
        if isinstance(result, dict) and "data" in result:
            data = result["data"]
            return data if isinstance(data, list) else ([data] if data else [])
        if isinstance(result, dict) and result:
            return [result]
        return []

    async def admin_insert(self, table_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row via the admin-proxy Edge Function."""
        url = f"/functions/v1/admin-proxy/{table_name}"

        logger.info(f"admin_insert: POST {url}")
        try:
            response = await self._http_client.post(url, headers=self._admin_headers(), json=data)
            response.raise_for_status()
            rows = self._unwrap(response.json())
        except Exception as e:
            logger.error(f"admin_insert FAILED for {table_name}: {e}")
            raise

        return rows[0] if rows else {}

    async def admin_update(self, table_name: str, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Update a row by id via the admin-proxy Edge Function."""
        url = f"/functions/v1/admin-proxy/{table_name}/{record_id}"

        logger.info(f"admin_update: PATCH {url}")
        try:
            response = await self._http_client.patch(url, headers=self._admin_headers(), json=data)
            if response.status_code != 200:
                logger.warning(f"admin_update: response status={response.status_code}")
            response.raise_for_status()
            rows = self._unwrap(response.json())
        except Exception as e:
            logger.error(f"admin_update: FAILED for {table_name}/{record_id[:8]}..., error={e}")
            raise

        return rows[0] if rows else {}

    async def admin_select(
        self,
        table_name: str,
        filters: Dict[str, Filter],
        single: bool = False,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Union[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Select rows via the admin-proxy Edge Function.

        Filters map a column to a value (equality) or to an ``(op, value)``
        tuple in PostgREST syntax, e.g. ``("is", "null")``.
        """
        params: List[Tuple[str, str]] = []
        for column, value in filters.items():
            if isinstance(value, tuple) and len(value) == 2:
                op, val = value
                params.append((column, f"{op}.{val}"))
            else:
                params.append((column, f"eq.{value}"))
        if order:
            params.append(("order", order))
        if limit:
            params.append(("limit", str(limit)))

        url = f"/functions/v1/admin-proxy/{table_name}"
        logger.info(f"admin_select: GET {url} columns={list(filters.keys())}")

        response = await self._http_client.get(url, headers=self._admin_headers(), params=params)
        if response.status_code != 200:
            logger.warning(f"admin_select: response status={response.status_code}")
        response.raise_for_status()

        rows = self._unwrap(response.json())
        if single:
            return rows[0] if rows else None
        return rows

    # Document operations
    async def get_document(self, document_id: str) -> Optional[Document]:
        """Fetch a document fresh from the store (never cached)."""
        result = await self.admin_select(
            self.settings.documents_table,
            {"id": document_id},
            single=True,
        )
        if not result:
            return None
        return Document(**result)

    def sign_document(
        self,
        document_id: str,
        content: Dict[str, Any],
        signature_ref: str,
        signed_at: datetime,
    ) -> Optional[Document]:
        """
        Atomically move a document from sent to signed.

        Snapshot, status, signature reference and signed_at are written in a
        single UPDATE guarded on ``status = sent``. Returns None when the
        guard did not match (document missing or already signed).
        """
        now = utc_now().isoformat()
        result = self.table(self.settings.documents_table).update({
            "proposal_data": content,
            "status": DocumentStatus.SIGNED.value,
            "customer_signature_url": signature_ref,
            "signed_at": signed_at.isoformat(),
            "updated_at": now,
        }).eq(
            "id", document_id
        ).eq(
            "status", DocumentStatus.SENT.value
        ).execute()

        if not result.data:
            logger.warning(f"sign_document: guard missed for document {document_id[:8]}...")
            return None

        return Document(**result.data[0])

    # Access session operations
    async def create_access_session(
        self,
        document_id: str,
        email: str,
        code_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> AccessSession:
        row = await self.admin_insert(self.settings.access_sessions_table, {
            "document_id": document_id,
            "email": email,
            "code_hash": code_hash,
            "issued_at": issued_at.isoformat(),
            "expires_at": expires_at.isoformat(),
            "verify_attempts": 0,
        })
        if not row:
            raise ValueError("Access session insert returned no row")
        return AccessSession(**row)

    def supersede_access_sessions(self, document_id: str, email: str) -> int:
        """Consume every still-active session for the pair; returns how many."""
        result = self.table(self.settings.access_sessions_table).update({
            "consumed_at": utc_now().isoformat(),
            "consumed_reason": AccessConsumedReason.SUPERSEDED.value,
        }).eq(
            "document_id", document_id
        ).eq(
            "email", email
        ).is_("consumed_at", "null").execute()

        return len(result.data or [])

    async def get_active_access_session(self, document_id: str, email: str) -> Optional[AccessSession]:
        """Most recently issued, not yet consumed session for the pair."""
        row = await self.admin_select(
            self.settings.access_sessions_table,
            {
                "document_id": document_id,
                "email": email,
                "consumed_at": ("is", "null"),
            },
            single=True,
            order="issued_at.desc",
            limit=1,
        )
        return AccessSession(**row) if row else None

    async def record_failed_attempt(self, session: AccessSession, lock_after: int) -> AccessSession:
        """Count a wrong code; lock (consume) the session once the cap is reached."""
        attempts = session.verify_attempts + 1
        updates: Dict[str, Any] = {"verify_attempts": attempts}
        if attempts >= lock_after:
            updates["consumed_at"] = utc_now().isoformat()
            updates["consumed_reason"] = AccessConsumedReason.LOCKED.value

        row = await self.admin_update(self.settings.access_sessions_table, session.id, updates)
        if row:
            return AccessSession(**row)
        return session.model_copy(update={"verify_attempts": attempts})

    def consume_access_session(
        self,
        session_id: str,
        reason: AccessConsumedReason,
        grant_hash: Optional[str] = None,
        grant_expires_at: Optional[datetime] = None,
    ) -> bool:
        """
        Mark a session used, guarded on ``consumed_at is null``.

        Returns False when another request consumed it first.
        """
        updates: Dict[str, Any] = {
            "consumed_at": utc_now().isoformat(),
            "consumed_reason": reason.value,
        }
        if grant_hash:
            updates["grant_hash"] = grant_hash
            updates["grant_expires_at"] = grant_expires_at.isoformat() if grant_expires_at else None

        result = self.table(self.settings.access_sessions_table).update(updates).eq(
            "id", session_id
        ).is_("consumed_at", "null").execute()

        return bool(result.data)

    async def get_session_by_grant(self, document_id: str, grant_hash: str) -> Optional[AccessSession]:
        row = await self.admin_select(
            self.settings.access_sessions_table,
            {"document_id": document_id, "grant_hash": grant_hash},
            single=True,
        )
        return AccessSession(**row) if row else None


# Singleton instance
_supabase_client: Optional[SupabaseClient] = None


def get_supabase_client() -> SupabaseClient:
    """Get the Supabase client singleton."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseClient()
    return _supabase_client
