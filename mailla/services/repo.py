# mailla/services/repo.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailla.core.exceptions import ConversationNotFoundError
from mailla.core.logging import get_logger
from mailla.db.models import (
    PHASE_COMPLETED,
    PHASE_GATHERING,
    AuditLog,
    SmartCase,
    TriageConversation,
    utcnow,
)

logger = get_logger(__name__)

_CONVERSATION_FIELDS = frozenset(TriageConversation.model_fields) - {"id", "created_at"}
_CASE_FIELDS = frozenset(SmartCase.model_fields) - {"id"}


class Repo:
    """
    Data Access Layer (DAL) for triage conversations, smart cases and audits.

    Usage patterns:
      - Simple read/write (auto session/commit):
          await repo.update_triage_conversation(conv_id, {...})

      - Composed writes with atomicity:
          async with repo.transaction() as s:
              await repo.create_smart_case({...}, session=s)
              await repo.update_triage_conversation(conv_id, {...}, session=s)
              # any error -> full rollback
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    # ---------------------------
    # Transactions
    # ---------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session with an active transaction. Rolls back on exception."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def _scoped(self, session: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        """Reuse the caller's session, or open one that commits/rolls back on its own."""
        if session is not None:
            yield session
            return
        own = self._session_factory()
        try:
            yield own
            await own.commit()
        except Exception:
            await own.rollback()
            raise
        finally:
            await own.close()

    # ---------------------------
    # Triage conversations
    # ---------------------------
    async def create_triage_conversation(
        self,
        record: Dict[str, Any],
        *,
        session: Optional[AsyncSession] = None,
    ) -> str:
        """Insert a conversation and return its id."""
        async with self._scoped(session) as s:
            conv = TriageConversation(**{k: v for k, v in record.items() if k in _CONVERSATION_FIELDS | {"id"}})
            s.add(conv)
            await s.flush()
            return conv.id

    async def get_triage_conversation(
        self,
        conversation_id: str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Optional[TriageConversation]:
        async with self._scoped(session) as s:
            return await s.get(TriageConversation, conversation_id)

    async def update_triage_conversation(
        self,
        conversation_id: str,
        fields: Dict[str, Any],
        *,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Apply a partial update. A completed conversation never moves back to gathering_info."""
        unknown = set(fields) - _CONVERSATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")

        async with self._scoped(session) as s:
            conv = await s.get(TriageConversation, conversation_id)
            if conv is None:
                raise ConversationNotFoundError(conversation_id)

            changes = dict(fields)
            if conv.current_phase == PHASE_COMPLETED and changes.get("current_phase") == PHASE_GATHERING:
                logger.warning("Ignoring phase regression", extra={"conversation_id": conversation_id})
                changes.pop("current_phase")

            for key, value in changes.items():
                setattr(conv, key, value)
            conv.updated_at = utcnow()
            await s.flush()

    # ---------------------------
    # Smart cases
    # ---------------------------
    async def next_case_number(
        self,
        org_id: str,
        prefix: str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> str:
        """Sequential per-org case number, e.g. MIT-0007."""
        async with self._scoped(session) as s:
            result = await s.execute(
                select(func.count()).select_from(SmartCase).where(SmartCase.org_id == org_id)
            )
            count = result.scalar_one()
            return f"{prefix}-{count + 1:04d}"

    async def create_smart_case(
        self,
        fields: Dict[str, Any],
        *,
        session: Optional[AsyncSession] = None,
    ) -> str:
        """Insert a smart case and return its id."""
        async with self._scoped(session) as s:
            case = SmartCase(**{k: v for k, v in fields.items() if k in _CASE_FIELDS})
            s.add(case)
            await s.flush()
            return case.id

    async def get_smart_case(
        self,
        case_id: str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Optional[SmartCase]:
        async with self._scoped(session) as s:
            return await s.get(SmartCase, case_id)

    # ---------------------------
    # Audits
    # ---------------------------
    async def audit(
        self,
        tenant_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        meta_json: Optional[Dict[str, Any]] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Write an audit log entry. If no session provided, autocommits."""
        async with self._scoped(session) as s:
            s.add(
                AuditLog(
                    tenant_id=tenant_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    meta_json=meta_json,
                )
            )
            await s.flush()

    async def list_audits(
        self,
        tenant_id: str,
        *,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> list[AuditLog]:
        async with self._scoped(session) as s:
            stmt = select(AuditLog).where(AuditLog.tenant_id == tenant_id)
            if action:
                stmt = stmt.where(AuditLog.action == action)
            if resource_id:
                stmt = stmt.where(AuditLog.resource_id == resource_id)
            stmt = stmt.order_by(AuditLog.created_at.asc())
            result = await s.execute(stmt)
            return list(result.scalars().all())
