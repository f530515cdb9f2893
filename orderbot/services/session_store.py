import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from orderbot.logging_config import get_logger
from orderbot.models import ConversationSessionRow
from orderbot.services.errors import VersionConflict
from orderbot.services.session_state import ConversationSession

logger = get_logger("session_store")

SessionKey = tuple[str, str]


class SessionStore(ABC):
    """One ConversationSession per (tenant_id, customer_key), written with optimistic versioning."""

    @abstractmethod
    async def get(self, key: SessionKey) -> Optional[ConversationSession]:
        pass

    @abstractmethod
    async def create(self, key: SessionKey) -> ConversationSession:
        """Insert a fresh Idle session. Raises VersionConflict if one already exists."""

    @abstractmethod
    async def put_if_version(self, session: ConversationSession, expected_version: int) -> ConversationSession:
        """Persist session if the stored version still equals expected_version.

        Returns the session with its version bumped. Raises VersionConflict
        when another writer got there first.
        """

    async def get_or_create(self, key: SessionKey) -> ConversationSession:
        session = await self.get(key)
        if session is not None:
            return session
        try:
            return await self.create(key)
        except VersionConflict:
            session = await self.get(key)
            if session is None:
                raise
            return session


class InMemorySessionStore(SessionStore):
    """Process-local store. Keeps serialized snapshots so callers never share objects."""

    def __init__(self):
        self._rows: dict[SessionKey, dict] = {}

    async def get(self, key: SessionKey) -> Optional[ConversationSession]:
        data = self._rows.get(key)
        return ConversationSession.from_dict(data) if data is not None else None

    async def create(self, key: SessionKey) -> ConversationSession:
        existing = self._rows.get(key)
        if existing is not None:
            raise VersionConflict(key, 0, existing["version"])
        session = ConversationSession(tenant_id=key[0], customer_key=key[1])
        self._rows[key] = session.to_dict()
        return session

    async def put_if_version(self, session: ConversationSession, expected_version: int) -> ConversationSession:
        current = self._rows.get(session.key)
        actual = current["version"] if current is not None else None
        if actual != expected_version:
            raise VersionConflict(session.key, expected_version, actual)
        session.version = expected_version + 1
        self._rows[session.key] = session.to_dict()
        return session


class SqlSessionStore(SessionStore):
    """Durable store on the conversation_sessions table.

    SQLAlchemy calls are blocking, so each one runs in a worker thread.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: SessionKey) -> Optional[ConversationSession]:
        return await asyncio.to_thread(self._get_sync, key)

    async def create(self, key: SessionKey) -> ConversationSession:
        return await asyncio.to_thread(self._create_sync, key)

    async def put_if_version(self, session: ConversationSession, expected_version: int) -> ConversationSession:
        return await asyncio.to_thread(self._put_sync, session, expected_version)

    def _filter(self, query, key: SessionKey):
        return query.filter(
            ConversationSessionRow.tenant_id == key[0],
            ConversationSessionRow.customer_key == key[1],
        )

    def _get_sync(self, key: SessionKey) -> Optional[ConversationSession]:
        with self._session_factory() as db:
            row = self._filter(db.query(ConversationSessionRow), key).first()
            if row is None:
                return None
            data = dict(row.state or {})
            data.update(
                tenant_id=row.tenant_id,
                customer_key=row.customer_key,
                version=row.version,
                generation=row.generation,
            )
            return ConversationSession.from_dict(data)

    def _create_sync(self, key: SessionKey) -> ConversationSession:
        session = ConversationSession(tenant_id=key[0], customer_key=key[1])
        now = datetime.now(timezone.utc)
        with self._session_factory() as db:
            db.add(
                ConversationSessionRow(
                    tenant_id=session.tenant_id,
                    customer_key=session.customer_key,
                    stage=session.stage.value,
                    version=session.version,
                    generation=session.generation,
                    state=session.to_dict(),
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise VersionConflict(key, 0, None) from exc
        logger.info(
            "Session created",
            extra={"context": {"tenant_id": key[0], "customer_key": key[1]}},
        )
        return session

    def _put_sync(self, session: ConversationSession, expected_version: int) -> ConversationSession:
        new_version = expected_version + 1
        state = session.to_dict()
        state["version"] = new_version
        with self._session_factory() as db:
            result = db.execute(
                update(ConversationSessionRow)
                .where(
                    ConversationSessionRow.tenant_id == session.tenant_id,
                    ConversationSessionRow.customer_key == session.customer_key,
                    ConversationSessionRow.version == expected_version,
                )
                .values(
                    version=new_version,
                    generation=session.generation,
                    stage=session.stage.value,
                    state=state,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount != 1:
                db.rollback()
                actual = self._filter(db.query(ConversationSessionRow.version), session.key).scalar()
                raise VersionConflict(session.key, expected_version, actual)
            db.commit()
        session.version = new_version
        return session


class SessionLocks:
    """Per-session asyncio locks; a lock lives only while someone holds or awaits it."""

    def __init__(self):
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._waiters: dict[SessionKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def active_keys(self) -> set[SessionKey]:
        return set(self._locks)
