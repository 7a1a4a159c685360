"""Persistent store interface and a process-local implementation."""

import asyncio
from typing import Dict, List, Optional, Protocol

from loguru import logger

from .error_handling import InputError
from .models import Project, Record, Session, SessionStatus


class RecordStore(Protocol):
    """Create/read/update for projects, sessions and records keyed by id."""

    async def create_project(self, project: Project) -> Project: ...

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def update_project(self, project: Project) -> Project: ...

    async def find_project_by_path(self, path: str) -> Optional[Project]: ...

    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def update_session(self, session: Session) -> Session: ...

    async def list_sessions(self,
                            project_id: Optional[str] = None,
                            status: Optional[SessionStatus] = None) -> List[Session]: ...

    async def create_record(self, record: Record) -> Record: ...

    async def get_record(self, record_id: str) -> Optional[Record]: ...

    async def update_record(self, record: Record) -> Record: ...

    async def list_records(self,
                           project_id: Optional[str] = None,
                           session_id: Optional[str] = None,
                           limit: Optional[int] = None) -> List[Record]: ...


class InMemoryStore:
    """
    Dict-backed store for a single process.

    Enforces the same uniqueness rules a relational backend would: one
    project per canonical path and one active session per project.
    """

    def __init__(self):
        self._projects: Dict[str, Project] = {}
        self._sessions: Dict[str, Session] = {}
        self._records: Dict[str, Record] = {}
        self._lock = asyncio.Lock()

    async def create_project(self, project: Project) -> Project:
        async with self._lock:
            for existing in self._projects.values():
                if existing.path == project.path:
                    raise InputError(f"Project already registered for {project.path}")
            self._projects[project.id] = project
        logger.debug(f"Stored project {project.id} at {project.path}")
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    async def update_project(self, project: Project) -> Project:
        async with self._lock:
            if project.id not in self._projects:
                raise InputError(f"Unknown project: {project.id}")
            self._projects[project.id] = project
        return project

    async def find_project_by_path(self, path: str) -> Optional[Project]:
        for project in self._projects.values():
            if project.path == path:
                return project
        return None

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            if session.project_id not in self._projects:
                raise InputError(f"Unknown project: {session.project_id}")
            if session.status == SessionStatus.ACTIVE and self._active_session(session.project_id):
                raise InputError(f"Project {session.project_id} already has an active session")
            self._sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def update_session(self, session: Session) -> Session:
        async with self._lock:
            if session.id not in self._sessions:
                raise InputError(f"Unknown session: {session.id}")
            active = self._active_session(session.project_id)
            if session.status == SessionStatus.ACTIVE and active is not None and active.id != session.id:
                raise InputError(f"Project {session.project_id} already has an active session")
            self._sessions[session.id] = session
        return session

    async def list_sessions(self,
                            project_id: Optional[str] = None,
                            status: Optional[SessionStatus] = None) -> List[Session]:
        return [
            s for s in self._sessions.values()
            if (project_id is None or s.project_id == project_id)
            and (status is None or s.status == status)
        ]

    async def create_record(self, record: Record) -> Record:
        async with self._lock:
            session = self._sessions.get(record.session_id)
            if session is None:
                raise InputError(f"Unknown session: {record.session_id}")
            if record.project_id is None:
                record.project_id = session.project_id
            self._records[record.id] = record
        return record

    async def get_record(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    async def update_record(self, record: Record) -> Record:
        async with self._lock:
            if record.id not in self._records:
                raise InputError(f"Unknown record: {record.id}")
            self._records[record.id] = record
        return record

    async def list_records(self,
                           project_id: Optional[str] = None,
                           session_id: Optional[str] = None,
                           limit: Optional[int] = None) -> List[Record]:
        records = [
            r for r in self._records.values()
            if (project_id is None or r.project_id == project_id)
            and (session_id is None or r.session_id == session_id)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit else records

    def _active_session(self, project_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.project_id == project_id and session.status == SessionStatus.ACTIVE:
                return session
        return None
