"""Project registration and session lifecycle over the record store."""

import asyncio
from datetime import datetime
from typing import Optional

from loguru import logger

from .error_handling import InputError
from .identity import IdentityResolver
from .models import Project, Session, SessionStatus
from .store import RecordStore


class SessionTracker:
    """Maps working paths to projects and keeps one active session per project."""

    def __init__(self, store: RecordStore, identity: Optional[IdentityResolver] = None):
        self.store = store
        self.identity = identity or IdentityResolver()
        self._lock = asyncio.Lock()

    async def get_or_create_project(self, path: str) -> Project:
        """Project for any path inside it; sub-paths resolve to the same project."""
        root = self.identity.resolve_root(path)
        async with self._lock:
            project = await self.store.find_project_by_path(root)
            if project is not None:
                project.last_accessed = datetime.now()
                return await self.store.update_project(project)

            descriptor = self.identity.describe(root)
            project = Project(
                name=descriptor.name,
                path=descriptor.root,
                fingerprint=descriptor.fingerprint,
                remote_url=descriptor.remote_url,
                language=descriptor.language,
                framework=descriptor.framework,
                metadata={'markers': descriptor.markers, 'manifest': descriptor.manifest},
            )
            logger.info(f"Registered project {project.name} at {project.path}")
            return await self.store.create_project(project)

    async def get_or_create_session(self,
                                    project_path: str,
                                    tool_used: Optional[str] = None,
                                    force_new: bool = False,
                                    name: Optional[str] = None) -> Session:
        """
        Reuse the project's active session, or start one.

        Args:
            project_path: Any path inside the project
            tool_used: Tool name appended to the session's tool list
            force_new: Complete the active session and start a fresh one
            name: Name for a new session

        Returns:
            The active session
        """
        project = await self.get_or_create_project(project_path)

        async with self._lock:
            active = await self.store.list_sessions(project.id, SessionStatus.ACTIVE)
            if active and not force_new:
                session = active[0]
                if tool_used and tool_used not in session.tools_used:
                    session.tools_used.append(tool_used)
                    await self.store.update_session(session)
                return session

            for old in active:
                old.complete()
                await self.store.update_session(old)
                logger.info(f"Completed session {old.id} for {project.name}")

            session = Session(
                project_id=project.id,
                name=name or f"{project.name} {datetime.now():%Y-%m-%d %H:%M}",
                tools_used=[tool_used] if tool_used else [],
            )
            await self.store.create_session(session)
            logger.info(f"Started session {session.id} for {project.name}")
            return session

    async def end_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise InputError(f"Unknown session: {session_id}")
        session.complete()
        return await self.store.update_session(session)

    async def record_tool(self, session_id: str, tool: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise InputError(f"Unknown session: {session_id}")
        if tool not in session.tools_used:
            session.tools_used.append(tool)
            await self.store.update_session(session)
        return session
