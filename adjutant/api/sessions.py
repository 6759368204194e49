"""Session registry: explicit create/destroy lifecycle for controllers.

Each session owns its history, read tracking, loop history, approval gate
and checkpoints. Sessions share the gateway, tool executor and event bus.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from adjutant.api.controller import ConversationController
from adjutant.api.gateway import Gateway
from adjutant.api.models import SessionState
from adjutant.api.tools import ToolExecutor
from adjutant.config import Settings
from adjutant.events import EventBus

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(
        self,
        settings: Settings,
        gateway: Gateway,
        executor: ToolExecutor,
        bus: EventBus | None = None,
        workspace_root: str | Path | None = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._executor = executor
        self._bus = bus
        self._workspace_root = Path(workspace_root or settings.workspace_dir)
        self._sessions: dict[str, ConversationController] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def ids(self) -> list[str]:
        return list(self._sessions)

    def create(self, session_id: str | None = None) -> ConversationController:
        """Create a session. Raises ValueError if the id is taken."""
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        self._workspace_root.mkdir(parents=True, exist_ok=True)
        controller = ConversationController(
            session=SessionState(session_id=session_id),
            gateway=self._gateway,
            executor=self._executor,
            settings=self._settings,
            workspace_root=self._workspace_root,
            bus=self._bus,
        )
        self._sessions[session_id] = controller
        logger.info("Session %s created (workspace: %s)", session_id, self._workspace_root)
        return controller

    def get(self, session_id: str) -> ConversationController | None:
        return self._sessions.get(session_id)

    def destroy(self, session_id: str) -> bool:
        """Drop a session, aborting its run if one is in flight."""
        controller = self._sessions.pop(session_id, None)
        if controller is None:
            return False
        if controller.abort():
            logger.info("Session %s destroyed while running; run aborted", session_id)
        else:
            logger.info("Session %s destroyed", session_id)
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.destroy(session_id)
