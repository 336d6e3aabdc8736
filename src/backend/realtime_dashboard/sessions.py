from __future__ import annotations

import logging
from typing import Dict, Optional

from .controller import AggregationController
from .models import AdminContext
from .repository import RecordSource

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    One ``AggregationController`` per dashboard session.

    Signing out (``end``) and server shutdown (``close``) dispose the
    controllers, which closes their change subscriptions.
    """

    def __init__(self, source: RecordSource, timezone: str = "UTC", sort_snapshots: bool = True):
        self.source = source
        self.timezone = timezone
        self.sort_snapshots = sort_snapshots
        self._controllers: Dict[str, AggregationController] = {}

    def get(self, session_id: str) -> Optional[AggregationController]:
        return self._controllers.get(session_id)

    def __len__(self) -> int:
        return len(self._controllers)

    async def enter(self, context: AdminContext) -> Optional[AggregationController]:
        if not context.is_admin:
            # Losing the admin role ends whatever the session was showing.
            if self.end(context.session_id):
                logger.info("Dashboard session %s ended: admin role required", context.session_id)
            return None
        controller = self._controllers.get(context.session_id)
        if controller is not None and controller.context is not None and controller.context.user_id != context.user_id:
            # Session id reused by another user: start from scratch.
            self.end(context.session_id)
            controller = None
        if controller is None:
            controller = AggregationController(
                self.source,
                timezone=self.timezone,
                sort_snapshots=self.sort_snapshots,
            )
            self._controllers[context.session_id] = controller
        await controller.activate(context)
        return controller

    def end(self, session_id: str) -> bool:
        controller = self._controllers.pop(session_id, None)
        if controller is None:
            return False
        controller.dispose()
        return True

    def close(self) -> None:
        session_ids = list(self._controllers)
        for session_id in session_ids:
            self.end(session_id)
        if session_ids:
            logger.info("Closed %d dashboard sessions", len(session_ids))
