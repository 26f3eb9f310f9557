from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from initiative_planner.models import PlanningConfig
from initiative_planner.quarters import Clock
from initiative_planner.repository import PlanRepository
from initiative_planner.session import PlanningSession
from initiative_planner.sync import Scheduler

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory registry of open planning sessions, one per business id."""

    def __init__(
        self,
        repository: PlanRepository,
        config: Optional[PlanningConfig] = None,
        now: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._repository = repository
        self._config = config or PlanningConfig()
        self._now = now
        self._scheduler = scheduler
        self._sessions: Dict[str, PlanningSession] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> PlanningConfig:
        return self._config

    def get(self, business_id: str) -> PlanningSession:
        """Return the open session for ``business_id``, loading it on first use."""
        with self._lock:
            session = self._sessions.get(business_id)
            if session is None:
                kwargs = {"now": self._now} if self._now is not None else {}
                session = PlanningSession(
                    business_id,
                    self._repository,
                    config=self._config,
                    scheduler=self._scheduler,
                    **kwargs,
                )
                self._sessions[business_id] = session
                logger.info("Opened planning session for %s", business_id)
            return session

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def close(self, business_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(business_id, None)
        if session is None:
            return False
        saved = session.close()
        if not saved:
            logger.warning("Closed session for %s with unsaved changes", business_id)
        return saved

    def close_all(self) -> None:
        for business_id in self.list_ids():
            self.close(business_id)
