# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Ultima_Agent Telemetry Utility
Records per-stage agent activity (analyze, plan, execute, synthesize, reflect, persist)
so the API can report what the agent is currently doing.
"""
from typing import Dict, Any, List, Optional
import time
from .utils import logger

STALE_ACTIVITY_SECONDS = 60
HISTORY_LIMIT = 200


class AgentTelemetry:
    """Captured state of an agentic step"""
    def __init__(self, agent_name: str, stage: str):
        self.agent_name = agent_name
        self.stage = stage
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.metadata: Dict[str, Any] = {}

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    def finish(self, metadata: Optional[Dict[str, Any]] = None):
        self.end_time = time.time()
        if metadata:
            self.metadata.update(metadata)

    def to_dict(self) -> Dict[str, Any]:
        duration = (self.end_time or time.time()) - self.start_time
        return {
            "agent": self.agent_name,
            "stage": self.stage,
            "duration": round(duration, 3),
            "status": "running" if self.is_running else "completed",
            "metadata": self.metadata
        }


class TelemetryManager:
    """Tracks running and recently finished agent activities"""
    def __init__(self):
        self.activities: Dict[str, AgentTelemetry] = {}
        self._counter = 0

    def _prune(self):
        now = time.time()
        self.activities = {
            k: v for k, v in self.activities.items()
            if not v.is_running or (now - v.start_time) < STALE_ACTIVITY_SECONDS
        }
        if len(self.activities) > HISTORY_LIMIT:
            keep = list(self.activities.items())[-HISTORY_LIMIT:]
            self.activities = dict(keep)

    def start_activity(self, agent_name: str, stage: str) -> str:
        self._prune()
        self._counter += 1
        activity_id = f"{agent_name}_{int(time.time() * 1000)}_{self._counter}"
        self.activities[activity_id] = AgentTelemetry(agent_name, stage)
        logger.info(f"📊 Telemetry Start: {agent_name} -> {stage}")
        return activity_id

    def end_activity(self, activity_id: str, metadata: Optional[Dict[str, Any]] = None):
        activity = self.activities.get(activity_id)
        if activity:
            activity.finish(metadata)
            logger.info(f"📊 Telemetry End: {activity.agent_name} ({activity.to_dict()['duration']}s)")

    def clear_all(self):
        self.activities = {}
        logger.info("📊 Telemetry: State cleared")

    def get_active_status(self) -> Dict[str, Any]:
        """Returns the most recent running activity"""
        running = [a.to_dict() for a in self.activities.values() if a.is_running]
        return running[-1] if running else {"status": "idle"}

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in list(self.activities.values())[-limit:]]


# Global instance
telemetry = TelemetryManager()
