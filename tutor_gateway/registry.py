"""
In-process directory of live agent instances.

Reads go against an immutable snapshot and never block; writes (startup and
teardown only) swap the snapshot under a lock.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .agents.base import BaseAgent
from .errors import AgentAlreadyRegistered
from .models import AgentTier, Capability

logger = logging.getLogger("tutor-gateway")


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: Mapping[str, BaseAgent] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def register(self, agent: BaseAgent, *, replace: bool = False) -> None:
        with self._write_lock:
            if agent.id in self._agents and not replace:
                raise AgentAlreadyRegistered(f"Agent already registered: {agent.id}")
            updated = dict(self._agents)
            updated[agent.id] = agent
            self._agents = MappingProxyType(updated)
        logger.info("agent_registered agent=%s tier=%s", agent.id, agent.config.tier.value)

    def unregister(self, agent_id: str) -> bool:
        with self._write_lock:
            if agent_id not in self._agents:
                return False
            updated = dict(self._agents)
            del updated[agent_id]
            self._agents = MappingProxyType(updated)
        logger.info("agent_unregistered agent=%s", agent_id)
        return True

    def clear(self) -> None:
        with self._write_lock:
            self._agents = MappingProxyType({})

    def get(self, agent_id: str) -> Optional[BaseAgent]:
        return self._agents.get(agent_id)

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def get_all(self) -> List[BaseAgent]:
        return list(self._agents.values())

    def ids(self) -> List[str]:
        return list(self._agents)

    def get_by_capability(self, capability: Capability) -> List[BaseAgent]:
        return [a for a in self._agents.values() if a.has_capability(Capability(capability))]

    def get_by_tier(self, tier: AgentTier) -> List[BaseAgent]:
        return [a for a in self._agents.values() if a.config.tier == AgentTier(tier)]

    def count(self) -> int:
        return len(self._agents)

    def describe(self) -> List[Dict[str, Any]]:
        return [agent.describe() for agent in self._agents.values()]

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)
