"""Workflow config persistence.

Configs live under workflow_config:{id}, separate from queue entries, so a
hot reload changes what the next run executes without touching the queue.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from constants import CONFIG_KEY_PREFIX
from core.cache import CacheService
from core.exceptions import ConfigNotFoundError
from core.logging import get_logger
from services.execution.models import ActionTree, tree_from_dicts

logger = get_logger(__name__)


@dataclass
class WorkflowConfig:
    """Trigger descriptor, global settings and compiled action tree."""
    trigger: Dict[str, Any]
    actions: list = field(default_factory=list)
    id: Optional[str] = None
    workflow_name: str = "default"
    spreadsheet_id: Optional[str] = None
    column_mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def trigger_type(self) -> Optional[str]:
        return self.trigger.get("type")

    def tree(self) -> ActionTree:
        return tree_from_dicts(self.actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowName": self.workflow_name,
            "trigger": self.trigger,
            "spreadsheetId": self.spreadsheet_id,
            "columnMapping": self.column_mapping,
            "actions": self.actions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowConfig":
        """Parse and validate a config payload.

        Raises ValueError when the trigger is missing or the action tree is
        malformed.
        """
        if not isinstance(data, dict):
            raise ValueError("Workflow config must be an object")
        trigger = data.get("trigger")
        if not isinstance(trigger, dict) or not trigger.get("type"):
            raise ValueError("Workflow config needs a trigger with a type")

        actions = data.get("actions") or []
        if not isinstance(actions, list):
            raise ValueError("actions must be a list")
        # Parse once so a bad tree is rejected at deploy time
        tree_from_dicts(actions)

        return cls(
            id=data.get("id"),
            workflow_name=data.get("workflowName") or "default",
            trigger=dict(trigger),
            spreadsheet_id=data.get("spreadsheetId"),
            column_mapping={str(k): str(v) for k, v in (data.get("columnMapping") or {}).items()},
            actions=actions,
        )


class WorkflowConfigStore:
    """Load/save workflow configs through the cache service."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    @staticmethod
    def key(workflow_id: str) -> str:
        return f"{CONFIG_KEY_PREFIX}:{workflow_id}"

    async def save(self, workflow_id: str, config: WorkflowConfig) -> None:
        config.id = workflow_id
        await self.cache.set(self.key(workflow_id), config.to_dict())
        logger.info("Workflow config saved", workflow_id=workflow_id,
                    trigger_type=config.trigger_type, actions=len(config.actions))

    async def load(self, workflow_id: str) -> WorkflowConfig:
        data = await self.cache.get(self.key(workflow_id))
        if data is None:
            raise ConfigNotFoundError(workflow_id)
        return WorkflowConfig.from_dict(data)

    async def exists(self, workflow_id: str) -> bool:
        return await self.cache.exists(self.key(workflow_id))

    async def delete(self, workflow_id: str) -> bool:
        return await self.cache.delete(self.key(workflow_id))
