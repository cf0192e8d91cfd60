"""Node registry - type to handler dispatch table.

Built once at startup by the container. Uses a registry pattern for clean
handler dispatch without if-else chains.
"""

from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from constants import is_trigger_type
from core.logging import get_logger
from services.handlers import (
    SheetsClient,
    handle_current_time,
    handle_http_request,
    handle_json_extractor,
    handle_math,
    handle_merge,
    handle_transform,
    handle_update_row,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

NodeHandler = Callable[[str, str, Dict[str, Any], Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


class NodeRegistry:
    """Explicit node type -> handler table."""

    def __init__(self):
        self._handlers: Dict[str, NodeHandler] = {}

    def register(self, node_type: str, handler: NodeHandler) -> None:
        if is_trigger_type(node_type):
            raise ValueError(f"Trigger type {node_type} cannot be registered as an action")
        if node_type in self._handlers:
            logger.warning("Replacing registered handler", node_type=node_type)
        self._handlers[node_type] = handler

    def get(self, node_type: str) -> Optional[NodeHandler]:
        return self._handlers.get(node_type)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    def types(self) -> List[str]:
        return sorted(self._handlers)


def build_node_registry(settings: "Settings", sheets_client: Optional[SheetsClient] = None) -> NodeRegistry:
    """Build the registry with service dependencies bound via partial."""
    sheets_client = sheets_client or SheetsClient(settings.google_service_account_file)

    registry = NodeRegistry()
    handlers: Dict[str, NodeHandler] = {
        # Utility
        'current_time': handle_current_time,
        'merge': handle_merge,
        'math': handle_math,
        'transform': handle_transform,
        'json_extractor': handle_json_extractor,
        # HTTP
        'http_request': partial(handle_http_request, default_timeout=float(settings.http_timeout)),
        # Sheets
        'update_row': partial(handle_update_row, sheets_client=sheets_client),
    }
    for node_type, handler in handlers.items():
        registry.register(node_type, handler)

    logger.info("Node registry built", node_types=registry.types())
    return registry
