"""Node handlers package.

Handlers are grouped by category:
- utility.py: Current Time, Merge, Math, Transform, JSON Extractor
- http.py: HTTP Request
- sheets.py: Google Sheets client and Update Row

Every handler has the signature
    async def handler(node_id, node_type, parameters, context) -> dict | None
and raises to fail the step. Service dependencies are bound with partial.
"""

from .http import handle_http_request
from .sheets import SheetsClient, column_letter, handle_update_row
from .utility import (
    handle_current_time,
    handle_json_extractor,
    handle_math,
    handle_merge,
    handle_transform,
)

__all__ = [
    'handle_current_time',
    'handle_merge',
    'handle_math',
    'handle_transform',
    'handle_json_extractor',
    'handle_http_request',
    'handle_update_row',
    'SheetsClient',
    'column_letter',
]
