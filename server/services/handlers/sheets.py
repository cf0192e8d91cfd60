"""Google Sheets access using the Google API Python client.

The sheets trigger reads pending rows through SheetsClient and the
update_row node writes single cells back.

API Reference: https://developers.google.com/workspace/sheets/api/reference/rest
"""

import asyncio
from typing import Any, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build

from core.logging import get_logger

logger = get_logger(__name__)

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def column_letter(index: int) -> str:
    """Convert a zero-based column index to A1 letters (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


class SheetsClient:
    """Service-account Sheets client. The discovery service is built lazily."""

    def __init__(self, service_account_file: Optional[str] = None):
        self.service_account_file = service_account_file
        self._service = None

    @property
    def is_configured(self) -> bool:
        return bool(self.service_account_file)

    async def _get_service(self):
        if self._service is not None:
            return self._service
        if not self.service_account_file:
            raise ValueError("Google Sheets is not configured (GOOGLE_SERVICE_ACCOUNT_FILE)")

        def build_service():
            creds = service_account.Credentials.from_service_account_file(
                self.service_account_file, scopes=SHEETS_SCOPES
            )
            return build("sheets", "v4", credentials=creds, cache_discovery=False)

        loop = asyncio.get_event_loop()
        self._service = await loop.run_in_executor(None, build_service)
        return self._service

    async def read_rows(self, spreadsheet_id: str, range_notation: str) -> List[List[Any]]:
        """Read a range and return its rows (empty list when the range is blank)."""
        service = await self._get_service()

        def read_values():
            return service.spreadsheets().values().get(
                spreadsheetId=spreadsheet_id,
                range=range_notation,
            ).execute()

        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(None, read_values)
        values = result.get('values', [])
        logger.debug("Sheet rows read", spreadsheet_id=spreadsheet_id,
                     range=range_notation, rows=len(values))
        return values

    async def update_cell(self, spreadsheet_id: str, range_notation: str, value: Any) -> Dict[str, Any]:
        service = await self._get_service()
        body = {'values': [[value]]}

        def write_value():
            return service.spreadsheets().values().update(
                spreadsheetId=spreadsheet_id,
                range=range_notation,
                valueInputOption='USER_ENTERED',
                body=body,
            ).execute()

        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(None, write_value)
        logger.debug("Sheet cell updated", spreadsheet_id=spreadsheet_id, range=range_notation)
        return result


async def handle_update_row(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any],
    sheets_client: SheetsClient,
) -> Dict[str, Any]:
    """Write a value into the current sheet row.

    Parameters:
        spreadsheetId: target spreadsheet (defaults to the workflow's)
        colIndex: zero-based column to write
        value: value to write; nothing is written when empty
        sheet: sheet name (default Sheet1)
    """
    value = parameters.get('value')
    row_index = context.get('ROW_INDEX')
    spreadsheet_id = parameters.get('spreadsheetId')

    if value is None or value == "":
        logger.warning("No value to write, skipping update", node_id=node_id)
        return {"STATUS": "Failed"}
    if not spreadsheet_id:
        raise ValueError("spreadsheetId is required")
    if row_index is None:
        raise ValueError("ROW_INDEX missing from context; update_row needs a sheets trigger")

    try:
        col_index = int(parameters.get('colIndex', 0))
    except (TypeError, ValueError):
        raise ValueError(f"colIndex must be a number, got {parameters.get('colIndex')!r}")

    sheet = parameters.get('sheet') or 'Sheet1'
    cell = f"{sheet}!{column_letter(col_index)}{row_index}"
    await sheets_client.update_cell(spreadsheet_id, cell, value)

    logger.info("Updated sheet cell", node_id=node_id, cell=cell)
    return {"STATUS": "Updated", "CELL": cell}
