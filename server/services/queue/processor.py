"""Workflow processor - runs one claimed job.

Loads the stored config, expands the trigger into work items (one per
pending sheet row, or a single item for manual/webhook/timer runs) and runs
the action tree once per item with a fresh context.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from constants import (
    DEFAULT_SHEETS_TRIGGER_COLUMN,
    DEFAULT_SHEETS_TRIGGER_VALUE,
    SHEET_HEADER_ROWS,
    SHEETS_TRIGGER,
)
from core.exceptions import StepExecutionError
from core.logging import get_logger
from services.config_store import WorkflowConfig, WorkflowConfigStore
from services.execution import ChainExecutor, RunReport
from services.handlers.sheets import SheetsClient, column_letter
from .models import Job

logger = get_logger(__name__)

# async def emit(event_type, data)
EmitFn = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class WorkItem:
    context: Dict[str, Any]
    row_index: Optional[int] = None

    @property
    def is_sheet_row(self) -> bool:
        return self.row_index is not None


@dataclass
class JobOutcome:
    processed: int = 0
    failed_items: int = 0
    branch_errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        partial = self.failed_items > 0 or bool(self.branch_errors)
        return {
            "status": "partial" if partial else "success",
            "processed": self.processed,
            "failedItems": self.failed_items,
            "branchErrors": self.branch_errors,
        }


def _sheet_name(range_notation: str) -> str:
    return range_notation.split('!', 1)[0] if '!' in range_notation else 'Sheet1'


def row_context(row: List[Any], row_index: int, column_mapping: Dict[str, str],
                base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Context for one sheet row: Column_A.., mapped aliases and ROW_INDEX."""
    context = dict(base or {})
    for idx, value in enumerate(row):
        context[f"Column_{column_letter(idx)}"] = value
        alias = column_mapping.get(str(idx))
        if alias:
            context[alias] = value
    context["ROW_INDEX"] = row_index
    return context


class WorkflowProcessor:
    """Expands a job into work items and runs them through the chain executor."""

    def __init__(self, config_store: WorkflowConfigStore, executor: ChainExecutor,
                 sheets_client: SheetsClient, read_range: str = "Sheet1!A2:Z"):
        self.config_store = config_store
        self.executor = executor
        self.sheets_client = sheets_client
        self.read_range = read_range

    async def process(self, job: Job, emit: Optional[EmitFn] = None) -> Dict[str, Any]:
        """Run a job. Returns the job result; raises to fail the attempt."""
        workflow_id = job.workflow_id
        if not workflow_id:
            raise ValueError(f"Job {job.id} has no workflowId")

        config = await self.config_store.load(workflow_id)
        runtime_context = job.data.get("context") or {}
        items = await self._build_items(config, runtime_context)

        logger.info("Processing job", job_id=job.id, workflow_id=workflow_id,
                    trigger_type=config.trigger_type, items=len(items))

        tree = config.tree()
        input_defaults = {"spreadsheetId": config.spreadsheet_id} if config.spreadsheet_id else {}
        outcome = JobOutcome()

        async def on_step(step_id: str, event_type: str, data: Dict[str, Any]) -> None:
            if emit:
                await emit(event_type, {"stepId": step_id, **data})

        for item in items:
            report = RunReport()
            try:
                await self.executor.execute(tree, item.context, report=report,
                                            input_defaults=input_defaults,
                                            status_callback=on_step)
            except StepExecutionError as e:
                if not item.is_sheet_row:
                    raise
                outcome.failed_items += 1
                logger.error("Sheet row failed", job_id=job.id, row=item.row_index, error=str(e))
                await self._write_error_marker(config, item.row_index, str(e))
            finally:
                outcome.branch_errors.extend(report.branch_errors)
            outcome.processed += 1

        result = outcome.to_dict()
        logger.info("Job processed", job_id=job.id, **{k: v for k, v in result.items()
                                                       if k != "branchErrors"})
        return result

    async def _build_items(self, config: WorkflowConfig,
                           runtime_context: Dict[str, Any]) -> List[WorkItem]:
        if config.trigger_type != SHEETS_TRIGGER:
            return [WorkItem(context=dict(runtime_context))]

        if not config.spreadsheet_id:
            raise ValueError("No Spreadsheet ID")

        trigger = config.trigger
        trigger_col = int(trigger.get('colIndex', DEFAULT_SHEETS_TRIGGER_COLUMN))
        trigger_value = trigger.get('value') or DEFAULT_SHEETS_TRIGGER_VALUE

        rows = await self.sheets_client.read_rows(config.spreadsheet_id, self.read_range)
        items = []
        for index, row in enumerate(rows):
            if len(row) <= trigger_col or row[trigger_col] != trigger_value:
                continue
            row_index = index + SHEET_HEADER_ROWS + 1
            items.append(WorkItem(
                context=row_context(row, row_index, config.column_mapping, runtime_context),
                row_index=row_index,
            ))

        logger.info("Sheet mode", spreadsheet_id=config.spreadsheet_id,
                    rows=len(rows), pending=len(items))
        return items

    async def _write_error_marker(self, config: WorkflowConfig, row_index: int,
                                  message: str) -> None:
        """Best effort: a failing write-back is logged, never raised."""
        trigger = config.trigger
        col = trigger.get('errorColIndex', trigger.get('colIndex', DEFAULT_SHEETS_TRIGGER_COLUMN))
        try:
            cell = f"{_sheet_name(self.read_range)}!{column_letter(int(col))}{row_index}"
            await self.sheets_client.update_cell(config.spreadsheet_id, cell, f"ERROR: {message}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to write error marker", row=row_index, error=str(e))
