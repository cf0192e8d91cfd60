"""Chain executor - interprets a compiled action tree.

Implements:
- Sequential stepping with flat and namespaced result merge
- Condition branching (exactly one branch runs)
- Fork/Join parallel regions over shallow context clones
- Gate skipping for any action carrying a rule tree
- Fail-stop error propagation per chain
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from constants import (
    EVENT_STEP_COMPLETED,
    EVENT_STEP_FAILED,
    EVENT_STEP_SKIPPED,
    EVENT_STEP_STARTED,
)
from core.exceptions import BranchError, StepExecutionError
from core.logging import get_logger
from services.node_executor import NodeRegistry
from services.parameter_resolver import resolve_inputs
from .conditions import evaluate, rule_tree_from_inputs
from .models import (
    ActionNode,
    ActionTree,
    ConditionAction,
    ParallelAction,
    RunReport,
    StepAction,
)

logger = get_logger(__name__)

StatusCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


def merge_branch(context: Dict[str, Any], branch_context: Dict[str, Any],
                 written: Set[str]) -> Dict[str, Any]:
    """Fold one branch back into the parent context.

    Only the keys the branch's steps wrote are copied, so a branch that left
    a key alone cannot reset a sibling's write to it. Applied in branch
    order, a key written by several branches keeps the last branch's value.
    """
    for key in written:
        context[key] = branch_context[key]
    return context


class ChainExecutor:
    """Runs action trees against a mutable execution context.

    The context is threaded by reference through a chain. Parallel branches
    each get a shallow clone that is merged back, in branch order, once every
    branch has settled.
    """

    def __init__(self, registry: NodeRegistry,
                 status_callback: Optional[StatusCallback] = None):
        """Initialize executor.

        Args:
            registry: NodeRegistry used to dispatch steps
            status_callback: Optional async callback for step lifecycle events
                            Signature: async def callback(step_id, event_type, data)
        """
        self.registry = registry
        self.status_callback = status_callback

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def execute(self, tree: ActionTree, context: Dict[str, Any],
                      report: Optional[RunReport] = None,
                      input_defaults: Optional[Dict[str, Any]] = None,
                      status_callback: Optional[StatusCallback] = None) -> Dict[str, Any]:
        """Execute a tree, mutating and returning the context.

        Args:
            tree: Compiled action tree
            context: Execution context for this work item
            report: RunReport to record into (one is created when omitted)
            input_defaults: Inputs every step receives unless it sets its own
                           (e.g. the workflow's spreadsheetId)
            status_callback: Overrides the executor-level callback for this run

        Raises:
            StepExecutionError: the first failing step of the main chain
        """
        run = _Run(
            executor=self,
            report=report if report is not None else RunReport(),
            input_defaults=input_defaults or {},
            callback=status_callback or self.status_callback,
        )
        try:
            await run.chain(tree, context)
        finally:
            run.report.completed_at = time.time()
        return context


class _Run:
    """State for one execute() call."""

    def __init__(self, executor: ChainExecutor, report: RunReport,
                 input_defaults: Dict[str, Any], callback: Optional[StatusCallback]):
        self.registry = executor.registry
        self.report = report
        self.input_defaults = input_defaults
        self.callback = callback

    async def chain(self, actions: List[ActionNode], context: Dict[str, Any],
                    written: Optional[Set[str]] = None) -> Dict[str, Any]:
        """Run actions in order. Keys written to the context are added to `written`."""
        if written is None:
            written = set()
        for action in actions:
            if action.gate and not evaluate(action.gate, context):
                logger.info("Gate closed, skipping action", action_id=action.id,
                            action_type=action.type)
                self.report.skipped.append(action.id)
                await self._notify(action.id, EVENT_STEP_SKIPPED, {"type": action.type})
                continue

            if isinstance(action, ParallelAction):
                await self._parallel(action, context, written)
            elif isinstance(action, ConditionAction):
                await self._condition(action, context, written)
                # A condition terminates its chain
                break
            else:
                await self._step(action, context, written)
        return context

    # -------------------------------------------------------------------------
    # Step
    # -------------------------------------------------------------------------

    async def _step(self, step: StepAction, context: Dict[str, Any], written: Set[str]) -> None:
        handler = self.registry.get(step.type)
        if handler is None:
            await self._notify(step.id, EVENT_STEP_FAILED,
                               {"type": step.type, "error": f"Unknown node type {step.type}"})
            raise StepExecutionError(step.id, step.type, "no executor registered for this type")

        inputs = resolve_inputs({**self.input_defaults, **step.inputs}, context)
        await self._notify(step.id, EVENT_STEP_STARTED, {"type": step.type})
        start_time = time.time()

        try:
            result = await handler(step.id, step.type, inputs, context)
        except asyncio.CancelledError:
            raise
        except StepExecutionError:
            raise
        except Exception as e:
            logger.error("Step failed", step_id=step.id, node_type=step.type, error=str(e))
            await self._notify(step.id, EVENT_STEP_FAILED, {"type": step.type, "error": str(e)})
            raise StepExecutionError(step.id, step.type, str(e)) from e

        if isinstance(result, dict):
            context.update(result)
            context[step.id] = dict(result)
            written.update(result)
            written.add(step.id)
        elif result is not None:
            context[step.id] = result
            written.add(step.id)

        self.report.completed_steps.append(step.id)
        logger.debug("Step completed", step_id=step.id, node_type=step.type,
                     execution_time=round(time.time() - start_time, 4))
        await self._notify(step.id, EVENT_STEP_COMPLETED,
                           {"type": step.type, "result": result})

    # -------------------------------------------------------------------------
    # Condition
    # -------------------------------------------------------------------------

    async def _condition(self, condition: ConditionAction, context: Dict[str, Any],
                         written: Set[str]) -> None:
        rule_tree = rule_tree_from_inputs(condition.inputs)
        outcome = evaluate(rule_tree, context)
        branch = condition.true_branch if outcome else condition.false_branch

        logger.info("Condition evaluated", condition_id=condition.id, result=outcome,
                    branch_length=len(branch))
        self.report.completed_steps.append(condition.id)
        await self._notify(condition.id, EVENT_STEP_COMPLETED,
                           {"type": condition.type, "result": {"branch": outcome}})
        await self.chain(branch, context, written)

    # -------------------------------------------------------------------------
    # Parallel
    # -------------------------------------------------------------------------

    async def _parallel(self, parallel: ParallelAction, context: Dict[str, Any],
                        written: Set[str]) -> None:
        """Fork, await every branch, then merge successful branches in order."""
        logger.info("Forking parallel region", parallel_id=parallel.id,
                    branches=len(parallel.branches))

        branch_contexts = [dict(context) for _ in parallel.branches]
        branch_writes: List[Set[str]] = [set() for _ in parallel.branches]
        results = await asyncio.gather(
            *(self.chain(branch, branch_ctx, keys)
              for branch, branch_ctx, keys
              in zip(parallel.branches, branch_contexts, branch_writes)),
            return_exceptions=True,
        )

        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                error = BranchError(parallel.id, index, result)
                self.report.branch_errors.append(error.to_dict())
                logger.error("Parallel branch failed", parallel_id=parallel.id,
                             branch=index, error=str(result))
                continue
            merge_branch(context, result, branch_writes[index])
            written.update(branch_writes[index])

        logger.info("Parallel region merged", parallel_id=parallel.id,
                    failed=sum(1 for r in results if isinstance(r, BaseException)))

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def _notify(self, step_id: str, event_type: str, data: Dict[str, Any]) -> None:
        if self.callback:
            try:
                await self.callback(step_id, event_type, data)
            except Exception as e:
                logger.warning("Status callback failed", step_id=step_id, error=str(e))
