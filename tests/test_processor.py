"""Worker side: job expansion, sheet rows, error markers and job outcomes."""

import asyncio
import json

import pytest

from core.exceptions import ConfigNotFoundError
from services.config_store import WorkflowConfig
from services.queue import Job, JobStatus, Worker, row_context


def sheet_config(actions, **trigger):
    return WorkflowConfig(
        trigger={"type": "sheets", "colIndex": 2, "value": "Pending", **trigger},
        spreadsheet_id="sheet-123",
        column_mapping={"0": "name"},
        actions=actions,
    )


def job_for(workflow_id, context=None):
    return Job(id=f"job_for_{workflow_id}", name="execute-workflow",
               data={"workflowId": workflow_id, "context": context or {}})


def test_row_context_maps_columns_aliases_and_row_index():
    context = row_context(["Ada", "ada@example.com"], 7, {"0": "name"}, {"source": "sheet"})
    assert context == {
        "source": "sheet",
        "Column_A": "Ada",
        "Column_B": "ada@example.com",
        "name": "Ada",
        "ROW_INDEX": 7,
    }


async def test_single_item_run_with_runtime_context(processor, config_store):
    await config_store.save("wf", WorkflowConfig(
        trigger={"type": "webhook"},
        actions=[{"id": "a", "type": "echo", "inputs": {"greeting": "hi {{who}}"}}],
    ))
    events = []

    async def emit(event_type, data):
        events.append((event_type, data["stepId"]))

    result = await processor.process(job_for("wf", {"who": "there"}), emit=emit)

    assert result == {"status": "success", "processed": 1, "failedItems": 0, "branchErrors": []}
    assert ("step_started", "a") in events
    assert ("step_completed", "a") in events


async def test_missing_config_fails_the_attempt(processor):
    with pytest.raises(ConfigNotFoundError):
        await processor.process(job_for("gone"))


async def test_non_sheet_step_failure_propagates(processor, config_store):
    await config_store.save("wf", WorkflowConfig(
        trigger={"type": "webhook"},
        actions=[{"id": "bad", "type": "fail", "inputs": {}}],
    ))
    with pytest.raises(Exception, match="boom"):
        await processor.process(job_for("wf"))


async def test_sheet_trigger_runs_each_pending_row(processor, config_store, sheets, registry):
    seen = []

    async def capture(node_id, node_type, parameters, context):
        seen.append((context["ROW_INDEX"], context["name"], parameters["spreadsheetId"]))
        return {"OK": True}

    registry.register("capture", capture)
    sheets.rows = [
        ["Ada", "x", "Pending"],
        ["Bob", "y", "Done"],
        ["Cy", "z", "Pending"],
        ["short row"],
    ]
    await config_store.save("wf", sheet_config([{"id": "c", "type": "capture", "inputs": {}}]))

    result = await processor.process(job_for("wf"))

    assert seen == [(2, "Ada", "sheet-123"), (4, "Cy", "sheet-123")]
    assert result["processed"] == 2
    assert result["status"] == "success"


async def test_failing_row_writes_an_error_marker(processor, config_store, sheets):
    sheets.rows = [["Ada", "x", "Pending"], ["Bob", "y", "Pending"]]
    await config_store.save("wf", sheet_config(
        [{"id": "bad", "type": "fail", "inputs": {"message": "no funds"}}],
        errorColIndex=3,
    ))

    result = await processor.process(job_for("wf"))

    assert result["status"] == "partial"
    assert result["failedItems"] == 2
    assert [u["range"] for u in sheets.updates] == ["Sheet1!D2", "Sheet1!D3"]
    assert sheets.updates[0]["value"].startswith("ERROR: ")
    assert "no funds" in sheets.updates[0]["value"]


async def test_failing_error_marker_write_is_swallowed(processor, config_store, sheets):
    sheets.rows = [["Ada", "x", "Pending"]]
    sheets.fail_updates = True
    await config_store.save("wf", sheet_config([{"id": "bad", "type": "fail", "inputs": {}}]))

    result = await processor.process(job_for("wf"))

    assert result["failedItems"] == 1
    assert sheets.updates == []


async def test_sheet_trigger_without_spreadsheet_id_fails(processor, config_store):
    config = sheet_config([])
    config.spreadsheet_id = None
    await config_store.save("wf", config)

    with pytest.raises(ValueError, match="No Spreadsheet ID"):
        await processor.process(job_for("wf"))


async def test_branch_failure_reports_partial_success(processor, config_store):
    await config_store.save("wf", WorkflowConfig(
        trigger={"type": "webhook"},
        actions=[{"id": "parallel_a", "type": "parallel", "branches": [
            [{"id": "ok", "type": "echo", "inputs": {"v": 1}}],
            [{"id": "bad", "type": "fail", "inputs": {}}],
        ]}],
    ))

    result = await processor.process(job_for("wf"))

    assert result["status"] == "partial"
    assert result["failedItems"] == 0
    assert result["branchErrors"][0]["parallel_id"] == "parallel_a"


# ── Worker ──────────────────────────────────────────────────────


async def test_worker_runs_job_and_publishes_lifecycle(queue, processor, bridge, config_store):
    await config_store.save("wf", WorkflowConfig(
        trigger={"type": "webhook"},
        actions=[{"id": "a", "type": "echo", "inputs": {"v": 1}}],
    ))
    await queue.add("execute-workflow", {"workflowId": "wf", "context": {}}, job_id="job_1")
    published = []

    async def record(event):
        published.append(event.to_dict())
        return 1

    bridge.publish = record
    worker = Worker(queue, processor, bridge, concurrency=1)

    job = await worker.process_next()

    assert job.status == JobStatus.COMPLETED
    assert job.result["status"] == "success"
    types = [e["type"] for e in published]
    assert types[0] == "job_active"
    assert types[-1] == "job_completed"
    assert "step_completed" in types
    assert all(e["jobId"] == "job_1" for e in published)
    json.dumps(published)


async def test_worker_retries_then_fails_permanently(queue, processor, bridge):
    # No stored config: every attempt fails
    await queue.add("execute-workflow", {"workflowId": "missing"}, job_id="job_2")
    published = []

    async def record(event):
        published.append(event.type)
        return 1

    bridge.publish = record
    worker = Worker(queue, processor, bridge)

    job = await worker.run_job(await queue.claim_next())
    assert job.status == JobStatus.DELAYED
    job = await worker.run_job(await queue.claim_next(job.run_at))
    job = await worker.run_job(await queue.claim_next(job.run_at))

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert published.count("job_retrying") == 2
    assert published[-1] == "job_failed"


async def test_worker_renews_the_lease_while_a_job_runs(queue, processor, bridge, config_store,
                                                        registry, cache):
    async def slow(node_id, node_type, parameters, context):
        await asyncio.sleep(0.05)
        return {"DONE": True}

    registry.register("slow", slow)
    await config_store.save("wf", WorkflowConfig(
        trigger={"type": "webhook"},
        actions=[{"id": "s", "type": "slow", "inputs": {}}],
    ))
    await queue.add("execute-workflow", {"workflowId": "wf"}, job_id="job_3")
    job = await queue.claim_next()
    first_deadline = await cache.zset_score(queue._active_key, "job_3")
    deadlines = []

    async def record(event):
        if event.type == "step_completed":
            deadlines.append(await cache.zset_score(queue._active_key, "job_3"))
        return 1

    bridge.publish = record
    worker = Worker(queue, processor, bridge, heartbeat_interval=0.01)

    job = await worker.run_job(job)

    assert job.status == JobStatus.COMPLETED
    assert deadlines[0] > first_deadline
