"""Job queue: claims, retry/backoff, repeating entries and stalled leases."""

import pytest

from core.exceptions import QueueError
from services.queue import (
    BackoffPolicy,
    JobStatus,
    RepeatOptions,
    StalledJobSweeper,
    build_cron_trigger,
)
from services.queue.models import now_ms

FAR_FUTURE = 10 ** 8


def test_backoff_delay_doubles_per_attempt():
    policy = BackoffPolicy(attempts=3, delay_ms=1000)
    assert [policy.calculate_delay(n) for n in (1, 2, 3)] == [1000, 2000, 4000]
    assert policy.should_retry(2) is True
    assert policy.should_retry(3) is False


def test_cron_trigger_accepts_five_and_six_fields():
    build_cron_trigger("*/5 * * * *")
    build_cron_trigger("0 */5 * * * *")
    with pytest.raises(QueueError):
        build_cron_trigger("* * *")
    with pytest.raises(QueueError):
        build_cron_trigger("61 * * * *")


def test_repeat_options_need_exactly_one_spec():
    with pytest.raises(QueueError):
        RepeatOptions()
    with pytest.raises(QueueError):
        RepeatOptions(pattern="* * * * *", every=1000)
    assert RepeatOptions(every=300000).describe() == "Every 5 mins"
    assert RepeatOptions(pattern="0 9 * * 1").describe() == "0 9 * * 1"


def test_next_run_is_strictly_after():
    every_minute = RepeatOptions(pattern="* * * * *")
    start = 1_699_999_980_000     # exactly on a minute boundary
    assert every_minute.next_run(start) == start + 60_000
    assert RepeatOptions(every=5000).next_run(start) == start + 5000


async def test_add_and_claim(queue):
    job = await queue.add("execute-workflow", {"workflowId": "wf"}, job_id="job_1")
    assert job.status == JobStatus.WAITING

    claimed = await queue.claim_next()
    assert claimed.id == "job_1"
    assert claimed.status == JobStatus.ACTIVE
    assert await queue.claim_next() is None
    assert (await queue.counts())["active"] == 1


async def test_duplicate_pending_id_is_ignored(queue):
    first = await queue.add("execute-workflow", {"workflowId": "a"}, job_id="same")
    second = await queue.add("execute-workflow", {"workflowId": "b"}, job_id="same")

    assert second.data == first.data == {"workflowId": "a"}
    assert (await queue.counts())["due"] == 1


async def test_delayed_job_is_not_claimed_early(queue):
    await queue.add("execute-workflow", {}, job_id="later", delay_ms=60_000)
    assert await queue.claim_next() is None
    assert (await queue.claim_next(now_ms() + 61_000)).id == "later"


async def test_failed_job_retries_with_backoff_then_fails_permanently(queue):
    await queue.add("execute-workflow", {"workflowId": "wf"}, job_id="flaky")

    job = await queue.claim_next()
    before = now_ms()
    job = await queue.fail(job, "boom 1")
    assert job.status == JobStatus.DELAYED
    assert job.attempts_made == 1
    assert job.run_at >= before + 1000

    job = await queue.fail(await queue.claim_next(FAR_FUTURE + now_ms()), "boom 2")
    assert job.status == JobStatus.DELAYED
    assert job.run_at >= before + 2000

    job = await queue.fail(await queue.claim_next(FAR_FUTURE + now_ms()), "boom 3")
    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert job.failed_reason == "boom 3"
    assert await queue.claim_next(FAR_FUTURE + now_ms()) is None

    stored = await queue.get_job("flaky")
    assert stored.status == JobStatus.FAILED


async def test_non_retryable_failure_is_permanent(queue):
    await queue.add("execute-workflow", {}, job_id="bad-config")
    job = await queue.fail(await queue.claim_next(), "Invalid timer configuration.", retry=False)
    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1


async def test_complete_records_result(queue):
    await queue.add("execute-workflow", {}, job_id="ok")
    job = await queue.complete(await queue.claim_next(), {"status": "success"})
    assert job.status == JobStatus.COMPLETED
    assert (await queue.get_job("ok")).result == {"status": "success"}
    assert (await queue.counts()) == {"due": 0, "active": 0, "repeating": 0}


async def test_finished_job_id_can_be_reused(queue):
    await queue.add("execute-workflow", {}, job_id="again")
    await queue.complete(await queue.claim_next(), {})
    job = await queue.add("execute-workflow", {"n": 2}, job_id="again")
    assert job.status == JobStatus.WAITING
    assert job.data == {"n": 2}


async def test_due_repeat_spawns_an_instance_and_advances(queue):
    schedule = await queue.add_repeatable(
        "execute-workflow", {"workflowId": "cron_workflow_x"}, "cron_workflow_x",
        RepeatOptions(every=60_000),
    )
    fire_at = schedule.next

    assert await queue.promote_due_repeats(fire_at - 1) == []
    spawned = await queue.promote_due_repeats(fire_at)

    assert [job.id for job in spawned] == [f"repeat:cron_workflow_x:{fire_at}"]
    assert spawned[0].repeat_key == schedule.key
    [stored] = await queue.get_repeatable_jobs()
    assert stored.next == fire_at + 60_000


async def test_stalled_lease_is_released_as_a_failed_attempt(queue):
    await queue.add("execute-workflow", {}, job_id="stuck")
    await queue.claim_next()
    sweeper = StalledJobSweeper(queue)

    assert await sweeper.sweep_once(now_ms()) == []
    recovered = await sweeper.sweep_once(now_ms() + queue.lease_ms + 1)

    assert recovered == ["stuck"]
    job = await queue.get_job("stuck")
    assert job.status == JobStatus.DELAYED
    assert job.attempts_made == 1
    assert "stalled" in job.failed_reason


async def test_extended_lease_is_not_swept(queue):
    await queue.add("execute-workflow", {}, job_id="long")
    start = now_ms()
    job = await queue.claim_next(start)
    sweeper = StalledJobSweeper(queue)

    assert await queue.extend_lease(job, start + queue.lease_ms) is True
    assert await sweeper.sweep_once(start + queue.lease_ms + 1) == []
    assert (await queue.get_job("long")).status == JobStatus.ACTIVE


async def test_completion_after_sweep_withdraws_the_requeued_retry(queue):
    await queue.add("execute-workflow", {}, job_id="slow")
    job = await queue.claim_next()
    await StalledJobSweeper(queue).sweep_once(now_ms() + queue.lease_ms + 1)

    assert await queue.extend_lease(job) is False
    done = await queue.complete(job, {"status": "success"})

    assert done.status == JobStatus.COMPLETED
    assert done.attempts_made == 1
    assert await queue.claim_next(FAR_FUTURE + now_ms()) is None
    assert (await queue.counts())["due"] == 0


async def test_outcome_is_discarded_once_another_run_holds_the_job(queue):
    await queue.add("execute-workflow", {}, job_id="slow")
    first = await queue.claim_next()
    await StalledJobSweeper(queue).sweep_once(now_ms() + queue.lease_ms + 1)
    second = await queue.claim_next(FAR_FUTURE + now_ms())
    assert second.id == "slow"

    assert await queue.complete(first, {"status": "success"}) is None
    assert await queue.fail(first, "late failure") is None

    stored = await queue.get_job("slow")
    assert stored.status == JobStatus.ACTIVE
    assert stored.attempts_made == 1
    assert (await queue.complete(second, {})).status == JobStatus.COMPLETED
