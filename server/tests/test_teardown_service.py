import asyncio

import pytest

from gamedeploy.core.errors import DeploymentNotFoundError
from gamedeploy.core.models import DeploymentStatus, JobStatus, LogLevel
from gamedeploy.services.job_worker import JobWorker
from gamedeploy.services.teardown_service import (
    PIPELINE_STILL_RUNNING_MESSAGE,
    TEARDOWN_FAILED_MESSAGE,
    TeardownOutcome,
    TeardownService,
)


class RecordingWorker:
    def __init__(self):
        self.cancelled = []

    async def cancel_running(self, deployment_id, timeout=30.0):
        self.cancelled.append(deployment_id)
        return True


@pytest.fixture
def teardown_parts(pipeline_parts, hypervisor_config):
    def factory(store_config=True, **setting_overrides):
        parts = pipeline_parts(**setting_overrides)
        if store_config:
            parts.store.save_hypervisor_config(hypervisor_config)
        parts.worker = RecordingWorker()
        parts.teardown = TeardownService(
            parts.store,
            parts.hypervisor_factory,
            worker=parts.worker,
            app_settings=parts.settings,
        )
        return parts

    return factory


def _provisioned(store, deployment_request, vmid=150, ip="10.0.0.10"):
    deployment_id = store.enqueue_deployment(deployment_request)
    job = store.claim_next_job()
    store.mark_running(deployment_id)
    store.record_checkpoint(deployment_id, vmid, ip)
    return deployment_id, job


@pytest.mark.anyio("asyncio")
async def test_queued_deployment_is_removed_without_hypervisor(teardown_parts, deployment_request):
    parts = teardown_parts()
    deployment_id = parts.store.enqueue_deployment(deployment_request)
    job_id = parts.store.jobs_for_deployment(deployment_id)[0].id

    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is True
    assert outcome.record_deleted is True
    assert outcome.cancelled_jobs == 1
    assert outcome.vmid is None
    assert parts.factory_calls == []
    assert parts.store.get_deployment(deployment_id) is None
    assert parts.store.get_job(job_id).status is JobStatus.CANCELLED
    assert parts.worker.cancelled == [deployment_id]


@pytest.mark.anyio("asyncio")
async def test_provisioned_vm_is_stopped_then_deleted(teardown_parts, deployment_request):
    parts = teardown_parts()
    deployment_id, job = _provisioned(parts.store, deployment_request)

    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is True
    assert outcome.vmid == 150
    assert parts.hypervisor.call_names == ["stop", "wait_for_task", "delete", "wait_for_task"]
    assert dict(parts.hypervisor.calls)["delete"] == ("pve1", 150)
    assert parts.hypervisor.closed is True
    assert parts.store.get_deployment(deployment_id) is None
    assert parts.store.get_job(job.id).status is JobStatus.CANCELLED


@pytest.mark.anyio("asyncio")
async def test_stop_failure_still_attempts_delete(teardown_parts, deployment_request):
    parts = teardown_parts()
    parts.hypervisor.fail_on = {"stop"}
    deployment_id, _ = _provisioned(parts.store, deployment_request)

    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is True
    assert "delete" in parts.hypervisor.call_names
    assert parts.store.get_deployment(deployment_id) is None


@pytest.mark.anyio("asyncio")
async def test_delete_failure_keeps_failed_record(teardown_parts, deployment_request):
    parts = teardown_parts()
    parts.hypervisor.fail_on = {"delete"}
    deployment_id, job = _provisioned(parts.store, deployment_request)

    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is False
    assert outcome.record_deleted is False
    assert "delete exploded" in outcome.error

    deployment = parts.store.get_deployment(deployment_id)
    assert deployment.status is DeploymentStatus.FAILED
    assert deployment.error_message == TEARDOWN_FAILED_MESSAGE
    assert deployment.vmid == 150
    errors = [entry.message for entry in parts.store.list_logs(deployment_id) if entry.level is LogLevel.ERROR]
    assert errors and errors[0].startswith("VM teardown failed:")
    assert parts.store.get_job(job.id).status is JobStatus.CANCELLED


@pytest.mark.anyio("asyncio")
async def test_teardown_without_hypervisor_config_is_a_failure(teardown_parts, deployment_request):
    parts = teardown_parts(store_config=False, proxmox_api_url=None)
    deployment_id, _ = _provisioned(parts.store, deployment_request)

    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is False
    assert parts.factory_calls == []
    assert parts.store.get_deployment(deployment_id).status is DeploymentStatus.FAILED


@pytest.mark.anyio("asyncio")
async def test_retry_after_failed_teardown_succeeds(teardown_parts, deployment_request):
    parts = teardown_parts()
    parts.hypervisor.fail_on = {"delete"}
    deployment_id, _ = _provisioned(parts.store, deployment_request)
    await parts.teardown.cancel_deployment(deployment_id)

    parts.hypervisor.fail_on = set()
    outcome = await parts.teardown.cancel_deployment(deployment_id)

    assert outcome.vm_deleted is True
    assert parts.store.get_deployment(deployment_id) is None


@pytest.mark.anyio("asyncio")
async def test_unknown_deployment_raises_not_found(teardown_parts):
    parts = teardown_parts()
    with pytest.raises(DeploymentNotFoundError):
        await parts.teardown.cancel_deployment(99)
    assert parts.worker.cancelled == []


@pytest.mark.anyio("asyncio")
async def test_teardown_without_worker(pipeline_parts, deployment_request):
    parts = pipeline_parts()
    teardown = TeardownService(parts.store, parts.hypervisor_factory, app_settings=parts.settings)
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    outcome = await teardown.cancel_deployment(deployment_id)

    assert outcome == TeardownOutcome(deployment_id, None, True, True, 1)


@pytest.mark.anyio("asyncio")
async def test_pipeline_outliving_the_wait_keeps_its_record(pipeline_parts, hypervisor_config, deployment_request):
    parts = pipeline_parts()
    parts.store.save_hypervisor_config(hypervisor_config)
    worker = JobWorker(parts.store, parts.pipeline, poll_interval=0.01, app_settings=parts.settings)
    teardown = TeardownService(
        parts.store,
        parts.hypervisor_factory,
        worker=worker,
        app_settings=parts.settings,
        cancel_wait_seconds=0.05,
    )
    reached = asyncio.Event()
    release = asyncio.Event()

    async def slow_clone_wait(node, task_ref, timeout):
        parts.hypervisor.calls.append(("wait_for_task", (node, task_ref, timeout)))
        if ":clone:" in task_ref:
            reached.set()
            await release.wait()

    parts.hypervisor.wait_for_task = slow_clone_wait
    deployment_id = parts.store.enqueue_deployment(deployment_request)
    run = asyncio.create_task(worker.run_once())
    await asyncio.wait_for(reached.wait(), timeout=5)

    outcome = await teardown.cancel_deployment(deployment_id)

    assert outcome.pipeline_stopped is False
    assert outcome.vm_deleted is False
    assert outcome.record_deleted is False
    assert outcome.error == PIPELINE_STILL_RUNNING_MESSAGE
    assert "delete" not in parts.hypervisor.call_names
    assert parts.store.get_deployment(deployment_id) is not None

    # Once the clone returns the VM is checkpointed and the pipeline unwinds.
    release.set()
    await run
    deployment = parts.store.get_deployment(deployment_id)
    assert deployment.status is DeploymentStatus.CANCELLED
    assert deployment.vmid == 150

    retry = await teardown.cancel_deployment(deployment_id)

    assert retry.vm_deleted is True
    assert dict(parts.hypervisor.calls)["delete"] == ("pve1", 150)
    assert parts.store.get_deployment(deployment_id) is None
