import asyncio

import pytest

from gamedeploy.core.models import DeploymentStatus, JobStatus
from gamedeploy.services.job_worker import JobWorker


@pytest.fixture
def worker_parts(pipeline_parts, hypervisor_config):
    def factory(store_config=True, **setting_overrides):
        parts = pipeline_parts(**setting_overrides)
        if store_config:
            parts.store.save_hypervisor_config(hypervisor_config)
        parts.worker = JobWorker(parts.store, parts.pipeline, poll_interval=0.01, app_settings=parts.settings)
        return parts

    return factory


@pytest.mark.anyio("asyncio")
async def test_run_once_is_idle_without_jobs(worker_parts):
    parts = worker_parts()
    assert await parts.worker.run_once() is None


@pytest.mark.anyio("asyncio")
async def test_run_once_completes_job(worker_parts, deployment_request):
    parts = worker_parts()
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    job = await parts.worker.run_once()

    assert job.deployment_id == deployment_id
    assert parts.store.get_job(job.id).status is JobStatus.DONE
    assert parts.store.get_deployment(deployment_id).status is DeploymentStatus.SUCCESS


@pytest.mark.anyio("asyncio")
async def test_pipeline_failure_fails_job(worker_parts, deployment_request):
    parts = worker_parts()
    parts.hypervisor.fail_on = {"clone"}
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    job = await parts.worker.run_once()

    stored = parts.store.get_job(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.last_error == "clone exploded"
    assert parts.store.get_deployment(deployment_id).status is DeploymentStatus.FAILED


@pytest.mark.anyio("asyncio")
async def test_missing_hypervisor_config_fails_deployment(worker_parts, deployment_request):
    parts = worker_parts(store_config=False, proxmox_api_url=None)
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    job = await parts.worker.run_once()

    assert parts.store.get_job(job.id).status is JobStatus.FAILED
    deployment = parts.store.get_deployment(deployment_id)
    assert deployment.status is DeploymentStatus.FAILED
    assert deployment.error_message.startswith("Proxmox configuration not set")
    assert parts.factory_calls == []


@pytest.mark.anyio("asyncio")
async def test_dry_run_needs_no_hypervisor_config(worker_parts, deployment_request):
    parts = worker_parts(store_config=False, dry_run=True, proxmox_api_url=None)
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    job = await parts.worker.run_once()

    assert parts.store.get_job(job.id).status is JobStatus.DONE
    assert parts.store.get_deployment(deployment_id).status is DeploymentStatus.SUCCESS


@pytest.mark.anyio("asyncio")
async def test_cancel_running_stops_in_flight_pipeline(worker_parts, deployment_request):
    parts = worker_parts()
    reached = asyncio.Event()
    release = asyncio.Event()

    async def slow_wait_for_tcp(host, port, timeout):
        reached.set()
        await release.wait()

    parts.hypervisor.wait_for_tcp = slow_wait_for_tcp
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    run = asyncio.create_task(parts.worker.run_once())
    await asyncio.wait_for(reached.wait(), timeout=5)

    assert await parts.worker.cancel_running(deployment_id + 1) is True
    cancel = asyncio.create_task(parts.worker.cancel_running(deployment_id, timeout=5))
    await asyncio.sleep(0)
    release.set()

    assert await cancel is True
    job = await run

    assert parts.store.get_job(job.id).status is JobStatus.CANCELLED
    deployment = parts.store.get_deployment(deployment_id)
    assert deployment.status is DeploymentStatus.CANCELLED
    assert deployment.vmid == 150
    assert parts.invoker.calls == []


@pytest.mark.anyio("asyncio")
async def test_cancel_running_without_in_flight_job(worker_parts):
    parts = worker_parts()
    assert await parts.worker.cancel_running(1) is True


@pytest.mark.anyio("asyncio")
async def test_cancel_running_reports_pipeline_that_does_not_stop(worker_parts, deployment_request):
    parts = worker_parts()
    reached = asyncio.Event()
    release = asyncio.Event()

    async def slow_wait_for_tcp(host, port, timeout):
        reached.set()
        await release.wait()

    parts.hypervisor.wait_for_tcp = slow_wait_for_tcp
    deployment_id = parts.store.enqueue_deployment(deployment_request)

    run = asyncio.create_task(parts.worker.run_once())
    await asyncio.wait_for(reached.wait(), timeout=5)

    assert await parts.worker.cancel_running(deployment_id, timeout=0.05) is False

    release.set()
    job = await run
    assert parts.store.get_job(job.id).status is JobStatus.CANCELLED
    assert await parts.worker.cancel_running(deployment_id, timeout=0.05) is True


@pytest.mark.anyio("asyncio")
async def test_start_processes_queue_until_stopped(worker_parts, deployment_request):
    parts = worker_parts()
    ids = [parts.store.enqueue_deployment(deployment_request) for _ in range(2)]

    await parts.worker.start()
    assert parts.worker.is_running is True

    for _ in range(200):
        statuses = {parts.store.get_deployment(i).status for i in ids}
        if statuses == {DeploymentStatus.SUCCESS}:
            break
        await asyncio.sleep(0.01)

    await parts.worker.stop()

    assert parts.worker.is_running is False
    assert [parts.store.get_deployment(i).status for i in ids] == [DeploymentStatus.SUCCESS] * 2
    assert [parts.store.get_deployment(i).ip_address for i in ids] == ["10.0.0.10", "10.0.0.11"]
