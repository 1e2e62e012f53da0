from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from legalhub.core.errors import VendorFailureError
from legalhub.domain.kinds import KIND_DISTRIBUTIONS, KIND_PROCESSES, KIND_PUBLICATIONS
from legalhub.domain.models import utc_now
from legalhub.services.sync.locks import acquire_service_lock, release_service_lock
from legalhub.services.sync.sweep import (
    STATUS_CANCELLED,
    STATUS_ERROR,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    sweep,
    sync_one,
)
from legalhub.tests.utils.seed import FakeVendorClient, create_service, struct_page


def _by_service(reports) -> dict[str, object]:
    return {report.service_id: report for report in reports}


@pytest.mark.asyncio
async def test_sweep_skips_services_synced_recently() -> None:
    now = utc_now()
    fresh = await create_service(kind=KIND_PROCESSES, name="a-fresh", last_sync_at=now - timedelta(seconds=30))
    stale = await create_service(kind=KIND_DISTRIBUTIONS, name="b-stale", last_sync_at=now - timedelta(hours=1))
    never = await create_service(kind=KIND_PUBLICATIONS, name="c-never")
    fake = FakeVendorClient({"BuscaNovasDistribuicoes": [struct_page([{"codDistribuicao": 1}])]})

    reports = await sweep(client_factory=fake.factory(), now=now)

    assert [report.service_id for report in reports] == [fresh.id, stale.id, never.id]
    by_service = _by_service(reports)
    assert by_service[fresh.id].status == STATUS_SKIPPED
    assert by_service[fresh.id].detail == "synced recently"
    assert by_service[stale.id].status == STATUS_SUCCESS
    assert by_service[stale.id].records_synced == 1
    assert by_service[never.id].status == STATUS_SUCCESS
    assert fake.calls_for("BuscaNovosAndamentos") == []


@pytest.mark.asyncio
async def test_force_and_filters_select_the_targets() -> None:
    now = utc_now()
    fresh = await create_service(kind=KIND_PROCESSES, name="a-fresh", last_sync_at=now)
    await create_service(kind=KIND_DISTRIBUTIONS, name="b-other")
    await create_service(kind=KIND_PROCESSES, name="c-inactive", is_active=False)
    fake = FakeVendorClient()

    reports = await sweep(kinds=["processes"], force=True, client_factory=fake.factory(), now=now)

    assert [(report.service_id, report.status) for report in reports] == [(fresh.id, STATUS_SUCCESS)]
    assert len(fake.calls_for("BuscaNovosAndamentos")) == 1


@pytest.mark.asyncio
async def test_a_failing_service_does_not_stop_the_sweep() -> None:
    broken = await create_service(kind=KIND_PROCESSES, name="a-broken")
    healthy = await create_service(kind=KIND_PUBLICATIONS, name="b-healthy")
    fake = FakeVendorClient(
        {
            "BuscaNovosAndamentos": [VendorFailureError("BuscaNovosAndamentos failed after 3 attempts")],
            "BuscaNovasPublicacoes": [struct_page([{"codPublicacao": 5, "conteudo": "texto"}])],
        }
    )

    reports = _by_service(await sweep(client_factory=fake.factory()))

    assert reports[broken.id].status == STATUS_ERROR
    assert "failed after 3 attempts" in reports[broken.id].detail
    assert reports[healthy.id].status == STATUS_SUCCESS
    assert reports[healthy.id].records_synced == 1
    # The lock was released despite the failure.
    lock = await acquire_service_lock(broken.id)
    assert lock is not None
    await release_service_lock(lock)


@pytest.mark.asyncio
async def test_service_already_running_is_skipped() -> None:
    service = await create_service(kind=KIND_PROCESSES)
    held = await acquire_service_lock(service.id)
    assert held is not None
    fake = FakeVendorClient()
    try:
        reports = await sweep(force=True, client_factory=fake.factory())
    finally:
        await release_service_lock(held)

    assert reports[0].status == STATUS_SKIPPED
    assert reports[0].detail == "already running"
    assert fake.calls == []


@pytest.mark.asyncio
async def test_cancelled_run_is_reported_as_cancelled() -> None:
    service = await create_service(kind=KIND_PUBLICATIONS)
    cancel = asyncio.Event()
    cancel.set()
    fake = FakeVendorClient()

    report = await sync_one(service, client_factory=fake.factory(), cancel=cancel)

    assert report.status == STATUS_CANCELLED
    assert report.detail == "cancelled"
    assert report.records_synced == 0
    assert fake.calls == []
