from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import func, select

from legalhub.core.errors import RecordNotFoundError, VendorDuplicateError, VendorFailureError
from legalhub.domain.kinds import (
    KIND_DISTRIBUTIONS,
    KIND_PROCESSES,
    RESOURCE_CASE,
    RESOURCE_DISTRIBUTION_TERM,
    RESOURCE_STATUS_CODE_UNKNOWN,
    RESOURCE_STATUS_REGISTERED,
    RESOURCE_STATUS_REMOVED,
)
from legalhub.domain.models import CallLog, ClientLink, MonitoredResource, SyncRun
from legalhub.persistence.db import SessionLocal
from legalhub.services.registrar import register_for_client, release_for_client, set_active
from legalhub.services.resilience import RetryPolicy
from legalhub.services.vendor.factory import build_vendor_client
from legalhub.services.vendor.results import Empty, StructList
from legalhub.tests.utils.seed import FakeVendorClient, create_client, create_service


CASE_NUMBER = "0001-23.2024.1.00.0000"


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


async def _register(service, client_id: str, factory, natural_key: str = CASE_NUMBER, **kwargs):
    async with SessionLocal() as session:
        return await register_for_client(
            session,
            service=service,
            resource_type=kwargs.pop("resource_type", RESOURCE_CASE),
            natural_key=natural_key,
            client_id=client_id,
            payload=kwargs.pop("payload", {"uf": "SP", "instance": 1, "tribunal": "TJSP"}),
            client_factory=factory,
        )


async def _release(resource_id: str, client_id: str, factory):
    async with SessionLocal() as session:
        return await release_for_client(session, resource_id=resource_id, client_id=client_id, client_factory=factory)


@pytest.mark.asyncio
async def test_two_clients_share_one_upstream_registration() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"codProcesso": 4242})

    transport = httpx.MockTransport(handler)
    policy = RetryPolicy(timeout_ms=2000, max_attempts=3, backoff_ms=1)

    def factory(service, *, run_logger=None):
        return build_vendor_client(
            service, run_logger=run_logger, http_client=httpx.AsyncClient(transport=transport), policy=policy
        )

    service = await create_service(kind=KIND_PROCESSES, office_code=77)
    client_a = await create_client("client-a")
    client_b = await create_client("client-b")

    first = await _register(service, client_a, factory)
    second = await _register(service, client_b, factory)

    assert first.registered_upstream is True
    assert second.registered_upstream is False
    assert first.resource.id == second.resource.id
    assert first.resource.vendor_code == "4242"
    assert first.resource.status == RESOURCE_STATUS_REGISTERED

    assert len(requests) == 1
    sent = json.loads(requests[0].content)
    assert sent == {"numProcesso": CASE_NUMBER, "codEscritorio": 77, "UF": "SP", "instancia": 1}

    assert await _count(MonitoredResource) == 1
    assert await _count(ClientLink) == 2
    assert await _count(CallLog) == 1
    async with SessionLocal() as session:
        run = (await session.execute(select(SyncRun))).scalar_one()
    assert run.sync_type == "case_register"
    assert run.status == "success"


@pytest.mark.asyncio
async def test_registering_again_for_the_same_client_is_idempotent() -> None:
    fake = FakeVendorClient({"CadastraNovoProcesso": [StructList([{"codProcesso": 1}])]})
    service = await create_service(kind=KIND_PROCESSES)
    client_id = await create_client()

    await _register(service, client_id, fake.factory())
    again = await _register(service, client_id, fake.factory(), natural_key=f"  {CASE_NUMBER} ")

    assert again.registered_upstream is False
    assert len(fake.calls_for("CadastraNovoProcesso")) == 1
    assert await _count(ClientLink) == 1


@pytest.mark.asyncio
async def test_vendor_duplicate_answer_recovers_the_code_from_the_listing() -> None:
    fake = FakeVendorClient(
        {
            "CadastrarNome": [VendorDuplicateError("Nome já cadastrado", status_code=409)],
            "BuscaNomesCadastrados": [
                StructList([{"nome": "OUTRO NOME", "codNome": 1}, {"Nome": "acme  ltda", "CodNome": 88}])
            ],
        }
    )
    service = await create_service(kind=KIND_DISTRIBUTIONS)
    client_id = await create_client()

    result = await _register(
        service, client_id, fake.factory(), natural_key="ACME LTDA",
        resource_type=RESOURCE_DISTRIBUTION_TERM, payload={"variations": ["ACME"]},
    )

    assert result.registered_upstream is True
    assert result.resource.vendor_code == "88"
    assert result.resource.status == RESOURCE_STATUS_REGISTERED
    assert result.resource.payload_json["duplicate"] is True
    assert fake.calls_for("CadastrarNome") == [{"codEscritorio": None, "nome": "ACME LTDA", "variacoes": ["ACME"]}]
    assert fake.calls_for("BuscaNomesCadastrados") == [{"codEscritorio": None}]


@pytest.mark.asyncio
async def test_duplicate_without_a_listed_code_is_removed_once_the_code_shows_up() -> None:
    fake = FakeVendorClient(
        {
            "CadastraNovoProcesso": [VendorDuplicateError("Processo já cadastrado", status_code=409)],
            "BuscaProcessos": [
                Empty(),
                StructList(
                    [
                        {"numProcesso": "00012320241000000", "codProcesso": 999, "codEscritorio": 8},
                        {"numProcesso": "00012320241000000", "codProcesso": 555, "codEscritorio": 7},
                    ]
                ),
            ],
        }
    )
    service = await create_service(kind=KIND_PROCESSES, office_code=7)
    client_id = await create_client()

    registered = await _register(service, client_id, fake.factory())
    assert registered.resource.vendor_code is None
    assert registered.resource.status == RESOURCE_STATUS_CODE_UNKNOWN

    released = await _release(registered.resource.id, client_id, fake.factory())

    assert released.removed_upstream is True
    assert fake.calls_for("ExcluirProcesso") == [{"codProcesso": 555}]
    async with SessionLocal() as session:
        resource = await session.get(MonitoredResource, registered.resource.id)
    assert resource.vendor_code == "555"
    assert resource.status == RESOURCE_STATUS_REMOVED


@pytest.mark.asyncio
async def test_release_without_a_known_code_fails_and_keeps_the_link() -> None:
    fake = FakeVendorClient({"CadastraNovoProcesso": [VendorDuplicateError("Processo já cadastrado", status_code=409)]})
    service = await create_service(kind=KIND_PROCESSES, office_code=7)
    client_id = await create_client()
    resource_id = (await _register(service, client_id, fake.factory())).resource.id

    with pytest.raises(VendorFailureError):
        await _release(resource_id, client_id, fake.factory())

    assert fake.calls_for("ExcluirProcesso") == []
    assert len(fake.calls_for("BuscaProcessos")) == 2
    assert await _count(ClientLink) == 1
    async with SessionLocal() as session:
        resource = await session.get(MonitoredResource, resource_id)
    assert resource.status == RESOURCE_STATUS_CODE_UNKNOWN
    assert resource.removed_at is None


@pytest.mark.asyncio
async def test_vendor_failure_leaves_no_resource_and_no_link() -> None:
    fake = FakeVendorClient({"CadastraNovoProcesso": [VendorFailureError("HTTP 400", status_code=400)]})
    service = await create_service(kind=KIND_PROCESSES)
    client_id = await create_client()

    with pytest.raises(VendorFailureError):
        await _register(service, client_id, fake.factory())

    assert await _count(MonitoredResource) == 0
    assert await _count(ClientLink) == 0
    async with SessionLocal() as session:
        run = (await session.execute(select(SyncRun))).scalar_one()
    assert run.status == "error"


@pytest.mark.asyncio
async def test_removal_fires_once_after_the_last_unlink() -> None:
    fake = FakeVendorClient({"CadastraNovoProcesso": [StructList([{"codProcesso": 31}])]})
    service = await create_service(kind=KIND_PROCESSES)
    clients = [await create_client(f"client-{index}") for index in range(3)]
    resource_id = None
    for client_id in clients:
        resource_id = (await _register(service, client_id, fake.factory())).resource.id

    results = []
    for client_id in clients:
        results.append(await _release(resource_id, client_id, fake.factory()))

    assert [result.removed_upstream for result in results] == [False, False, True]
    assert [result.remaining_links for result in results] == [2, 1, 0]
    assert fake.calls_for("ExcluirProcesso") == [{"codProcesso": 31}]
    async with SessionLocal() as session:
        resource = await session.get(MonitoredResource, resource_id)
    assert resource.status == RESOURCE_STATUS_REMOVED
    assert resource.is_active is False
    assert resource.removed_at is not None
    assert await _count(ClientLink) == 0


@pytest.mark.asyncio
async def test_failed_removal_keeps_the_last_link() -> None:
    fake = FakeVendorClient(
        {
            "CadastraNovoProcesso": [StructList([{"codProcesso": 32}])],
            "ExcluirProcesso": [VendorFailureError("HTTP 500", status_code=500)],
        }
    )
    service = await create_service(kind=KIND_PROCESSES)
    client_id = await create_client()
    resource_id = (await _register(service, client_id, fake.factory())).resource.id

    with pytest.raises(VendorFailureError):
        await _release(resource_id, client_id, fake.factory())

    assert await _count(ClientLink) == 1
    async with SessionLocal() as session:
        resource = await session.get(MonitoredResource, resource_id)
    assert resource.status == RESOURCE_STATUS_REGISTERED

    # Retrying once the vendor recovers completes the release.
    result = await _release(resource_id, client_id, fake.factory())
    assert result.removed_upstream is True
    assert len(fake.calls_for("ExcluirProcesso")) == 2


@pytest.mark.asyncio
async def test_removed_resource_is_registered_again_on_new_interest() -> None:
    fake = FakeVendorClient(
        {"CadastraNovoProcesso": [StructList([{"codProcesso": 40}]), StructList([{"codProcesso": 41}])]}
    )
    service = await create_service(kind=KIND_PROCESSES)
    client_id = await create_client()
    resource_id = (await _register(service, client_id, fake.factory())).resource.id
    await _release(resource_id, client_id, fake.factory())

    again = await _register(service, client_id, fake.factory())

    assert again.resource.id == resource_id
    assert again.registered_upstream is True
    assert again.resource.vendor_code == "41"
    assert again.resource.status == RESOURCE_STATUS_REGISTERED
    assert len(fake.calls_for("CadastraNovoProcesso")) == 2


@pytest.mark.asyncio
async def test_release_requires_an_existing_link() -> None:
    fake = FakeVendorClient({"CadastraNovoProcesso": [StructList([{"codProcesso": 50}])]})
    service = await create_service(kind=KIND_PROCESSES)
    owner = await create_client("owner")
    stranger = await create_client("stranger")
    resource_id = (await _register(service, owner, fake.factory())).resource.id

    with pytest.raises(RecordNotFoundError):
        await _release(resource_id, stranger, fake.factory())
    with pytest.raises(RecordNotFoundError):
        await _release("missing-resource", owner, fake.factory())
    assert fake.calls_for("ExcluirProcesso") == []


@pytest.mark.asyncio
async def test_terms_can_be_toggled_upstream() -> None:
    fake = FakeVendorClient({"CadastrarNome": [StructList([{"codNome": 9}])]})
    service = await create_service(kind=KIND_DISTRIBUTIONS, office_code=5)
    client_id = await create_client()
    resource_id = (
        await _register(
            service, client_id, fake.factory(), natural_key="ACME", resource_type=RESOURCE_DISTRIBUTION_TERM,
            payload={},
        )
    ).resource.id

    async with SessionLocal() as session:
        resource = await set_active(session, resource_id=resource_id, active=False, client_factory=fake.factory())
    assert resource.is_active is False
    assert fake.calls_for("DesativarNome") == [{"codEscritorio": 5, "codNome": 9}]
