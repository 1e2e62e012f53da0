from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from legalhub.apps.api.main import create_app
from legalhub.domain.kinds import (
    KIND_DISTRIBUTIONS,
    KIND_PROCESSES,
    KIND_PUBLICATIONS,
    RESOURCE_CASE,
    RESOURCE_DISTRIBUTION_TERM,
    RESOURCE_PUBLICATION_TERM,
)
from legalhub.domain.models import (
    DeliveryCursor,
    Distribution,
    ProcessDocument,
    ProcessMovement,
    Publication,
    PublicationTermMatch,
)
from legalhub.persistence.db import SessionLocal
from legalhub.tests.utils.seed import PLATFORM_TOKEN, bearer, create_resource, seed_client_with_token


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _seed_cases(count: int) -> tuple[str, str, dict[str, str], list[str]]:
    client_id, service, headers, _ = await seed_client_with_token(KIND_PROCESSES)
    resource_ids = []
    for index in range(count):
        resource_ids.append(
            await create_resource(
                service_id=service.id,
                resource_type=RESOURCE_CASE,
                natural_key=f"000{index}-23.2024.8.26.0100",
                vendor_code=str(900 + index),
                client_ids=[client_id],
                tribunal="TJSP" if index % 2 == 0 else "TRF3",
                uf="SP",
            )
        )
    return client_id, service.id, headers, resource_ids


@pytest.mark.asyncio
async def test_batch_gate_blocks_until_confirm() -> None:
    client_id, _service_id, headers, _ = await _seed_cases(3)

    async with _client() as client:
        first = await client.get("/api-processes", headers=headers, params={"limit": 2})
        blocked = await client.get("/api-processes", headers=headers, params={"limit": 2})
        confirmed = await client.post("/api-processes", headers=headers, params={"action": "confirm"})
        confirmed_again = await client.post("/api-processes", headers=headers, params={"action": "confirm"})
        second = await client.get("/api-processes", headers=headers, params={"limit": 2, "offset": 2})

    assert first.status_code == 200
    body = first.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "has_more": True}
    assert body["batch"]["pending_confirmation"] is True
    assert body["batch"]["records_in_batch"] == 2
    assert body["batch"]["total_delivered"] == 2

    assert blocked.status_code == 200
    blocked_body = blocked.json()
    assert blocked_body["data"] == []
    assert blocked_body["batch"]["pending_confirmation"] is True
    assert blocked_body["batch"]["records_in_batch"] == 0
    assert "confirm" in blocked_body["batch"]["message"]

    assert confirmed.status_code == 200
    assert confirmed.json()["message"] == "Batch confirmed"
    assert confirmed.json()["total_delivered"] == 2
    assert confirmed_again.status_code == 409
    assert confirmed_again.json()["code"] == "PROTOCOL_VIOLATION"

    assert second.status_code == 200
    assert len(second.json()["data"]) == 1
    assert second.json()["pagination"]["has_more"] is False
    assert second.json()["batch"]["total_delivered"] == 3

    async with SessionLocal() as session:
        cursor = (
            await session.execute(select(DeliveryCursor).where(DeliveryCursor.client_id == client_id))
        ).scalar_one()
    assert cursor.kind == KIND_PROCESSES
    assert cursor.pending_confirmation is True
    assert cursor.total_delivered == 3


@pytest.mark.asyncio
async def test_platform_reads_leave_the_client_cursor_alone() -> None:
    client_id, _service_id, headers, _ = await _seed_cases(2)
    platform = bearer(PLATFORM_TOKEN)

    async with _client() as client:
        browsed = await client.get("/api-processes", headers=platform, params={"client_id": client_id})
        browsed_again = await client.get("/api-processes", headers=platform, params={"client_id": client_id})
        platform_confirm = await client.post(
            "/api-processes", headers=platform, params={"action": "confirm", "client_id": client_id}
        )
        own = await client.get("/api-processes", headers=headers)

    assert browsed.status_code == 200
    assert len(browsed.json()["data"]) == 2
    assert browsed.json()["batch"]["read_only"] is True
    assert browsed.json()["batch"]["pending_confirmation"] is False
    assert browsed_again.json()["data"] == browsed.json()["data"]
    assert platform_confirm.status_code == 400
    assert platform_confirm.json()["code"] == "BAD_REQUEST"
    # The client still gets its first batch after the platform looked.
    assert len(own.json()["data"]) == 2
    assert own.json()["batch"]["total_delivered"] == 2
    assert "read_only" not in own.json()["batch"]


@pytest.mark.asyncio
async def test_empty_fetch_does_not_open_a_batch() -> None:
    _client_id, _service_id, headers, _ = await _seed_cases(0)

    async with _client() as client:
        empty = await client.get("/api-processes", headers=headers)
        confirm = await client.post("/api-processes", headers=headers, params={"action": "confirm"})

    assert empty.status_code == 200
    assert empty.json()["data"] == []
    assert empty.json()["batch"]["pending_confirmation"] is False
    assert confirm.status_code == 409


@pytest.mark.asyncio
async def test_only_linked_cases_are_visible_and_filters_apply() -> None:
    _client_id, service_id, headers, _ = await _seed_cases(3)
    await create_resource(service_id=service_id, resource_type=RESOURCE_CASE, natural_key="9999-99.2024.8.26.0100")

    async with _client() as client:
        response = await client.get("/api-processes", headers=headers, params={"tribunal": "TJSP"})

    body = response.json()
    assert body["pagination"]["total"] == 2
    assert {record["tribunal"] for record in body["data"]} == {"TJSP"}
    assert "9999-99.2024.8.26.0100" not in {record["natural_key"] for record in body["data"]}


@pytest.mark.asyncio
async def test_single_record_fetch_with_children() -> None:
    _client_id, service_id, headers, resource_ids = await _seed_cases(1)
    hidden_id = await create_resource(
        service_id=service_id, resource_type=RESOURCE_CASE, natural_key="8888-88.2024.8.26.0100"
    )
    async with SessionLocal() as session:
        movement = ProcessMovement(
            vendor_id=101, service_id=service_id, vendor_case_code="900", process_id=resource_ids[0],
            movement_type="Despacho", movement_date="2024-05-02",
        )
        session.add(movement)
        await session.flush()
        session.add(
            ProcessDocument(
                vendor_id=501, service_id=service_id, vendor_case_code="900", process_id=resource_ids[0],
                movement_id=movement.id, file_name="peticao.pdf",
            )
        )
        await session.commit()

    async with _client() as client:
        detail = await client.get(
            "/api-processes", headers=headers, params={"id": resource_ids[0], "include": "movements,documents"}
        )
        plain = await client.get("/api-processes", headers=headers, params={"id": resource_ids[0]})
        hidden = await client.get("/api-processes", headers=headers, params={"id": hidden_id})
        malformed = await client.get("/api-processes", headers=headers, params={"id": "not-a-uuid"})
        after = await client.get("/api-processes", headers=headers)

    assert detail.status_code == 200
    data = detail.json()["data"]
    assert data["id"] == resource_ids[0]
    assert [movement["vendor_id"] for movement in data["movements"]] == [101]
    assert data["documents"][0]["file_name"] == "peticao.pdf"
    assert "movements" not in plain.json()["data"]
    assert hidden.status_code == 404
    assert malformed.status_code == 400
    # Single fetches sit outside the cursor; the next batch is still available.
    assert len(after.json()["data"]) == 1


@pytest.mark.asyncio
async def test_distributions_are_scoped_by_linked_terms() -> None:
    client_id, service, headers, _ = await seed_client_with_token(KIND_DISTRIBUTIONS)
    term_id = await create_resource(
        service_id=service.id, resource_type=RESOURCE_DISTRIBUTION_TERM, natural_key="ACME LTDA",
        client_ids=[client_id],
    )
    other_term_id = await create_resource(
        service_id=service.id, resource_type=RESOURCE_DISTRIBUTION_TERM, natural_key="OUTRA SA"
    )
    async with SessionLocal() as session:
        session.add_all(
            [
                Distribution(vendor_id=1, service_id=service.id, term="ACME LTDA", term_id=term_id,
                             tribunal="TJSP", distribution_date="2024-03-01"),
                Distribution(vendor_id=2, service_id=service.id, term="ACME LTDA", term_id=term_id,
                             tribunal="TJSP", distribution_date="2024-03-10"),
                Distribution(vendor_id=3, service_id=service.id, term="OUTRA SA", term_id=other_term_id,
                             tribunal="TJSP", distribution_date="2024-03-05"),
            ]
        )
        await session.commit()

    async with _client() as client:
        response = await client.get(
            "/api-distributions",
            headers=headers,
            params={"data_inicial": "2024-03-01", "data_final": "2024-03-01", "termo": "acme"},
        )
        bad_range = await client.get(
            "/api-distributions",
            headers=headers,
            params={"data_inicial": "2024-03-02", "data_final": "2024-03-01"},
        )

    assert response.status_code == 200
    assert [record["vendor_id"] for record in response.json()["data"]] == [1]
    assert bad_range.status_code == 400
    assert bad_range.json()["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
async def test_publications_are_visible_through_matched_terms() -> None:
    client_id, service, headers, _ = await seed_client_with_token(KIND_PUBLICATIONS)
    term_id = await create_resource(
        service_id=service.id, resource_type=RESOURCE_PUBLICATION_TERM, natural_key="ACME",
        client_ids=[client_id],
    )
    async with SessionLocal() as session:
        matched = Publication(vendor_id=10, service_id=service.id, gazette_name="DJE SP",
                              content="Intimação de ACME", publication_date="2024-04-01")
        unmatched = Publication(vendor_id=11, service_id=service.id, gazette_name="DJE RJ",
                                content="Outra parte", publication_date="2024-04-02")
        session.add_all([matched, unmatched])
        await session.flush()
        session.add(PublicationTermMatch(publication_id=matched.id, term_id=term_id))
        await session.commit()

    async with _client() as client:
        response = await client.get("/api-publications", headers=headers, params={"diario": "sp"})

    assert [record["vendor_id"] for record in response.json()["data"]] == [10]


@pytest.mark.asyncio
async def test_route_shape_errors() -> None:
    _client_id, _service_id, headers, _ = await _seed_cases(1)

    async with _client() as client:
        unknown_kind = await client.get("/api-invoices", headers=headers)
        no_action = await client.post("/api-processes", headers=headers)
        bad_limit = await client.get("/api-processes", headers=headers, params={"limit": "many"})
        bad_offset = await client.get("/api-processes", headers=headers, params={"offset": "-1"})

    assert unknown_kind.status_code == 404
    assert no_action.status_code == 405
    assert no_action.json()["code"] == "METHOD_NOT_ALLOWED"
    assert bad_limit.status_code == 400
    assert bad_offset.status_code == 400
