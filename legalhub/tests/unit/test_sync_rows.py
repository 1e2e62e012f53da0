from __future__ import annotations

from legalhub.domain.models import VendorService
from legalhub.services.sync.feeds import (
    DISTRIBUTIONS_FEED,
    DOCUMENTS_FEED,
    FEEDS_BY_KIND,
    FEEDS_BY_NAME,
    MOVEMENTS_FEED,
    PUBLICATIONS_FEED,
    document_row,
    movement_row,
    publication_row,
)
from legalhub.services.sync.loop import SyncProgress, _build_rows
from legalhub.services.telemetry import counters_snapshot


def _service() -> VendorService:
    return VendorService(id="svc-1", name="vendor", kind="processes", protocol="rest")


def test_vendor_id_reads_first_present_field() -> None:
    assert MOVEMENTS_FEED.vendor_id({"codAndamento": "101"}) == 101
    assert DISTRIBUTIONS_FEED.vendor_id({"codDistribuicao": None, "id": 7}) == 7
    assert PUBLICATIONS_FEED.vendor_id({"codPublicacao": "abc"}) is None
    assert DOCUMENTS_FEED.vendor_id({}) is None


def test_row_mappers_accept_field_aliases() -> None:
    assert movement_row({"codProcesso": 55, "tipo": "Despacho", "data": "2024-05-01", "textoAndamento": " x "}) == {
        "vendor_case_code": "55",
        "movement_type": "Despacho",
        "movement_date": "2024-05-01",
        "description": "x",
    }
    assert document_row({"codProcesso": 55, "codAndamento": 101, "tamanhoBytes": "2048"})["size_bytes"] == 2048
    assert publication_row({"diario": "DJE", "texto": "Intimação ACME"})["gazette_name"] == "DJE"


def test_build_rows_skips_malformed_items_and_dedups() -> None:
    items = [
        {"codAndamento": 1, "codProcesso": 55, "descricao": "first"},
        "not-a-struct",
        {"codProcesso": 55},
        {"codAndamento": 1, "codProcesso": 55, "descricao": "redelivered"},
        {"codAndamento": 2, "codProcesso": None},
    ]
    rows = _build_rows(MOVEMENTS_FEED, _service(), items)
    assert [row["vendor_id"] for row in rows] == [1, 2]
    assert rows[0]["description"] == "redelivered"
    assert rows[0]["process_id"] is None
    assert rows[1]["vendor_case_code"] is None
    assert all(row["service_id"] == "svc-1" and row["is_confirmed"] is False for row in rows)
    assert counters_snapshot()["sync_items_skipped"] == 1


def test_build_rows_skips_items_the_mapper_rejects() -> None:
    rows = _build_rows(DOCUMENTS_FEED, _service(), [{"codDocumento": 3, "tamanhoBytes": "huge"}])
    assert rows == []


def test_feed_registry() -> None:
    assert [feed.name for feed in FEEDS_BY_KIND["processes"]] == ["movements", "documents"]
    assert set(FEEDS_BY_NAME) == {"movements", "documents", "distributions", "publications"}


def test_progress_accumulates_per_feed() -> None:
    progress = SyncProgress()
    progress.add("movements", 500)
    progress.add("movements", 137)
    progress.add("documents", 3)
    assert progress.records_synced == 640
    assert progress.batches == 3
    assert progress.per_feed == {"movements": 637, "documents": 3}
