from __future__ import annotations

import asyncio

import pytest

from consortium.core.errors import CatalogScanError, NotFoundError
from consortium.providers.catalog.base import CatalogItem, CatalogListing
from consortium.tests.utils.fakes import World


def _item(qualified_name: str, name: str, domain: str | None = "dom-research", **extra) -> CatalogItem:
    return CatalogItem(qualified_name=qualified_name, name=name, governance_domain_id=domain, **extra)


def _catalog_world(**institution_overrides) -> World:
    world = World()
    world.add_institution(
        "north",
        purview_account_name="pv-north",
        fabric_workspace_id="ws-north",
        **institution_overrides,
    )
    return world


@pytest.mark.asyncio
async def test_first_scan_adds_products_and_records_success() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [
        _item("north/enrollment", "Enrollment", description="Counts", classifications=("Type:Dataset",)),
        _item("north/retention", "Retention"),
    ]

    counts = await world.catalog_sync.scan_institution("north", "user-token")

    assert (counts.found, counts.added, counts.updated, counts.delisted) == (2, 2, 0, 0)
    products = {p.qualified_name: p for p in world.products.items.values()}
    assert products["north/enrollment"].description == "Counts"
    assert products["north/enrollment"].classifications_json == ["Type:Dataset"]
    assert all(p.is_listed for p in products.values())
    record = next(iter(world.history.items.values()))
    assert record.status == "success"
    assert record.products_added == 2
    assert record.ended_at is not None
    assert [status for _, status in world.history.writes] == ["running", "success"]
    assert world.scanner.calls == [("pv-north", "tenant-north", "user-token")]


@pytest.mark.asyncio
async def test_rescan_updates_delists_and_keeps_source_lakehouse() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [
        _item("north/enrollment", "Enrollment"),
        _item("north/retention", "Retention"),
    ]
    await world.catalog_sync.scan_institution("north")
    enrollment = next(p for p in world.products.items.values() if p.qualified_name == "north/enrollment")
    await world.catalog_sync.assign_source_lakehouse(enrollment.id, "lh-enrollment")

    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment v2")]
    counts = await world.catalog_sync.scan_institution("north")

    assert (counts.found, counts.added, counts.updated, counts.delisted) == (1, 0, 1, 1)
    assert enrollment.name == "Enrollment v2"
    assert enrollment.source_lakehouse_id == "lh-enrollment"
    retention = next(p for p in world.products.items.values() if p.qualified_name == "north/retention")
    assert retention.is_listed is False
    assert len(world.products.items) == 2


@pytest.mark.asyncio
async def test_relisted_product_returns_to_listing() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment")]
    await world.catalog_sync.scan_institution("north")
    world.scanner.items_by_account["pv-north"] = []
    await world.catalog_sync.scan_institution("north")
    product = next(iter(world.products.items.values()))
    assert product.is_listed is False

    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment")]
    counts = await world.catalog_sync.scan_institution("north")

    assert counts.updated == 1
    assert product.is_listed is True


@pytest.mark.asyncio
async def test_domain_filter_limits_listed_products() -> None:
    world = _catalog_world(consortium_domain_ids="DOM-Research, dom-shared")
    world.scanner.items_by_account["pv-north"] = [
        _item("north/enrollment", "Enrollment", domain="dom-research"),
        _item("north/payroll", "Payroll", domain="dom-hr"),
        _item("north/untagged", "Untagged", domain=None),
    ]

    counts = await world.catalog_sync.scan_institution("north")

    assert counts.found == 1
    assert [p.qualified_name for p in world.products.items.values()] == ["north/enrollment"]


@pytest.mark.asyncio
async def test_duplicate_qualified_names_are_collapsed() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [
        _item("north/enrollment", "Enrollment"),
        _item("north/enrollment", "Enrollment (copy)"),
    ]

    counts = await world.catalog_sync.scan_institution("north")

    assert counts.found == 1
    assert len(world.products.items) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"is_active": False},
        {"admin_consent_granted": False},
        {"purview_account_name": None},
    ],
)
async def test_ineligible_institution_is_skipped(overrides) -> None:
    world = World()
    values = {"purview_account_name": "pv-north"}
    values.update(overrides)
    world.add_institution("north", **values)

    result = await world.catalog_sync.scan_institution("north")

    assert result is None
    assert world.history.items == {}
    assert world.scanner.calls == []


@pytest.mark.asyncio
async def test_unknown_institution_raises_not_found() -> None:
    world = World()

    with pytest.raises(NotFoundError):
        await world.catalog_sync.scan_institution("missing")


@pytest.mark.asyncio
async def test_scan_failure_marks_history_failed_and_keeps_products() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment")]
    await world.catalog_sync.scan_institution("north")
    world.scanner.failing_accounts.add("pv-north")

    with pytest.raises(CatalogScanError):
        await world.catalog_sync.scan_institution("north")

    failed = [r for r in world.history.items.values() if r.status == "failed"]
    assert len(failed) == 1
    assert "pv-north" in failed[0].error_details
    assert failed[0].ended_at is not None
    assert all(p.is_listed for p in world.products.items.values())


class _BlockingScanner:
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def scan(self, account_name, tenant_id, user_credential=None, domain_filter=None):
        self.started.set()
        await asyncio.sleep(3600)
        return CatalogListing(items=[])


@pytest.mark.asyncio
async def test_cancelled_scan_marks_history_cancelled() -> None:
    scanner = _BlockingScanner()
    world = World(scanner=scanner)
    world.add_institution("north", purview_account_name="pv-north")

    task = asyncio.create_task(world.catalog_sync.scan_institution("north"))
    await scanner.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    record = next(iter(world.history.items.values()))
    assert record.status == "cancelled"
    assert record.ended_at is not None


@pytest.mark.asyncio
async def test_scan_all_isolates_failures_and_skips_ineligible() -> None:
    world = World()
    world.add_institution("north", purview_account_name="pv-north")
    world.add_institution("east", purview_account_name="pv-east")
    world.add_institution("west", purview_account_name=None)
    world.add_institution("gone", purview_account_name="pv-gone", is_active=False)
    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment")]
    world.scanner.failing_accounts.add("pv-east")

    summary = await world.catalog_sync.scan_all("token")

    assert summary.scanned == ["north"]
    assert summary.skipped == ["west"]
    assert list(summary.failed) == ["east"]
    assert len(world.products.items) == 1


@pytest.mark.asyncio
async def test_assign_source_lakehouse_for_unknown_product() -> None:
    world = World()

    with pytest.raises(NotFoundError):
        await world.catalog_sync.assign_source_lakehouse("dp-missing", "lh-1")


@pytest.mark.asyncio
async def test_partial_listing_updates_but_never_delists() -> None:
    world = _catalog_world()
    world.scanner.items_by_account["pv-north"] = [
        _item("north/enrollment", "Enrollment"),
        _item("north/retention", "Retention"),
    ]
    await world.catalog_sync.scan_institution("north")
    world.scanner.items_by_account["pv-north"] = [_item("north/enrollment", "Enrollment v2")]
    world.scanner.partial_accounts.add("pv-north")

    counts = await world.catalog_sync.scan_institution("north")

    assert (counts.found, counts.added, counts.updated, counts.delisted) == (1, 0, 1, 0)
    products = {p.qualified_name: p for p in world.products.items.values()}
    assert products["north/enrollment"].name == "Enrollment v2"
    assert products["north/retention"].is_listed is True
    latest = [status for _, status in world.history.writes][-1]
    assert latest == "success"
    assert any(
        r.error_details and "incomplete" in r.error_details for r in world.history.items.values()
    )
