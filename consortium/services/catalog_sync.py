from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable
from uuid import uuid4

from consortium.core.errors import NotFoundError
from consortium.domain.models import DataProduct, Institution, SyncHistory
from consortium.domain.state import utc_now
from consortium.persistence.repos.base import (
    DataProductRepository,
    InstitutionRepository,
    SyncHistoryRepository,
)
from consortium.providers.catalog.base import (
    CatalogItem,
    CatalogListing,
    CatalogScanner,
    in_domain_filter,
    parse_domain_filter,
)
from consortium.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncCounts:
    found: int = 0
    added: int = 0
    updated: int = 0
    delisted: int = 0


@dataclass
class BatchScanSummary:
    scanned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def _apply_item(product: DataProduct, item: CatalogItem, synced_at: datetime) -> None:
    # Overwrite every catalog-sourced field; operator-managed fields stay untouched.
    product.name = item.name
    product.description = item.description
    product.owner = item.owner
    product.owner_email = item.owner_email
    product.source_system = item.source_system
    product.sensitivity_label = item.sensitivity_label
    product.classifications_json = list(item.classifications)
    product.glossary_terms_json = list(item.glossary_terms)
    product.governance_domain = item.governance_domain
    product.asset_count = item.asset_count
    product.catalog_status = item.status
    product.data_product_type = item.data_product_type
    product.endorsed = item.endorsed
    product.business_use = item.business_use
    product.update_frequency = item.update_frequency
    product.documentation = item.documentation
    product.external_last_modified_at = item.last_modified
    product.last_synced_at = synced_at
    product.is_listed = True


class CatalogSyncOrchestrator:
    def __init__(
        self,
        *,
        institutions: InstitutionRepository,
        products: DataProductRepository,
        history: SyncHistoryRepository,
        scanner: CatalogScanner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._institutions = institutions
        self._products = products
        self._history = history
        self._scanner = scanner
        self._clock = clock

    def _eligible(self, institution: Institution) -> bool:
        if not (institution.is_active and institution.admin_consent_granted):
            logger.warning(
                "catalog_sync_skipped institution_id=%s reason=inactive_or_no_consent", institution.id
            )
            return False
        if not institution.purview_account_name:
            logger.warning(
                "catalog_sync_skipped institution_id=%s reason=no_catalog_account", institution.id
            )
            return False
        return True

    async def _upsert(self, institution: Institution, listing: CatalogListing) -> SyncCounts:
        domains = parse_domain_filter(institution.consortium_domain_ids)
        kept: dict[str, CatalogItem] = {}
        for item in listing.items:
            # Scanners filter too; this keeps the rule even for scanners that do not.
            if not in_domain_filter(item.governance_domain_id, domains):
                continue
            kept[item.qualified_name] = item

        added = updated = 0
        synced_at = self._clock()
        for qualified_name, item in kept.items():
            existing = await self._products.get_by_qualified_name(institution.id, qualified_name)
            if existing is None:
                product = DataProduct(
                    id=uuid4().hex,
                    institution_id=institution.id,
                    qualified_name=qualified_name,
                )
                _apply_item(product, item, synced_at)
                await self._products.add(product)
                added += 1
            else:
                _apply_item(existing, item, synced_at)
                await self._products.save(existing)
                updated += 1

        delisted = 0
        if listing.complete:
            delisted = await self._products.delist_except(institution.id, kept.keys())
        else:
            # Absent from a truncated listing says nothing about a product.
            logger.warning(
                "catalog_delist_skipped institution_id=%s reason=partial_listing found=%s",
                institution.id,
                len(kept),
            )
        return SyncCounts(found=len(kept), added=added, updated=updated, delisted=delisted)

    async def scan_institution(
        self, institution_id: str, user_credential: str | None = None
    ) -> SyncCounts | None:
        """Reconcile one institution's listed products with its catalog.

        Returns None when the institution is not eligible for scanning. Any
        failure after the history record is opened marks it failed and is
        re-raised to the caller.
        """
        institution = await self._institutions.get(institution_id)
        if institution is None:
            raise NotFoundError(f"Institution {institution_id} not found.")
        if not self._eligible(institution):
            return None

        record = SyncHistory(
            id=uuid4().hex,
            institution_id=institution.id,
            started_at=self._clock(),
            status=SyncStatus.RUNNING.value,
            products_found=0,
            products_added=0,
            products_updated=0,
            products_delisted=0,
        )
        await self._history.add(record)
        logger.info("catalog_sync_started institution_id=%s sync_id=%s", institution.id, record.id)

        try:
            listing = await self._scanner.scan(
                institution.purview_account_name,
                institution.tenant_id,
                user_credential,
                institution.consortium_domain_ids,
            )
            counts = await self._upsert(institution, listing)
        except asyncio.CancelledError:
            record.status = SyncStatus.CANCELLED.value
            record.ended_at = self._clock()
            record.error_details = "Scan was cancelled."
            await asyncio.shield(self._history.save(record))
            raise
        except Exception as exc:
            record.status = SyncStatus.FAILED.value
            record.ended_at = self._clock()
            record.error_details = str(exc) or type(exc).__name__
            await self._history.save(record)
            increment_counter("catalog_sync_failed_total")
            raise

        record.status = SyncStatus.SUCCESS.value
        record.ended_at = self._clock()
        record.products_found = counts.found
        record.products_added = counts.added
        record.products_updated = counts.updated
        record.products_delisted = counts.delisted
        if not listing.complete:
            record.error_details = "Catalog listing was incomplete; delisting was skipped."
        await self._history.save(record)
        increment_counter("catalog_sync_succeeded_total")
        logger.info(
            "catalog_sync_completed institution_id=%s found=%s added=%s updated=%s delisted=%s",
            institution.id,
            counts.found,
            counts.added,
            counts.updated,
            counts.delisted,
        )
        return counts

    async def scan_all(self, user_credential: str | None = None) -> BatchScanSummary:
        summary = BatchScanSummary()
        # Ids only: a rolled-back failure expires every loaded row.
        institution_ids = [
            institution.id for institution in await self._institutions.list_all(active_only=True)
        ]
        logger.info("catalog_sync_batch_started institutions=%s", len(institution_ids))
        for institution_id in institution_ids:
            try:
                counts = await self.scan_institution(institution_id, user_credential)
            except Exception as exc:  # noqa: BLE001 - one institution must not stop the batch
                summary.failed[institution_id] = str(exc) or type(exc).__name__
                logger.error("catalog_sync_institution_failed institution_id=%s", institution_id, exc_info=exc)
                continue
            if counts is None:
                summary.skipped.append(institution_id)
            else:
                summary.scanned.append(institution_id)
        logger.info(
            "catalog_sync_batch_completed scanned=%s skipped=%s failed=%s",
            len(summary.scanned),
            len(summary.skipped),
            len(summary.failed),
        )
        return summary

    async def assign_source_lakehouse(self, product_id: str, source_lakehouse_id: str | None) -> DataProduct:
        # Operator-managed; catalog sync never overwrites it.
        product = await self._products.get(product_id)
        if product is None:
            raise NotFoundError(f"Data product {product_id} not found.")
        product.source_lakehouse_id = source_lakehouse_id or None
        return await self._products.save(product)
