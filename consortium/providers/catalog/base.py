from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol


@dataclass(frozen=True)
class CatalogItem:
    # Normalized shareable product as reported by an institution's catalog.
    qualified_name: str
    name: str
    description: str | None = None
    owner: str | None = None
    owner_email: str | None = None
    source_system: str | None = None
    classifications: tuple[str, ...] = field(default_factory=tuple)
    glossary_terms: tuple[str, ...] = field(default_factory=tuple)
    sensitivity_label: str | None = None
    last_modified: datetime | None = None
    governance_domain: str | None = None
    governance_domain_id: str | None = None
    asset_count: int = 0
    status: str | None = None
    data_product_type: str | None = None
    endorsed: bool = False
    business_use: str | None = None
    update_frequency: str | None = None
    documentation: str | None = None


@dataclass(frozen=True)
class CatalogListing:
    items: list[CatalogItem]
    # False when a later page failed and only part of the catalog was read.
    complete: bool = True


class CatalogScanner(Protocol):
    async def scan(
        self,
        account_name: str,
        tenant_id: str,
        user_credential: str | None = None,
        domain_filter: str | None = None,
    ) -> CatalogListing:
        ...


def parse_domain_filter(raw: str | Iterable[str] | None) -> frozenset[str]:
    # Domain ids compare case-insensitively; blanks are ignored.
    if raw is None:
        return frozenset()
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    return frozenset(part.strip().lower() for part in parts if part and part.strip())


def in_domain_filter(domain_id: str | None, domain_filter: frozenset[str]) -> bool:
    # An empty filter admits everything; otherwise the item needs a matching domain.
    if not domain_filter:
        return True
    if not domain_id:
        return False
    return domain_id.strip().lower() in domain_filter
