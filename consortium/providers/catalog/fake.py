from __future__ import annotations

from consortium.core.errors import CatalogScanError
from consortium.providers.catalog.base import (
    CatalogItem,
    CatalogListing,
    in_domain_filter,
    parse_domain_filter,
)


class FakeCatalogScanner:
    def __init__(self, items_by_account: dict[str, list[CatalogItem]] | None = None) -> None:
        # Deterministic listings keyed by account let tests and local runs skip external services.
        self.items_by_account: dict[str, list[CatalogItem]] = dict(items_by_account or {})
        self.failing_accounts: set[str] = set()
        # Accounts whose listing stops short, as when a later page fails.
        self.partial_accounts: set[str] = set()
        self.calls: list[tuple[str, str, str | None]] = []

    async def scan(
        self,
        account_name: str,
        tenant_id: str,
        user_credential: str | None = None,
        domain_filter: str | None = None,
    ) -> CatalogListing:
        self.calls.append((account_name, tenant_id, user_credential))
        if account_name in self.failing_accounts:
            raise CatalogScanError(f"Catalog unavailable for account {account_name}.")
        domains = parse_domain_filter(domain_filter)
        items = [
            item
            for item in self.items_by_account.get(account_name, [])
            if in_domain_filter(item.governance_domain_id, domains)
        ]
        return CatalogListing(items=items, complete=account_name not in self.partial_accounts)
