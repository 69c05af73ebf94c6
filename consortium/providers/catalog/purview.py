from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from consortium.core.config import get_settings
from consortium.core.errors import CatalogScanError
from consortium.providers.catalog.base import (
    CatalogItem,
    CatalogListing,
    in_domain_filter,
    parse_domain_filter,
)
from consortium.providers.identity import TokenProvider
from consortium.providers.payloads import (
    as_int,
    dedupe,
    decode_named_ref,
    first_string,
    parse_timestamp,
    string_list,
)
from consortium.services.resilience import retry_async
from consortium.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "catalog.purview"


def _domain_ref(raw: dict[str, Any]):
    # Catalog versions disagree on the field name for the owning domain.
    return decode_named_ref(raw.get("governanceDomain"), "name", "displayName") or decode_named_ref(
        raw.get("domain"), "name", "displayName"
    )


def extract_domain_id(raw: dict[str, Any]) -> str | None:
    ref = _domain_ref(raw)
    if ref is None:
        return None
    return ref.id or ref.name


def _owner(raw: dict[str, Any]) -> tuple[str | None, str | None]:
    # Owners win over contacts; the first entry with a name or mail is used.
    for key in ("owners", "contacts"):
        entries = raw.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = first_string(entry, "displayName", "name")
            mail = first_string(entry, "mail", "email", "userPrincipalName")
            if name or mail:
                return name or mail, mail
    return None, None


def _sensitivity_label(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return first_string(value, "name", "displayName", "labelName")
    return None


def _asset_count(raw: dict[str, Any]) -> int:
    extra = raw.get("additionalProperties")
    count = as_int(extra.get("assetCount")) if isinstance(extra, dict) else None
    if not count:
        top_level = raw.get("assetCount")
        if isinstance(top_level, (int, float)) and not isinstance(top_level, bool):
            count = int(top_level)
    return count or 0


def map_catalog_item(raw: dict[str, Any]) -> CatalogItem:
    """Normalize one data product entry from the unified catalog listing."""
    owner, owner_email = _owner(raw)
    domain_ref = _domain_ref(raw)
    domain_name = domain_ref.name if domain_ref else None
    system_data = raw.get("systemData")
    last_modified = (
        parse_timestamp(system_data.get("lastModifiedAt")) if isinstance(system_data, dict) else None
    )
    endorsed = raw.get("endorsed") is True
    product_type = first_string(raw, "type")
    status = first_string(raw, "status")

    classifications: list[str] = []
    if product_type:
        classifications.append(f"Type:{product_type}")
    if status:
        classifications.append(f"Status:{status}")
    if endorsed:
        classifications.append("Endorsed")

    return CatalogItem(
        qualified_name=first_string(raw, "id") or first_string(raw, "name") or "unknown",
        name=first_string(raw, "name") or "Unnamed",
        description=first_string(raw, "description") or first_string(raw, "businessUse"),
        owner=owner,
        owner_email=owner_email,
        source_system=domain_name,
        classifications=tuple(classifications),
        glossary_terms=tuple(dedupe(string_list(raw.get("glossaryTerms"), "name", "displayName"))),
        sensitivity_label=_sensitivity_label(raw.get("sensitivityLabel")),
        last_modified=last_modified,
        governance_domain=domain_name,
        governance_domain_id=extract_domain_id(raw),
        asset_count=_asset_count(raw),
        status=status,
        data_product_type=product_type,
        endorsed=endorsed,
        business_use=first_string(raw, "businessUse"),
        update_frequency=first_string(raw, "updateFrequency"),
        documentation=first_string(raw, "documentation"),
    )


class PurviewCatalogScanner:
    def __init__(self, tokens: TokenProvider, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._tokens = tokens
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def _fetch_page(self, token: str, skip: int) -> httpx.Response:
        client = self._get_client()
        url = f"{self._settings.catalog_base_url.rstrip('/')}/datagovernance/catalog/dataProducts"
        params = {
            "api-version": self._settings.catalog_api_version,
            "top": str(self._settings.catalog_page_size),
            "skip": str(skip),
        }

        async def _call() -> httpx.Response:
            response = await client.get(url, params=params, headers={"Authorization": f"Bearer {token}"})
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        return await retry_async(_call)

    async def _fetch_all(self, token: str) -> tuple[list[dict[str, Any]], bool]:
        # Page until a short page arrives; later page failures keep what was fetched
        # and report the listing as incomplete.
        page_size = max(1, self._settings.catalog_page_size)
        items: list[dict[str, Any]] = []
        skip = 0
        while True:
            start = time.monotonic()
            failure: str | None = None
            response: httpx.Response | None = None
            try:
                response = await self._fetch_page(token, skip)
            except (httpx.HTTPError, TimeoutError) as exc:
                failure = f"{type(exc).__name__}: {exc}"
            if response is not None and response.status_code >= 400:
                failure = f"status {response.status_code}: {response.text[:500]}"
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=failure is None,
            )
            if failure is not None:
                logger.error("catalog_page_failed skip=%s error=%s", skip, failure)
                if not items:
                    raise CatalogScanError(f"Catalog data products listing failed ({failure}).")
                return items, False

            payload = response.json() if response is not None else {}
            page = payload.get("value") if isinstance(payload, dict) else None
            if not isinstance(page, list):
                break
            items.extend(entry for entry in page if isinstance(entry, dict))
            if len(page) < page_size:
                break
            skip += len(page)
        return items, True

    async def scan(
        self,
        account_name: str,
        tenant_id: str,
        user_credential: str | None = None,
        domain_filter: str | None = None,
    ) -> CatalogListing:
        domains = parse_domain_filter(domain_filter)
        logger.info(
            "catalog_scan_started account=%s tenant_id=%s domains=%s",
            account_name,
            tenant_id,
            ",".join(sorted(domains)) or "ALL",
        )
        token = await self._tokens.get_token(tenant_id, self._settings.purview_scope, user_credential)
        raw_items, complete = await self._fetch_all(token)

        results: list[CatalogItem] = []
        for raw in raw_items:
            domain_id = extract_domain_id(raw)
            if not in_domain_filter(domain_id, domains):
                logger.debug("catalog_item_skipped name=%s domain=%s", raw.get("name"), domain_id)
                continue
            results.append(map_catalog_item(raw))
        logger.info(
            "catalog_scan_finished account=%s kept=%s total=%s complete=%s",
            account_name,
            len(results),
            len(raw_items),
            complete,
        )
        return CatalogListing(items=results, complete=complete)
