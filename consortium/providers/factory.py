from __future__ import annotations

from functools import lru_cache

from consortium.core.config import get_settings
from consortium.core.errors import ValidationFailedError
from consortium.providers.catalog.base import CatalogScanner
from consortium.providers.catalog.fake import FakeCatalogScanner
from consortium.providers.catalog.purview import PurviewCatalogScanner
from consortium.providers.identity import ClientCredentialTokenProvider, TokenProvider
from consortium.providers.shortcuts.base import ShortcutService
from consortium.providers.shortcuts.fabric import FabricShortcutService
from consortium.providers.shortcuts.fake import FakeShortcutService
from consortium.providers.workflow.base import ApprovalWorkflowService
from consortium.providers.workflow.fake import FakeWorkflowService
from consortium.providers.workflow.purview import PurviewWorkflowService


def _mode() -> str:
    mode = (get_settings().integrations_mode or "live").lower()
    if mode not in {"live", "fake"}:
        raise ValidationFailedError(f"Unsupported integrations mode: {mode}")
    return mode


# Providers are process-wide so token caches and HTTP pools are shared.
@lru_cache
def get_token_provider() -> TokenProvider:
    return ClientCredentialTokenProvider()


@lru_cache
def get_catalog_scanner() -> CatalogScanner:
    if _mode() == "fake":
        return FakeCatalogScanner()
    return PurviewCatalogScanner(get_token_provider())


@lru_cache
def get_workflow_service() -> ApprovalWorkflowService:
    if _mode() == "fake":
        return FakeWorkflowService()
    return PurviewWorkflowService(get_token_provider())


@lru_cache
def get_shortcut_service() -> ShortcutService:
    if _mode() == "fake":
        return FakeShortcutService()
    return FabricShortcutService(get_token_provider())


def reset_providers() -> None:
    # Tests flip integrations_mode between cases.
    for getter in (get_token_provider, get_catalog_scanner, get_workflow_service, get_shortcut_service):
        getter.cache_clear()
