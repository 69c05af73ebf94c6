from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

from consortium.core.errors import ShortcutServiceError


logger = logging.getLogger(__name__)

# Fabric caps shortcut names at 128 characters.
SHORTCUT_NAME_MAX = 128
_SEPARATORS = re.compile(r"[\s\-]+")
_NON_WORD = re.compile(r"[^\w]")


def build_shortcut_name(product_name: str) -> str:
    # Deterministic per product name so retries target the same artifact.
    collapsed = _SEPARATORS.sub("_", product_name or "")
    return _NON_WORD.sub("", collapsed)[:SHORTCUT_NAME_MAX]


@dataclass(frozen=True)
class ShareTarget:
    source_workspace_id: str
    source_item_id: str
    source_tenant_id: str
    recipient_tenant_id: str
    recipient_email: str
    target_workspace_id: str
    target_lakehouse_id: str
    display_name: str


@dataclass(frozen=True)
class CrossTenantShareResult:
    success: bool
    partial_success: bool = False
    share_id: str | None = None
    shortcut_name: str | None = None
    error: str | None = None


class ShortcutService(Protocol):
    async def create_cross_tenant_share(self, target: ShareTarget) -> CrossTenantShareResult:
        ...

    async def create_shortcut(self, target: ShareTarget, share_id: str) -> str:
        ...

    async def revoke_share(
        self, source_workspace_id: str, source_item_id: str, share_id: str, source_tenant_id: str
    ) -> bool:
        ...


class TwoPhaseShortcutService(ABC):
    """Share first, then shortcut, reporting partial success in between.

    Subclasses supply the two external calls; both raise
    :class:`ShortcutServiceError` on failure. The composed operation never
    raises so callers can persist whatever was provisioned.
    """

    @abstractmethod
    async def create_external_share(self, target: ShareTarget) -> str:
        ...

    @abstractmethod
    async def create_shortcut(self, target: ShareTarget, share_id: str) -> str:
        ...

    async def create_cross_tenant_share(self, target: ShareTarget) -> CrossTenantShareResult:
        logger.info(
            "cross_tenant_share_started product=%s source_ws=%s source_item=%s target_ws=%s target_lh=%s",
            target.display_name,
            target.source_workspace_id,
            target.source_item_id,
            target.target_workspace_id,
            target.target_lakehouse_id,
        )
        try:
            share_id = await self.create_external_share(target)
        except ShortcutServiceError as exc:
            logger.error("external_share_failed product=%s error=%s", target.display_name, exc)
            return CrossTenantShareResult(success=False, error=f"External data share creation failed: {exc}")

        try:
            shortcut_name = await self.create_shortcut(target, share_id)
        except ShortcutServiceError as exc:
            logger.warning(
                "shortcut_failed_after_share product=%s share_id=%s error=%s",
                target.display_name,
                share_id,
                exc,
            )
            return CrossTenantShareResult(
                success=False,
                partial_success=True,
                share_id=share_id,
                error=f"Share created but shortcut creation failed: {exc}",
            )

        logger.info(
            "cross_tenant_share_created product=%s share_id=%s shortcut=%s",
            target.display_name,
            share_id,
            shortcut_name,
        )
        return CrossTenantShareResult(success=True, share_id=share_id, shortcut_name=shortcut_name)
