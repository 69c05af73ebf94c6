from __future__ import annotations

import itertools

from consortium.core.errors import ShortcutServiceError
from consortium.providers.shortcuts.base import ShareTarget, TwoPhaseShortcutService, build_shortcut_name


class FakeShortcutService(TwoPhaseShortcutService):
    def __init__(self) -> None:
        # Record every provisioning call so retries can be asserted as non-duplicating.
        self._counter = itertools.count(1)
        self.shares: list[ShareTarget] = []
        self.shortcuts: list[tuple[ShareTarget, str]] = []
        self.revoked: list[str] = []
        self.fail_share = False
        self.fail_shortcut = False
        self.fail_revoke = False

    async def create_external_share(self, target: ShareTarget) -> str:
        if self.fail_share:
            raise ShortcutServiceError("Fabric API error (403): share not permitted")
        self.shares.append(target)
        return f"share-{next(self._counter)}"

    async def create_shortcut(self, target: ShareTarget, share_id: str) -> str:
        if self.fail_shortcut:
            raise ShortcutServiceError("Fabric API error (409): shortcut path conflict")
        self.shortcuts.append((target, share_id))
        return build_shortcut_name(target.display_name)

    async def revoke_share(
        self, source_workspace_id: str, source_item_id: str, share_id: str, source_tenant_id: str
    ) -> bool:
        if self.fail_revoke:
            return False
        self.revoked.append(share_id)
        return True
