from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


# Run statuses after which the external run can no longer change.
TERMINAL_RUN_STATUSES = frozenset({"completed", "canceled", "failed"})
# Outcomes that mean the approver said no.
REJECTED_OUTCOMES = frozenset({"rejected", "denied", "reject"})


@dataclass(frozen=True)
class WorkflowSubmitResult:
    run_id: str
    data_asset_guid: str | None = None


@dataclass(frozen=True)
class WorkflowRunStatus:
    run_status: str | None
    approval_outcome: str | None = None


class ApprovalWorkflowService(Protocol):
    async def submit(
        self,
        account_name: str,
        tenant_id: str,
        product_name: str,
        justification: str,
        user_credential: str | None = None,
    ) -> WorkflowSubmitResult:
        ...

    async def poll_status(
        self,
        account_name: str,
        tenant_id: str,
        run_id: str,
        user_credential: str | None = None,
    ) -> WorkflowRunStatus:
        ...


def is_terminal_run_status(run_status: str | None) -> bool:
    return bool(run_status) and run_status.strip().lower() in TERMINAL_RUN_STATUSES


def is_rejection(outcome: str | None) -> bool:
    return bool(outcome) and outcome.strip().lower() in REJECTED_OUTCOMES
