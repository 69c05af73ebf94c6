from __future__ import annotations

import itertools

from consortium.core.errors import WorkflowServiceError
from consortium.providers.workflow.base import WorkflowRunStatus, WorkflowSubmitResult


class FakeWorkflowService:
    def __init__(self) -> None:
        # Runs start in progress; tests and operators flip them via complete()/cancel().
        self._counter = itertools.count(1)
        self.runs: dict[str, WorkflowRunStatus] = {}
        self.submissions: list[tuple[str, str, str]] = []
        self.poll_calls: list[str] = []
        self.fail_submit = False
        self.fail_poll = False

    async def submit(
        self,
        account_name: str,
        tenant_id: str,
        product_name: str,
        justification: str,
        user_credential: str | None = None,
    ) -> WorkflowSubmitResult:
        if self.fail_submit:
            raise WorkflowServiceError("Workflow submission is unavailable.")
        run_id = f"run-{next(self._counter)}"
        self.submissions.append((account_name, product_name, justification))
        self.runs[run_id] = WorkflowRunStatus(run_status="InProgress")
        return WorkflowSubmitResult(run_id=run_id, data_asset_guid=f"asset-{run_id}")

    async def poll_status(
        self,
        account_name: str,
        tenant_id: str,
        run_id: str,
        user_credential: str | None = None,
    ) -> WorkflowRunStatus:
        self.poll_calls.append(run_id)
        if self.fail_poll:
            raise WorkflowServiceError("Workflow status is unavailable.")
        status = self.runs.get(run_id)
        if status is None:
            raise WorkflowServiceError(f"Unknown workflow run {run_id}.")
        return status

    def complete(self, run_id: str, outcome: str | None = "Approved") -> None:
        self.runs[run_id] = WorkflowRunStatus(run_status="Completed", approval_outcome=outcome)

    def cancel(self, run_id: str) -> None:
        self.runs[run_id] = WorkflowRunStatus(run_status="Canceled")
