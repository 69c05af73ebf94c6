from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from consortium.core.config import get_settings
from consortium.core.errors import TokenAcquisitionError, WorkflowServiceError
from consortium.providers.identity import TokenProvider
from consortium.providers.payloads import coerce_text
from consortium.providers.workflow.base import WorkflowRunStatus, WorkflowSubmitResult
from consortium.services.resilience import retry_async
from consortium.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "workflow.purview"
_SUBMIT_COMMENT = "Access request submitted via Purview Consortium platform"


def _approval_from_action(action: dict[str, Any], *, legacy: bool) -> str | None:
    output = action.get("output")
    body = output.get("body") if isinstance(output, dict) else None
    if isinstance(body, dict) and "outcome" in body:
        outcome = coerce_text(body.get("outcome"))
        if outcome is not None:
            return outcome
    if legacy:
        # Older responses only carry plain string status or result fields.
        for key in ("status", "result"):
            value = action.get(key)
            if isinstance(value, str):
                return value
        return None
    for key in ("outcome", "result"):
        if key in action:
            value = coerce_text(action.get(key))
            if value is not None:
                return value
    status = action.get("status")
    return status if isinstance(status, str) else None


def _is_approval_type(action: dict[str, Any]) -> bool:
    action_type = coerce_text(action.get("type"))
    return bool(action_type) and action_type.lower() == "approval"


def extract_approval_outcome(run: dict[str, Any]) -> str | None:
    """Find the approver's decision in a workflow run document.

    Approval actions are located by key (containing "approval") or by type
    under ``actions``, then under the legacy ``actionDetails`` map, and
    finally a plain string ``result`` at the top level is accepted.
    """
    actions = run.get("actions")
    if isinstance(actions, dict):
        for key, action in actions.items():
            if not isinstance(action, dict):
                continue
            if "approval" not in str(key).lower() and not _is_approval_type(action):
                continue
            outcome = _approval_from_action(action, legacy=False)
            if outcome is not None:
                return outcome

    details = run.get("actionDetails")
    if isinstance(details, dict):
        for action in details.values():
            if isinstance(action, dict) and _is_approval_type(action):
                outcome = _approval_from_action(action, legacy=True)
                if outcome is not None:
                    return outcome

    result = run.get("result")
    return result if isinstance(result, str) else None


def extract_run_id(response: dict[str, Any]) -> str:
    # The run id lives on the first operation; older responses only carry the request id.
    operations = response.get("operations")
    if isinstance(operations, list) and operations and isinstance(operations[0], dict):
        run_ids = operations[0].get("workflowRunIds")
        if isinstance(run_ids, list) and run_ids and isinstance(run_ids[0], str) and run_ids[0]:
            return run_ids[0]
    request_id = response.get("requestId")
    if isinstance(request_id, str) and request_id:
        return request_id
    return "unknown"


def pick_asset_guid(hits: Any, product_name: str) -> str | None:
    # Prefer an exact case-insensitive name match, otherwise take the first hit.
    if not isinstance(hits, list) or not hits:
        return None
    wanted = product_name.lower()
    for hit in hits:
        if not isinstance(hit, dict):
            continue
        name, guid = hit.get("name"), hit.get("id")
        if isinstance(name, str) and isinstance(guid, str) and name.lower() == wanted:
            return guid
    first = hits[0]
    guid = first.get("id") if isinstance(first, dict) else None
    return guid if isinstance(guid, str) and guid else None


class PurviewWorkflowService:
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

    def _endpoint(self, account_name: str) -> str:
        return self._settings.purview_endpoint_template.format(account=account_name).rstrip("/")

    async def _token(self, tenant_id: str, user_credential: str | None) -> str:
        try:
            return await self._tokens.get_token(tenant_id, self._settings.purview_scope, user_credential)
        except TokenAcquisitionError as exc:
            raise WorkflowServiceError(f"Could not obtain a token for tenant {tenant_id}: {exc}") from exc

    async def _send(self, method: str, url: str, token: str, body: dict[str, Any] | None = None) -> Any:
        client = self._get_client()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.request(
                method, url, json=body, headers={"Authorization": f"Bearer {token}"}
            )
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise WorkflowServiceError(f"Workflow API call failed: {type(exc).__name__}: {exc}") from exc

        success = response.status_code < 400
        record_external_call(
            integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=success
        )
        if not success:
            raise WorkflowServiceError(
                f"Workflow API returned {response.status_code}: {response.text[:500]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise WorkflowServiceError("Workflow API returned a non-JSON body.") from exc

    async def _find_asset_guid(self, endpoint: str, token: str, product_name: str) -> str | None:
        url = f"{endpoint}/datamap/api/search/query?api-version={self._settings.datamap_api_version}"
        try:
            payload = await self._send("POST", url, token, {"keywords": product_name, "limit": 5})
        except WorkflowServiceError as exc:
            logger.warning("datamap_search_failed product=%s error=%s", product_name, exc)
            return None
        hits = payload.get("value") if isinstance(payload, dict) else None
        return pick_asset_guid(hits, product_name)

    async def submit(
        self,
        account_name: str,
        tenant_id: str,
        product_name: str,
        justification: str,
        user_credential: str | None = None,
    ) -> WorkflowSubmitResult:
        logger.info("workflow_submit_started account=%s product=%s", account_name, product_name)
        endpoint = self._endpoint(account_name)
        token = await self._token(tenant_id, user_credential)

        asset_guid = await self._find_asset_guid(endpoint, token, product_name)
        if not asset_guid:
            raise WorkflowServiceError(
                f"No matching data map asset found for '{product_name}'; "
                "the data product may not have registered assets."
            )

        url = f"{endpoint}/workflow/userrequests?api-version={self._settings.workflow_api_version}"
        body = {
            "operations": [
                {
                    "type": "GrantDataAccess",
                    "payload": {
                        "note": justification,
                        "purviewDataRole": "DataReader",
                        "dataAssetGuid": asset_guid,
                    },
                }
            ],
            "comment": _SUBMIT_COMMENT,
        }
        payload = await self._send("POST", url, token, body)
        run_id = extract_run_id(payload if isinstance(payload, dict) else {})
        logger.info("workflow_submitted account=%s run_id=%s asset_guid=%s", account_name, run_id, asset_guid)
        return WorkflowSubmitResult(run_id=run_id, data_asset_guid=asset_guid)

    async def poll_status(
        self,
        account_name: str,
        tenant_id: str,
        run_id: str,
        user_credential: str | None = None,
    ) -> WorkflowRunStatus:
        endpoint = self._endpoint(account_name)
        token = await self._token(tenant_id, user_credential)
        url = f"{endpoint}/workflow/workflowruns/{run_id}?api-version={self._settings.workflow_api_version}"
        payload = await self._send("GET", url, token)
        if not isinstance(payload, dict):
            raise WorkflowServiceError(f"Workflow run {run_id} response was not an object.")
        status = WorkflowRunStatus(
            run_status=coerce_text(payload.get("status")),
            approval_outcome=extract_approval_outcome(payload),
        )
        logger.info(
            "workflow_run_polled run_id=%s status=%s outcome=%s",
            run_id,
            status.run_status,
            status.approval_outcome or "(none)",
        )
        return status
