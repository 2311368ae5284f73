import logging

import httpx

from renewal_engine.core.errors import PermanentDispatchError, TransientDispatchError
from renewal_engine.services.hr.base import HRSystemClient

logger = logging.getLogger(__name__)

LICENSE_STAGE_ACTIVE = 1


def build_patch_operations(payload: dict) -> list[dict]:
    """JSON Patch operations for a WinTeam compliance-item update."""
    ops = []
    if payload.get("expiration_date"):
        ops.append({"op": "replace", "path": "/expirationDate", "value": payload["expiration_date"]})
        ops.append({
            "op": "replace",
            "path": "/licenseExpirationCode/licenseStageId",
            "value": LICENSE_STAGE_ACTIVE,
        })
    if payload.get("license_number"):
        ops.append({"op": "replace", "path": "/licenseExpirationCode/number", "value": payload["license_number"]})
    if payload.get("notes"):
        ops.append({"op": "replace", "path": "/notes", "value": payload["notes"]})
    return ops


class WinTeamClient(HRSystemClient):
    """Updates employee compliance items in WinTeam."""

    def __init__(
        self,
        base_url: str,
        tenant_id: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"tenantId": tenant_id, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def update_compliance_item(self, payload: dict) -> dict:
        employee_number = payload.get("employee_number")
        compliance_id = payload.get("compliance_item_id")
        if employee_number is None or compliance_id is None:
            raise PermanentDispatchError("No WinTeam employee/compliance item linked to this renewal")

        ops = build_patch_operations(payload)
        if not ops:
            raise PermanentDispatchError("Nothing to update")

        path = f"/api/employees/{employee_number}/compliance-items/{compliance_id}"
        try:
            response = self._client.patch(path, json=ops)
        except httpx.TransportError as e:
            raise TransientDispatchError(f"WinTeam unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDispatchError(f"WinTeam returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentDispatchError(f"WinTeam API error: {response.status_code} - {response.text}")

        logger.info(f"WinTeam compliance item {compliance_id} updated for employee {employee_number}")
        return {"status": "ok", "employee_number": employee_number, "compliance_item_id": compliance_id}

    def close(self) -> None:
        self._client.close()
