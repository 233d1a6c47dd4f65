from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from integrations.config import settings
from integrations.mock_backend import MockCrmBackend
from lifecycle.errors import BackendError, ConflictError, NetworkError
from lifecycle.models import ChecklistItem, Deal, Lead, Project

T = TypeVar("T", bound=BaseModel)


def _parse(model: Type[T], payload: Any) -> T:
    """Validate a backend payload into its typed record."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        logger.error(f"Malformed {model.__name__} payload from backend: {e}")
        raise BackendError(f"Malformed {model.__name__} payload from backend", status_code=502) from e


class CrmClient:
    """REST client for the case backend; returns validated lead/deal/project records."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url if base_url is not None else settings.crm_api_url).rstrip("/")
        self.token = token if token is not None else settings.crm_api_token
        self.mock = None

        if transport is None and not self.base_url:
            logger.warning("No CRM API url provided, using mock backend")
            self.mock = transport = MockCrmBackend()
            self.base_url = "http://mock-crm"
        elif isinstance(transport, MockCrmBackend):
            self.mock = transport
            self.base_url = self.base_url or "http://mock-crm"

        self.http = httpx.Client(
            base_url=self.base_url,
            headers=self._get_headers(),
            timeout=timeout or settings.crm_timeout,
            transport=transport,
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for backend requests."""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def close(self) -> None:
        self.http.close()

    def _request(self, method: str, path: str, entity_id: Optional[str] = None, **kwargs: Any) -> Any:
        """
        Send a request and unwrap the JSON body.

        Raises:
            NetworkError: no response was received
            ConflictError: backend answered 409
            BackendError: backend answered with an error status or an ``error`` field
        """
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"{method} {path} failed before a response: {e}")
            raise NetworkError(f"Could not reach the case backend: {e}", entity_id) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        message = payload.get("error") if isinstance(payload, dict) else None
        if response.status_code == 409:
            logger.warning(f"{method} {path} conflict: {message}")
            raise ConflictError(message or "Entity changed on the server", entity_id)
        if response.is_error or message:
            message = message or f"{method} {path} failed: {response.status_code}"
            logger.error(f"{method} {path} rejected ({response.status_code}): {message}")
            raise BackendError(message, entity_id, status_code=response.status_code)
        return payload

    # -- leads ---------------------------------------------------------------

    def list_leads(self, assigned_employee_id: Optional[str] = None) -> List[Lead]:
        params = {"assigned_employee_id": assigned_employee_id} if assigned_employee_id else None
        return [_parse(Lead, row) for row in self._request("GET", "/leads", params=params)]

    def get_lead(self, lead_id: str) -> Lead:
        return _parse(Lead, self._request("GET", f"/leads/{lead_id}", lead_id))

    def create_lead(self, data: Dict[str, Any]) -> Lead:
        return _parse(Lead, self._request("POST", "/leads", json=data))

    def set_lead_stage(self, lead_id: str, stage_id: int) -> Lead:
        return _parse(Lead,
            self._request("PATCH", f"/leads/{lead_id}/stage", lead_id, json={"stage_id": stage_id})
        )

    def assign_lead(self, lead_id: str, employee_id: Optional[str]) -> Lead:
        return _parse(Lead,
            self._request("PATCH", f"/leads/{lead_id}/assign", lead_id, json={"employee_id": employee_id})
        )

    def comment_lead(self, lead_id: str, comment: str, author: Optional[str] = None) -> Lead:
        return _parse(Lead,
            self._request("PATCH", f"/leads/{lead_id}/comment", lead_id,
                          json={"comment": comment, "author": author})
        )

    def mark_lead_lost(self, lead_id: str, reason: str) -> Lead:
        return _parse(Lead,
            self._request("PATCH", f"/leads/{lead_id}/lost", lead_id, json={"reason": reason})
        )

    def recover_lead(self, lead_id: str) -> Lead:
        return _parse(Lead, self._request("PATCH", f"/leads/{lead_id}/recover", lead_id))

    def delete_lead(self, lead_id: str) -> None:
        self._request("DELETE", f"/leads/{lead_id}", lead_id)

    # -- prospects (deals) ---------------------------------------------------

    def list_deals(self) -> List[Deal]:
        return [_parse(Deal, row) for row in self._request("GET", "/prospects")]

    def get_deal(self, deal_id: str) -> Deal:
        return _parse(Deal, self._request("GET", f"/prospects/{deal_id}", deal_id))

    def find_deal_for_lead(self, lead_id: str) -> Optional[Deal]:
        rows = self._request("GET", "/prospects", lead_id, params={"lead_id": lead_id})
        return _parse(Deal, rows[0]) if rows else None

    def create_deal(self, data: Dict[str, Any]) -> Deal:
        return _parse(Deal, self._request("POST", "/prospects", data.get("lead_id"), json=data))

    def update_deal(self, deal_id: str, data: Dict[str, Any]) -> Deal:
        return _parse(Deal, self._request("PATCH", f"/prospects/{deal_id}", deal_id, json=data))

    def set_deal_stage(self, deal_id: str, stage_id: str, status: Optional[str] = None) -> Deal:
        body: Dict[str, Any] = {"stage_id": stage_id}
        if status:
            body["status"] = status
        return _parse(Deal, self._request("PATCH", f"/prospects/{deal_id}/stage", deal_id, json=body))

    def mark_deal_lost(self, deal_id: str, reason: str) -> Deal:
        return _parse(Deal,
            self._request("PATCH", f"/prospects/{deal_id}/lost", deal_id, json={"reason": reason})
        )

    def recover_deal(self, deal_id: str) -> Deal:
        return _parse(Deal, self._request("PATCH", f"/prospects/{deal_id}/recover", deal_id))

    def add_deal_tags(self, deal_id: str, tags: List[str]) -> Deal:
        return _parse(Deal,
            self._request("POST", f"/prospects/{deal_id}/tags", deal_id, json={"tags": tags})
        )

    def delete_deal(self, deal_id: str) -> None:
        self._request("DELETE", f"/prospects/{deal_id}", deal_id)

    # -- projects ------------------------------------------------------------

    def list_projects(self) -> List[Project]:
        return [_parse(Project, row) for row in self._request("GET", "/projects")]

    def get_project(self, project_id: str) -> Project:
        return _parse(Project, self._request("GET", f"/projects/{project_id}", project_id))

    def find_project_for_deal(self, deal_id: str) -> Optional[Project]:
        rows = self._request("GET", "/projects", deal_id, params={"deal_id": deal_id})
        return _parse(Project, rows[0]) if rows else None

    def create_project(self, data: Dict[str, Any]) -> Project:
        return _parse(Project,
            self._request("POST", "/projects/create", data.get("deal_id"), json=data)
        )

    def update_project(self, project_id: str, data: Dict[str, Any]) -> Project:
        return _parse(Project,
            self._request("PATCH", f"/projects/{project_id}/stage", project_id, json=data)
        )

    def delete_project(self, project_id: str) -> None:
        self._request("DELETE", f"/projects/{project_id}", project_id)

    # -- document checklist --------------------------------------------------

    def list_checklist(self, project_id: str) -> List[ChecklistItem]:
        rows = self._request("GET", f"/projects/{project_id}/checklist", project_id)
        return [_parse(ChecklistItem, row) for row in rows]

    def create_checklist(self, project_id: str, items: List[Dict[str, Any]]) -> List[ChecklistItem]:
        rows = self._request("POST", f"/projects/{project_id}/checklist", project_id, json={"items": items})
        return [_parse(ChecklistItem, row) for row in rows]

    def update_checklist_item(self, item_id: str, data: Dict[str, Any]) -> ChecklistItem:
        return _parse(ChecklistItem,
            self._request("PATCH", f"/checklist/{item_id}", item_id, json=data)
        )
