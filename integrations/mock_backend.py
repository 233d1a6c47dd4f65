"""
In-process stand-in for the case REST backend.

Plugged into httpx as a transport when no CRM_API_URL is configured, so the
client code path (requests, status codes, ``{error}`` bodies) is the same in
mock mode as against the real backend.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from lifecycle import stages

Route = Tuple[str, "re.Pattern[str]", Callable[..., httpx.Response]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status: int, message: str, **extra: Any) -> httpx.Response:
    return httpx.Response(status, json={"error": message, **extra})


class MockCrmBackend(httpx.BaseTransport):
    """Dictionary-backed implementation of the lead/prospect/project endpoints."""

    def __init__(self):
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.prospects: Dict[str, Dict[str, Any]] = {}
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.checklist: Dict[str, Dict[str, Any]] = {}
        self._counters: Dict[str, int] = {}
        self.routes: List[Route] = []

        self._route("GET", r"/leads", self._list_leads)
        self._route("POST", r"/leads", self._create_lead)
        self._route("GET", r"/leads/(?P<lead_id>[^/]+)", self._get_lead)
        self._route("PATCH", r"/leads/(?P<lead_id>[^/]+)/stage", self._lead_stage)
        self._route("PATCH", r"/leads/(?P<lead_id>[^/]+)/assign", self._lead_assign)
        self._route("PATCH", r"/leads/(?P<lead_id>[^/]+)/comment", self._lead_comment)
        self._route("PATCH", r"/leads/(?P<lead_id>[^/]+)/lost", self._lead_lost)
        self._route("PATCH", r"/leads/(?P<lead_id>[^/]+)/recover", self._lead_recover)
        self._route("DELETE", r"/leads/(?P<lead_id>[^/]+)", self._delete_lead)

        self._route("GET", r"/prospects", self._list_prospects)
        self._route("POST", r"/prospects", self._create_prospect)
        self._route("GET", r"/prospects/(?P<deal_id>[^/]+)", self._get_prospect)
        self._route("PATCH", r"/prospects/(?P<deal_id>[^/]+)", self._update_prospect)
        self._route("PATCH", r"/prospects/(?P<deal_id>[^/]+)/stage", self._prospect_stage)
        self._route("PATCH", r"/prospects/(?P<deal_id>[^/]+)/lost", self._prospect_lost)
        self._route("PATCH", r"/prospects/(?P<deal_id>[^/]+)/recover", self._prospect_recover)
        self._route("POST", r"/prospects/(?P<deal_id>[^/]+)/tags", self._prospect_tags)
        self._route("DELETE", r"/prospects/(?P<deal_id>[^/]+)", self._delete_prospect)

        self._route("GET", r"/projects", self._list_projects)
        self._route("POST", r"/projects/create", self._create_project)
        self._route("GET", r"/projects/(?P<project_id>[^/]+)", self._get_project)
        self._route("PATCH", r"/projects/(?P<project_id>[^/]+)/stage", self._project_stage)
        self._route("DELETE", r"/projects/(?P<project_id>[^/]+)", self._delete_project)
        self._route("GET", r"/projects/(?P<project_id>[^/]+)/checklist", self._list_checklist)
        self._route("POST", r"/projects/(?P<project_id>[^/]+)/checklist", self._create_checklist)
        self._route("PATCH", r"/checklist/(?P<item_id>[^/]+)", self._update_checklist)

    def _route(self, method: str, pattern: str, handler: Callable[..., httpx.Response]) -> None:
        self.routes.append((method, re.compile(f"^{pattern}$"), handler))

    def _next_id(self, kind: str) -> str:
        self._counters[kind] = self._counters.get(kind, 0) + 1
        return str(self._counters[kind])

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rstrip("/") or "/"
        body: Dict[str, Any] = {}
        if request.content:
            body = json.loads(request.content)
        params = dict(request.url.params)

        for method, pattern, handler in self.routes:
            match = pattern.match(path)
            if match and method == request.method:
                logger.debug(f"Mock backend {request.method} {path}")
                return handler(body=body, params=params, **match.groupdict())

        return _error(404, f"No route for {request.method} {path}")

    # -- leads ---------------------------------------------------------------

    def _lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        return self.leads.get(lead_id)

    def _list_leads(self, body, params) -> httpx.Response:
        leads = list(self.leads.values())
        if params.get("assigned_employee_id"):
            leads = [l for l in leads if l.get("assigned_employee_id") == params["assigned_employee_id"]]
        return httpx.Response(200, json=leads)

    def _create_lead(self, body, params) -> httpx.Response:
        lead_id = self._next_id("lead")
        lead = {
            "first_name": "",
            "last_name": "",
            "current_stage": stages.FIRST_CONTACT,
            "comments": [],
            "is_lost": False,
            "lost_reason": None,
            **body,
            "id": lead_id,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.leads[lead_id] = lead
        return httpx.Response(201, json=lead)

    def _get_lead(self, body, params, lead_id) -> httpx.Response:
        lead = self._lead(lead_id)
        if lead is None:
            return _error(404, f"Lead {lead_id} not found")
        return httpx.Response(200, json=lead)

    def _lead_write(self, lead_id: str, **changes: Any) -> httpx.Response:
        lead = self._lead(lead_id)
        if lead is None:
            return _error(404, f"Lead {lead_id} not found")
        lead.update(changes, updated_at=_now())
        return httpx.Response(200, json=lead)

    def _lead_stage(self, body, params, lead_id) -> httpx.Response:
        stage_id = body.get("stage_id")
        if stage_id not in stages.LEAD_STAGE_IDS:
            return _error(400, f"Invalid stage_id {stage_id}")
        lead = self._lead(lead_id)
        if lead is not None and lead.get("is_lost"):
            return _error(409, "Lead is marked lost")
        return self._lead_write(lead_id, current_stage=stage_id)

    def _lead_assign(self, body, params, lead_id) -> httpx.Response:
        return self._lead_write(lead_id, assigned_employee_id=body.get("employee_id"))

    def _lead_comment(self, body, params, lead_id) -> httpx.Response:
        lead = self._lead(lead_id)
        if lead is None:
            return _error(404, f"Lead {lead_id} not found")
        if not (body.get("comment") or "").strip():
            return _error(400, "Comment is required")
        comments = list(lead.get("comments") or [])
        comments.append({"text": body["comment"], "author": body.get("author"), "created_at": _now()})
        return self._lead_write(lead_id, comments=comments)

    def _lead_lost(self, body, params, lead_id) -> httpx.Response:
        return self._lead_write(lead_id, is_lost=True, lost_reason=body.get("reason"))

    def _lead_recover(self, body, params, lead_id) -> httpx.Response:
        return self._lead_write(lead_id, is_lost=False, lost_reason=None)

    def _delete_lead(self, body, params, lead_id) -> httpx.Response:
        if self.leads.pop(lead_id, None) is None:
            return _error(404, f"Lead {lead_id} not found")
        return httpx.Response(200, json={"deleted": True, "id": lead_id})

    # -- prospects -----------------------------------------------------------

    def _prospect(self, deal_id: str) -> Optional[Dict[str, Any]]:
        return self.prospects.get(deal_id)

    def _list_prospects(self, body, params) -> httpx.Response:
        deals = list(self.prospects.values())
        if params.get("lead_id"):
            deals = [d for d in deals if d.get("lead_id") == params["lead_id"]]
        return httpx.Response(200, json=deals)

    def _create_prospect(self, body, params) -> httpx.Response:
        lead_id = body.get("lead_id")
        if lead_id:
            for deal in self.prospects.values():
                if deal.get("lead_id") == lead_id:
                    return httpx.Response(200, json=deal)
        deal_id = self._next_id("prospect")
        deal = {
            "pipeline_stage": stages.OPPORTUNITY,
            "status": "open",
            "quote_amount": 0,
            "discount_amount": 0,
            "tags": [],
            **body,
            "id": deal_id,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.prospects[deal_id] = deal
        return httpx.Response(201, json=deal)

    def _get_prospect(self, body, params, deal_id) -> httpx.Response:
        deal = self._prospect(deal_id)
        if deal is None:
            return _error(404, f"Prospect {deal_id} not found")
        return httpx.Response(200, json=deal)

    def _prospect_write(self, deal_id: str, **changes: Any) -> httpx.Response:
        deal = self._prospect(deal_id)
        if deal is None:
            return _error(404, f"Prospect {deal_id} not found")
        deal.update(changes, updated_at=_now())
        return httpx.Response(200, json=deal)

    def _update_prospect(self, body, params, deal_id) -> httpx.Response:
        changes = {k: v for k, v in body.items() if k not in ("id", "pipeline_stage", "status")}
        return self._prospect_write(deal_id, **changes)

    def _prospect_stage(self, body, params, deal_id) -> httpx.Response:
        deal = self._prospect(deal_id)
        if deal is None:
            return _error(404, f"Prospect {deal_id} not found")
        stage_id = body.get("stage_id")
        if not stages.is_deal_stage(stage_id or ""):
            return _error(400, f"Invalid stage_id {stage_id}")
        if deal.get("status") == "lost":
            return _error(409, "Prospect is marked lost")
        if deal.get("status") == "won" and stage_id != stages.WON:
            return _error(409, "Prospect is already won")
        changes = {"pipeline_stage": stage_id}
        if body.get("status"):
            changes["status"] = body["status"]
        return self._prospect_write(deal_id, **changes)

    def _prospect_lost(self, body, params, deal_id) -> httpx.Response:
        deal = self._prospect(deal_id)
        if deal is not None and deal.get("status") == "won":
            return _error(409, "Prospect is already won")
        return self._prospect_write(deal_id, status="lost", lost_reason=body.get("reason"))

    def _prospect_recover(self, body, params, deal_id) -> httpx.Response:
        return self._prospect_write(deal_id, status="open", lost_reason=None)

    def _prospect_tags(self, body, params, deal_id) -> httpx.Response:
        deal = self._prospect(deal_id)
        if deal is None:
            return _error(404, f"Prospect {deal_id} not found")
        tags = list(deal.get("tags") or [])
        tags.extend(t for t in body.get("tags", []) if t not in tags)
        return self._prospect_write(deal_id, tags=tags)

    def _delete_prospect(self, body, params, deal_id) -> httpx.Response:
        if self.prospects.pop(deal_id, None) is None:
            return _error(404, f"Prospect {deal_id} not found")
        return httpx.Response(200, json={"deleted": True, "id": deal_id})

    # -- projects ------------------------------------------------------------

    def _list_projects(self, body, params) -> httpx.Response:
        projects = list(self.projects.values())
        if params.get("deal_id"):
            projects = [p for p in projects if p.get("deal_id") == params["deal_id"]]
        return httpx.Response(200, json=projects)

    def _create_project(self, body, params) -> httpx.Response:
        deal_id = body.get("deal_id")
        if deal_id:
            for project in self.projects.values():
                if project.get("deal_id") == deal_id:
                    return _error(409, "Project already exists for this deal", project_id=project["id"])
        project_id = self._next_id("project")
        project = {
            "stage": stages.NEW_CLIENT,
            "supervisor_reviewed": False,
            "submitted": False,
            "submission_status": None,
            "tracking": {},
            **body,
            "id": project_id,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.projects[project_id] = project
        return httpx.Response(201, json=project)

    def _get_project(self, body, params, project_id) -> httpx.Response:
        project = self.projects.get(project_id)
        if project is None:
            return _error(404, f"Project {project_id} not found")
        return httpx.Response(200, json=project)

    def _project_stage(self, body, params, project_id) -> httpx.Response:
        project = self.projects.get(project_id)
        if project is None:
            return _error(404, f"Project {project_id} not found")
        changes = dict(body)
        if "tracking" in changes:
            changes["tracking"] = {**(project.get("tracking") or {}), **(changes["tracking"] or {})}
        project.update(changes, updated_at=_now())
        return httpx.Response(200, json=project)

    def _delete_project(self, body, params, project_id) -> httpx.Response:
        if self.projects.pop(project_id, None) is None:
            return _error(404, f"Project {project_id} not found")
        for item_id in [i for i, item in self.checklist.items() if item["project_id"] == project_id]:
            del self.checklist[item_id]
        return httpx.Response(200, json={"deleted": True, "id": project_id})

    # -- document checklist --------------------------------------------------

    def _list_checklist(self, body, params, project_id) -> httpx.Response:
        items = [i for i in self.checklist.values() if i["project_id"] == project_id]
        return httpx.Response(200, json=items)

    def _create_checklist(self, body, params, project_id) -> httpx.Response:
        if project_id not in self.projects:
            return _error(404, f"Project {project_id} not found")
        created = []
        for row in body.get("items", []):
            item_id = self._next_id("checklist")
            item = {
                "is_required": True,
                "is_received": False,
                "received_date": None,
                "reminder_sent_date": None,
                "notes": None,
                **row,
                "id": item_id,
                "project_id": project_id,
            }
            self.checklist[item_id] = item
            created.append(item)
        return httpx.Response(201, json=created)

    def _update_checklist(self, body, params, item_id) -> httpx.Response:
        item = self.checklist.get(item_id)
        if item is None:
            return _error(404, f"Checklist item {item_id} not found")
        item.update({k: v for k, v in body.items() if k not in ("id", "project_id")})
        return httpx.Response(200, json=item)
