import re
from dataclasses import dataclass
from typing import Any, Dict, List

import httpx

from integrations.crm import CrmClient
from integrations.idempotency import Idem
from integrations.mock_backend import MockCrmBackend
from integrations.slack import SlackNotifier
from lifecycle.checklist import ChecklistGate
from lifecycle.conversion import ConversionBridge
from lifecycle.deals import DealPipeline
from lifecycle.forecast import ForecastAggregator
from lifecycle.leads import LeadFunnel
from lifecycle.models import Deal, Lead, Project
from lifecycle.projects import ProjectWorkflow


class FlakyBackend(httpx.BaseTransport):
    """Mock backend wrapper that fails selected requests."""

    def __init__(self, backend: MockCrmBackend):
        self.backend = backend
        self.rules: List[Dict[str, Any]] = []
        self.calls: List[str] = []

    def fail(self, method: str, path: str, kind: str = "network", status: int = 500,
             message: str = "Backend unavailable", times: int = 1) -> None:
        self.rules.append({
            "method": method,
            "path": re.compile(f"^{path}$"),
            "kind": kind,
            "status": status,
            "message": message,
            "times": times,
        })

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(f"{request.method} {request.url.path}")
        for rule in self.rules:
            if rule["times"] and rule["method"] == request.method and rule["path"].match(request.url.path):
                rule["times"] -= 1
                if rule["kind"] == "network":
                    raise httpx.ConnectError("Connection refused", request=request)
                if rule["kind"] == "timeout":
                    # the backend applies the request, the reply never arrives
                    self.backend.handle_request(request)
                    raise httpx.ReadTimeout("Read timed out", request=request)
                return httpx.Response(rule["status"], json={"error": rule["message"]})
        return self.backend.handle_request(request)


@dataclass
class World:
    backend: MockCrmBackend
    transport: FlakyBackend
    client: CrmClient
    notifier: SlackNotifier
    idem: Idem
    gate: ChecklistGate
    bridge: ConversionBridge
    leads: LeadFunnel
    deals: DealPipeline
    projects: ProjectWorkflow
    forecast: ForecastAggregator


def build_world() -> World:
    backend = MockCrmBackend()
    transport = FlakyBackend(backend)
    client = CrmClient(base_url="http://mock-crm", token="", transport=transport)
    notifier = SlackNotifier(token="")
    idem = Idem(redis_url="")
    gate = ChecklistGate(client, notifier)
    bridge = ConversionBridge(client, gate, idem, notifier)
    deals = DealPipeline(client, bridge)
    return World(
        backend=backend,
        transport=transport,
        client=client,
        notifier=notifier,
        idem=idem,
        gate=gate,
        bridge=bridge,
        leads=LeadFunnel(client, bridge),
        deals=deals,
        projects=ProjectWorkflow(client, gate),
        forecast=ForecastAggregator(deals),
    )


def seed_lead(world: World, **fields: Any) -> Lead:
    data = {"first_name": "Thandi", "last_name": "Mokoena", "email": "thandi@example.com", **fields}
    return world.client.create_lead(data)


def seed_deal(world: World, **fields: Any) -> Deal:
    data = {"first_name": "Priya", "last_name": "Naidoo", "case_type": "Spouse Visa", **fields}
    return world.client.create_deal(data)


def seed_project(world: World, **fields: Any) -> Project:
    data = {"name": "Priya Naidoo - Spouse Visa", "case_type": "Spouse Visa", **fields}
    return world.client.create_project(data)


def seed_checklist(world: World, project_id: str, required: int, received: int,
                   optional: int = 0) -> List[str]:
    """Create checklist rows; the first ``received`` required rows are received."""
    rows = [
        {"category": "Documents", "name": f"Required {i}", "is_required": True, "is_received": i < received}
        for i in range(required)
    ]
    rows += [
        {"category": "Documents", "name": f"Optional {i}", "is_required": False}
        for i in range(optional)
    ]
    return [item.id for item in world.client.create_checklist(project_id, rows)]
