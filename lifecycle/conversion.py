"""
Side effects that couple the pipelines: lead -> deal and won deal -> project.

Both are LangGraph flows. Nodes record failures in the flow state instead of
raising, and the bridge turns the recorded failure into the right exception
once the flow has finished.
"""
import re
from typing import Dict, Iterable, List, Optional

from langgraph.graph import StateGraph, START, END
from loguru import logger

from integrations.config import settings
from integrations.crm import CrmClient
from integrations.idempotency import Idem
from integrations.slack import SlackNotifier
from lifecycle import stages
from lifecycle.checklist import ChecklistGate
from lifecycle.errors import BatchResult, CaseError, ConflictError, ProjectProvisioningError, raise_for_batch
from lifecycle.models import Conversion, Deal, Lead
from lifecycle.state import DealConversionState, ProjectProvisionState


def _record_failure(state: Dict, error: CaseError) -> None:
    state.setdefault("errors", []).append(error.message)
    if not state.get("failure"):
        state["failure"] = error


def default_folder(deal: Deal) -> str:
    """Storage folder for a new project, e.g. ``Clients/jane-doe-42``."""
    name = deal.full_name or deal.company or "client"
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "client"
    return f"{settings.storage_root}/{slug}-{deal.id}"


class ConversionBridge:

    def __init__(self, client: CrmClient, gate: ChecklistGate,
                 idem: Optional[Idem] = None, notifier: Optional[SlackNotifier] = None):
        self.client = client
        self.gate = gate
        self.idem = idem or Idem()
        self.notifier = notifier or SlackNotifier()
        self.deal_flow = self._build_deal_flow()
        self.project_flow = self._build_project_flow()

    # -- lead -> deal --------------------------------------------------------

    def find_deal(self, state: DealConversionState) -> DealConversionState:
        lead = state["lead"]
        try:
            state["deal"] = self.client.find_deal_for_lead(lead.id)
        except CaseError as e:
            _record_failure(state, e)
            return state
        state["created"] = False
        if state["deal"]:
            logger.info(f"Lead {lead.id} already converted to deal {state['deal'].id}")
        return state

    def create_deal(self, state: DealConversionState) -> DealConversionState:
        lead = state["lead"]
        payload = {
            "lead_id": lead.id,
            "first_name": lead.first_name,
            "last_name": lead.last_name,
            "email": lead.email,
            "phone": lead.phone,
            "company": lead.company,
            "assigned_employee_id": lead.assigned_employee_id,
            "pipeline_stage": stages.OPPORTUNITY,
            "status": "open",
        }
        try:
            state["deal"] = self.client.create_deal(payload)
        except CaseError as e:
            _record_failure(state, e)
            return state
        state["created"] = True
        logger.info(f"Lead {lead.id} converted to deal {state['deal'].id}")
        return state

    def _build_deal_flow(self):
        workflow = StateGraph(DealConversionState)

        workflow.add_node("find_deal", self.find_deal)
        workflow.add_node("create_deal", self.create_deal)

        def after_lookup(state: DealConversionState) -> str:
            if state.get("failure") or state.get("deal"):
                return "done"
            return "create"

        workflow.add_edge(START, "find_deal")
        workflow.add_conditional_edges(
            "find_deal",
            after_lookup,
            {"create": "create_deal", "done": END}
        )
        workflow.add_edge("create_deal", END)

        return workflow.compile()

    def convert_to_deal(self, lead: Lead) -> Conversion:
        """
        Create the deal for a lead, or return the one it already has.

        Raises:
            CaseError: lookup or creation failed; the original error is re-raised
        """
        result = self.deal_flow.invoke({"lead": lead, "errors": [], "failure": None})
        if result.get("failure"):
            raise result["failure"]
        return Conversion(record=result["deal"], created=result["created"])

    # -- won deal -> project -------------------------------------------------

    def lookup_project(self, state: ProjectProvisionState) -> ProjectProvisionState:
        deal = state["deal"]
        try:
            state["project"] = self.client.find_project_for_deal(deal.id)
        except CaseError as e:
            _record_failure(state, e)
            return state
        state["created"] = False
        if state["project"]:
            logger.info(f"Deal {deal.id} already has project {state['project'].id}")
        return state

    def open_project(self, state: ProjectProvisionState) -> ProjectProvisionState:
        deal = state["deal"]
        key = f"project:{deal.id}"

        if not self.idem.check_and_set(key):
            _record_failure(state, ConflictError("Project creation already in progress for this deal", deal.id))
            return state

        client_name = deal.full_name or deal.company or f"Deal {deal.id}"
        payload = {
            "deal_id": deal.id,
            "name": f"{client_name} - {deal.case_type}" if deal.case_type else client_name,
            "client_name": client_name,
            "case_type": deal.case_type,
            "folder": default_folder(deal),
            "stage": stages.NEW_CLIENT,
            "status": stages.PROJECT_STAGE_LABELS[stages.NEW_CLIENT],
            "progress": stages.stage_progress(stages.NEW_CLIENT),
        }
        try:
            state["project"] = self.client.create_project(payload)
            state["created"] = True
            logger.info(f"Project {state['project'].id} created for deal {deal.id}")
        except ConflictError:
            # another writer won the race; adopt its project
            try:
                state["project"] = self.client.find_project_for_deal(deal.id)
            except CaseError as e:
                _record_failure(state, e)
            if not state.get("project") and not state.get("failure"):
                _record_failure(state, ConflictError("Project exists but could not be loaded", deal.id))
        except CaseError as e:
            self.idem.clear_key(key)
            _record_failure(state, e)
        return state

    def seed_checklist(self, state: ProjectProvisionState) -> ProjectProvisionState:
        try:
            state["checklist_seeded"] = self.gate.seed(state["project"])
        except CaseError as e:
            logger.error(f"Checklist seeding failed for project {state['project'].id}: {e.message}")
            _record_failure(state, e)
        return state

    def notify(self, state: ProjectProvisionState) -> ProjectProvisionState:
        deal = state["deal"]
        failure = state.get("failure")
        if failure:
            ts = self.notifier.send_provisioning_alert(deal.model_dump(mode="json"), failure.message)
            if ts:
                state.setdefault("notifications", []).append(f"provisioning_alert:{ts}")
        elif state.get("created"):
            ts = self.notifier.send_deal_won(deal.model_dump(mode="json"), state["project"].model_dump(mode="json"))
            if ts:
                state.setdefault("notifications", []).append(f"slack:{ts}")
        return state

    def _build_project_flow(self):
        workflow = StateGraph(ProjectProvisionState)

        workflow.add_node("lookup_project", self.lookup_project)
        workflow.add_node("create_project", self.open_project)
        workflow.add_node("seed_checklist", self.seed_checklist)
        workflow.add_node("notify", self.notify)

        def after_lookup(state: ProjectProvisionState) -> str:
            if state.get("failure"):
                return "notify"
            if state.get("project"):
                # re-run seeding in case an earlier attempt stopped after creation
                return "seed"
            return "create"

        def after_create(state: ProjectProvisionState) -> str:
            if state.get("project") and not state.get("failure"):
                return "seed"
            return "notify"

        workflow.add_edge(START, "lookup_project")
        workflow.add_conditional_edges(
            "lookup_project",
            after_lookup,
            {"create": "create_project", "seed": "seed_checklist", "notify": "notify"}
        )
        workflow.add_conditional_edges(
            "create_project",
            after_create,
            {"seed": "seed_checklist", "notify": "notify"}
        )
        workflow.add_edge("seed_checklist", "notify")
        workflow.add_edge("notify", END)

        return workflow.compile()

    def create_project(self, deal: Deal) -> Conversion:
        """
        Provision the delivery project for a won deal, exactly once.

        An existing project for the deal is returned with ``created=False``.

        Raises:
            ProjectProvisioningError: the deal is won but has no usable project
        """
        result = self.project_flow.invoke({
            "deal": deal,
            "project": None,
            "created": False,
            "checklist_seeded": 0,
            "notifications": [],
            "errors": [],
            "failure": None,
        })

        failure = result.get("failure")
        if failure:
            project = result.get("project")
            logger.error(f"Deal {deal.id} is won but project provisioning failed: {failure.message}")
            raise ProjectProvisioningError(
                f"Deal marked won but project was not provisioned: {failure.message}",
                deal.id,
                project.id if project else None,
            ) from failure

        return Conversion(record=result["project"], created=result["created"])

    # -- reconciliation ------------------------------------------------------

    def unprovisioned(self, deals: Iterable[Deal]) -> List[Deal]:
        """Won deals that have no project."""
        provisioned = {p.deal_id for p in self.client.list_projects() if p.deal_id}
        return [d for d in deals if d.is_won and d.id not in provisioned]

    def reconcile(self, deals: Iterable[Deal]) -> BatchResult:
        """
        Create the missing project for every won deal that lacks one.

        Raises:
            PartialBatchError: some deals could not be provisioned
        """
        result = BatchResult()
        for deal in self.unprovisioned(deals):
            try:
                self.create_project(deal)
            except ProjectProvisioningError as e:
                result.fail(deal.id, e.message)
                continue
            result.ok(deal.id)

        logger.info(f"Reconciliation: {result.success_count} provisioned, {result.failure_count} failed")
        return raise_for_batch("reconcile", result)
