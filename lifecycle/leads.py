"""
Cold-lead funnel: First Contact -> Second Contact -> Third Contact -> Convert
to Opportunity.

Reaching the conversion stage hands the lead to the ConversionBridge; if no
deal comes back the lead is put back where it was.
"""
from typing import Any, Dict, List, Optional

from loguru import logger

from integrations.crm import CrmClient
from lifecycle import stages
from lifecycle.board import Board
from lifecycle.conversion import ConversionBridge
from lifecycle.errors import BatchResult, CaseError, ValidationError, raise_for_batch
from lifecycle.models import Lead, LeadComment, LeadMove


class LeadFunnel:

    def __init__(self, client: CrmClient, bridge: ConversionBridge):
        self.client = client
        self.bridge = bridge
        self.board: Board[Lead] = Board("lead", client.get_lead)

    def create(self, data: Dict[str, Any]) -> Lead:
        """Register a new cold lead at First Contact."""
        lead = self.board.put(self.client.create_lead({**data, "current_stage": stages.FIRST_CONTACT}))
        logger.info(f"Lead {lead.id} created for {lead.full_name or lead.email}")
        return lead

    # -- views ---------------------------------------------------------------

    def refresh(self) -> List[Lead]:
        self.board.replace_all(self.client.list_leads())
        return self.board.values()

    def get(self, lead_id: str) -> Lead:
        return self.board.get(lead_id)

    def active(self, employee_id: Optional[str] = None) -> List[Lead]:
        leads = [l for l in self.board.values() if not l.is_lost]
        if employee_id:
            leads = [l for l in leads if l.assigned_employee_id == employee_id]
        return leads

    def lost(self) -> List[Lead]:
        return [l for l in self.board.values() if l.is_lost]

    def by_stage(self, employee_id: Optional[str] = None) -> Dict[int, List[Lead]]:
        """Active leads grouped into one column per funnel stage."""
        columns: Dict[int, List[Lead]] = {stage_id: [] for stage_id in stages.LEAD_STAGE_IDS}
        for lead in self.active(employee_id):
            columns[lead.current_stage].append(lead)
        return columns

    # -- stage moves ---------------------------------------------------------

    def advance(self, lead_id: str) -> LeadMove:
        """
        Move a lead to the next funnel stage.

        A lead already at Convert to Opportunity re-attempts the conversion;
        the bridge returns the existing deal instead of creating another.
        """
        lead = self.get(lead_id)
        self._check_open(lead)

        target = stages.next_lead_stage(lead.current_stage)
        if target is None or stages.lead_stage(target).is_conversion_stage:
            return self._convert(lead)
        return LeadMove(lead=self._move(lead, target))

    def set_stage(self, lead_id: str, stage_id: int) -> LeadMove:
        """Drop a lead onto a stage column."""
        definition = stages.lead_stage(stage_id)
        if definition is None:
            raise ValidationError(f"Unknown lead stage {stage_id}", lead_id)

        lead = self.get(lead_id)
        self._check_open(lead)
        if lead.current_stage == stage_id:
            return LeadMove(lead=lead)
        if definition.is_conversion_stage:
            return self._convert(lead)
        return LeadMove(lead=self._move(lead, stage_id))

    def _move(self, lead: Lead, stage_id: int) -> Lead:
        updated = self.board.mutate(
            lead.id,
            {"current_stage": stage_id},
            lambda: self.client.set_lead_stage(lead.id, stage_id),
        )
        logger.info(f"Lead {lead.id}: stage {lead.current_stage} -> {updated.current_stage}")
        return updated

    def _convert(self, lead: Lead) -> LeadMove:
        previous = lead.current_stage
        retry = lead.is_converted
        if not retry:
            lead = self._move(lead, stages.CONVERT_TO_OPPORTUNITY)

        try:
            conversion = self.bridge.convert_to_deal(lead)
        except CaseError as e:
            restore = self._retry_fallback(lead) if retry else previous
            if restore is None:
                logger.error(f"Lead {lead.id} conversion re-attempt failed, keeping stage: {e.message}")
            else:
                logger.error(f"Lead {lead.id} conversion failed, reverting to stage {restore}: {e.message}")
                self._revert(lead.id, restore)
            raise

        return LeadMove(lead=lead, deal=conversion.record, deal_created=conversion.created)

    def _retry_fallback(self, lead: Lead) -> Optional[int]:
        """
        Stage for a lead whose re-attempted conversion failed.

        A lead that already has a deal, or whose deal cannot be looked up,
        stays at Convert to Opportunity. Only a lead confirmed to have no
        deal drops back to Third Contact.
        """
        try:
            deal = self.client.find_deal_for_lead(lead.id)
        except CaseError as e:
            logger.warning(f"Lead {lead.id}: deal lookup failed, leaving stage unchanged: {e.message}")
            return None
        if deal is not None:
            return None
        return stages.THIRD_CONTACT

    def _revert(self, lead_id: str, stage_id: int) -> None:
        try:
            self.board.mutate(lead_id, {"current_stage": stage_id},
                              lambda: self.client.set_lead_stage(lead_id, stage_id))
        except CaseError as e:
            logger.error(f"Lead {lead_id}: could not restore stage {stage_id}: {e.message}")
            self.board.reload(lead_id)

    # -- other edits ---------------------------------------------------------

    def assign(self, lead_id: str, employee_id: Optional[str]) -> Lead:
        self.get(lead_id)
        return self.board.mutate(
            lead_id,
            {"assigned_employee_id": employee_id},
            lambda: self.client.assign_lead(lead_id, employee_id),
        )

    def add_comment(self, lead_id: str, text: str, author: Optional[str] = None) -> Lead:
        """Append a comment to the lead's log; comments are never edited."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text is required", lead_id)
        lead = self.get(lead_id)
        comments = lead.comments + [LeadComment(text=text, author=author)]
        return self.board.mutate(
            lead_id,
            {"comments": comments},
            lambda: self.client.comment_lead(lead_id, text, author),
        )

    def mark_lost(self, lead_id: str, reason: str) -> Lead:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to mark a lead lost", lead_id)
        self.get(lead_id)
        lead = self.board.mutate(
            lead_id,
            {"is_lost": True, "lost_reason": reason},
            lambda: self.client.mark_lead_lost(lead_id, reason),
        )
        logger.info(f"Lead {lead_id} marked lost: {reason}")
        return lead

    def recover(self, lead_id: str) -> Lead:
        lead = self.get(lead_id)
        if not lead.is_lost:
            return lead
        lead = self.board.mutate(
            lead_id,
            {"is_lost": False, "lost_reason": None},
            lambda: self.client.recover_lead(lead_id),
        )
        logger.info(f"Lead {lead_id} recovered")
        return lead

    def delete(self, lead_id: str, duplicate_of: str) -> None:
        """
        Hard-delete a lead that duplicates another one.

        Args:
            lead_id: Duplicate to remove
            duplicate_of: Lead that is kept; must exist and differ from lead_id
        """
        if not duplicate_of or duplicate_of == lead_id:
            raise ValidationError("Only a confirmed duplicate of another lead can be deleted", lead_id)
        self.get(duplicate_of)

        self.client.delete_lead(lead_id)
        self.board.drop(lead_id)
        logger.info(f"Lead {lead_id} deleted as duplicate of {duplicate_of}")

    def delete_duplicates(self, pairs: Dict[str, str]) -> BatchResult:
        """
        Delete several duplicates, continuing past individual failures.

        Args:
            pairs: duplicate lead id -> surviving lead id

        Raises:
            PartialBatchError: some deletions failed
        """
        result = BatchResult()
        for lead_id, duplicate_of in pairs.items():
            try:
                self.delete(lead_id, duplicate_of)
            except CaseError as e:
                result.fail(lead_id, e.message)
                continue
            result.ok(lead_id)
        return raise_for_batch("delete_duplicates", result)

    def _check_open(self, lead: Lead) -> None:
        if lead.is_lost:
            logger.info(f"Lead {lead.id} is lost; recover it before moving it")
            raise ValidationError("Lead is marked lost", lead.id)
