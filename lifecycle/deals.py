"""
Sales pipeline for qualified deals (prospects).

Stage moves are unconditional writes; Back/Next follow the canonical stage
order. Won and lost are resolved through ``status``; a won deal hands over
to the ConversionBridge for its delivery project.
"""
from datetime import date
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel

from integrations.crm import CrmClient
from lifecycle import stages
from lifecycle.board import Board
from lifecycle.conversion import ConversionBridge
from lifecycle.errors import BatchResult, NetworkError, ValidationError
from lifecycle.models import Deal, WonDeal


class PipelineStats(BaseModel):
    total_value: float = 0.0
    deal_count: int = 0
    active_count: int = 0
    won_count: int = 0
    avg_deal_size: float = 0.0
    conversion_rate: float = 0.0


def is_counted_won(deal: Deal) -> bool:
    """Won for the conversion rate: late-funnel stage or a won status."""
    return deal.pipeline_stage in stages.WON_STAGES or deal.is_won


def pipeline_stats(deals: List[Deal]) -> PipelineStats:
    """
    Pipeline aggregates over non-lost deals.

    Lost deals drop out of every figure, numerator and denominator alike.
    """
    counted = [d for d in deals if not d.is_lost]
    count = len(counted)
    total = sum(d.quote_amount for d in counted)
    won = sum(1 for d in counted if is_counted_won(d))

    return PipelineStats(
        total_value=total,
        deal_count=count,
        active_count=sum(1 for d in counted if d.status == "open"),
        won_count=won,
        avg_deal_size=total / count if count else 0.0,
        conversion_rate=won / count if count else 0.0,
    )


class DealPipeline:

    def __init__(self, client: CrmClient, bridge: ConversionBridge):
        self.client = client
        self.bridge = bridge
        self.board: Board[Deal] = Board("deal", client.get_deal)

    # -- views ---------------------------------------------------------------

    def refresh(self) -> List[Deal]:
        self.board.replace_all(self.client.list_deals())
        return self.board.values()

    def get(self, deal_id: str) -> Deal:
        return self.board.get(deal_id)

    def active(self, employee_id: Optional[str] = None) -> List[Deal]:
        deals = [d for d in self.board.values() if not d.is_lost]
        if employee_id:
            deals = [d for d in deals if d.assigned_employee_id == employee_id]
        return deals

    def lost(self) -> List[Deal]:
        return [d for d in self.board.values() if d.is_lost]

    def by_stage(self) -> Dict[str, List[Deal]]:
        """Non-lost deals in one column per pipeline stage, in canonical order."""
        columns: Dict[str, List[Deal]] = {stage: [] for stage in stages.DEAL_STAGE_ORDER}
        for deal in self.active():
            columns[deal.pipeline_stage].append(deal)
        return columns

    def stats(self) -> PipelineStats:
        return pipeline_stats(self.board.values())

    # -- stage moves ---------------------------------------------------------

    def move_stage(self, deal_id: str, to_stage: str, confirmed: bool = False) -> Deal:
        """
        Put a deal on any pipeline stage (drag-drop and the Back/Next controls).

        Moving to ``won`` goes through :meth:`mark_won` and needs the same
        confirmation.
        """
        if not stages.is_deal_stage(to_stage):
            raise ValidationError(f"Unknown pipeline stage {to_stage!r}", deal_id)
        if to_stage == stages.WON:
            return self.mark_won(deal_id, confirmed=confirmed).deal

        deal = self.get(deal_id)
        self._check_open(deal)
        if deal.pipeline_stage == to_stage:
            return deal

        updated = self.board.mutate(
            deal_id,
            {"pipeline_stage": to_stage},
            lambda: self.client.set_deal_stage(deal_id, to_stage),
        )
        logger.info(f"Deal {deal_id}: {deal.pipeline_stage} -> {updated.pipeline_stage}")
        return updated

    def back(self, deal_id: str) -> Deal:
        deal = self.get(deal_id)
        if not self.controls(deal)["back"]:
            self._reject(deal, f"No stage before {deal.pipeline_stage}")
        previous = stages.DEAL_STAGE_ORDER[stages.deal_stage_index(deal.pipeline_stage) - 1]
        return self.move_stage(deal_id, previous)

    def next(self, deal_id: str) -> Deal:
        deal = self.get(deal_id)
        if not self.controls(deal)["next"]:
            self._reject(deal, f"No stage after {deal.pipeline_stage}; mark the deal won instead")
        following = stages.DEAL_STAGE_ORDER[stages.deal_stage_index(deal.pipeline_stage) + 1]
        return self.move_stage(deal_id, following)

    def controls(self, deal: Deal) -> Dict[str, bool]:
        """Which directional controls a deal card shows."""
        index = stages.deal_stage_index(deal.pipeline_stage)
        last_open = stages.deal_stage_index(stages.PAYMENT_DATE_CONFIRMED)
        is_open = deal.status == "open"
        return {
            "back": is_open and 0 < index <= last_open,
            "next": is_open and index < last_open,
            "won": is_open,
            "lost": is_open,
        }

    # -- resolution ----------------------------------------------------------

    def mark_won(self, deal_id: str, confirmed: bool = False) -> WonDeal:
        """
        Mark a deal won and provision its delivery project.

        Args:
            deal_id: Deal to resolve
            confirmed: The operator confirmed the won prompt

        Returns:
            The won deal and its project

        Raises:
            ValidationError: not confirmed, or the deal is lost
            ProjectProvisioningError: the deal is won but its project is missing
        """
        deal = self.get(deal_id)
        if not confirmed:
            self._reject(deal, "Marking a deal won must be confirmed")
        if deal.is_lost:
            self._reject(deal, "Deal is marked lost")

        if not deal.is_won:
            try:
                deal = self.board.mutate(
                    deal_id,
                    {"pipeline_stage": stages.WON, "status": "won"},
                    lambda: self.client.set_deal_stage(deal_id, stages.WON, status="won"),
                )
            except NetworkError:
                # the board re-fetched the deal; a won deal still needs its project
                deal = self.board.items.get(deal_id)
                if deal is None or not deal.is_won:
                    raise
                logger.warning(f"Deal {deal_id}: won write applied despite network error, provisioning project")
            logger.info(f"Deal {deal_id} marked won")

        conversion = self.bridge.create_project(deal)
        return WonDeal(deal=deal, project=conversion.record, project_created=conversion.created)

    def mark_lost(self, deal_id: str, reason: str) -> Deal:
        reason = (reason or "").strip()
        deal = self.get(deal_id)
        if not reason:
            self._reject(deal, "A reason is required to mark a deal lost")
        if deal.is_won:
            self._reject(deal, "Deal is already won")

        updated = self.board.mutate(
            deal_id,
            {"status": "lost", "lost_reason": reason},
            lambda: self.client.mark_deal_lost(deal_id, reason),
        )
        logger.info(f"Deal {deal_id} marked lost: {reason}")
        return updated

    def recover(self, deal_id: str) -> Deal:
        deal = self.get(deal_id)
        if not deal.is_lost:
            return deal
        updated = self.board.mutate(
            deal_id,
            {"status": "open", "lost_reason": None},
            lambda: self.client.recover_deal(deal_id),
        )
        logger.info(f"Deal {deal_id} recovered")
        return updated

    # -- deal data -----------------------------------------------------------

    def set_quote(self, deal_id: str, amount: float, discount: float = 0.0) -> Deal:
        deal = self.get(deal_id)
        if amount < 0 or discount < 0:
            self._reject(deal, "Quote amounts cannot be negative")
        if discount > amount:
            self._reject(deal, "Discount cannot exceed the quote amount")

        changes = {"quote_amount": float(amount), "discount_amount": float(discount)}
        return self.board.mutate(deal_id, changes, lambda: self.client.update_deal(deal_id, changes))

    def set_forecast(self, deal_id: str, amount: Optional[float] = None,
                     probability: Optional[float] = None,
                     expected_closing_date: Optional[date] = None,
                     expected_payment_date: Optional[date] = None) -> Deal:
        """Update the forecast fields that are given; the others are kept."""
        deal = self.get(deal_id)
        if amount is not None and amount < 0:
            self._reject(deal, "Forecast amount cannot be negative")
        if probability is not None and not 0 <= probability <= 100:
            self._reject(deal, "Forecast probability must be between 0 and 100")

        changes: Dict[str, Any] = {}
        if amount is not None:
            changes["forecast_amount"] = float(amount)
        if probability is not None:
            changes["forecast_probability"] = float(probability)
        if expected_closing_date is not None:
            changes["expected_closing_date"] = expected_closing_date
        if expected_payment_date is not None:
            changes["expected_payment_date"] = expected_payment_date
        if not changes:
            return deal

        payload = {k: v.isoformat() if isinstance(v, date) else v for k, v in changes.items()}
        return self.board.mutate(deal_id, changes, lambda: self.client.update_deal(deal_id, payload))

    def set_case_type(self, deal_id: str, case_type: str) -> Deal:
        """Case type decides which document checklist the project gets."""
        deal = self.get(deal_id)
        case_type = (case_type or "").strip()
        if not case_type:
            self._reject(deal, "Case type is required")
        changes = {"case_type": case_type}
        return self.board.mutate(deal_id, changes, lambda: self.client.update_deal(deal_id, changes))

    def add_tags(self, deal_id: str, tags: List[str]) -> Deal:
        deal = self.get(deal_id)
        new_tags = [t.strip() for t in tags if t and t.strip()]
        if not new_tags:
            self._reject(deal, "At least one tag is required")

        merged = list(deal.tags)
        merged.extend(t for t in dict.fromkeys(new_tags) if t not in merged)
        return self.board.mutate(
            deal_id, {"tags": merged}, lambda: self.client.add_deal_tags(deal_id, new_tags)
        )

    def delete(self, deal_id: str) -> None:
        self.client.delete_deal(deal_id)
        self.board.drop(deal_id)
        logger.info(f"Deal {deal_id} deleted")

    # -- reconciliation ------------------------------------------------------

    def unprovisioned(self) -> List[Deal]:
        return self.bridge.unprovisioned(self.board.values())

    def reconcile(self) -> BatchResult:
        return self.bridge.reconcile(self.board.values())

    def _check_open(self, deal: Deal) -> None:
        if deal.is_lost:
            self._reject(deal, "Deal is marked lost")
        if deal.is_won:
            self._reject(deal, "Deal is already won")

    def _reject(self, deal: Deal, message: str) -> None:
        logger.info(f"Deal {deal.id} at {deal.pipeline_stage}: {message}")
        raise ValidationError(message, deal.id)
