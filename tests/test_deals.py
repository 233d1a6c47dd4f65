import os
import sys
from datetime import date

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from helpers import build_world, seed_deal
from lifecycle import stages
from lifecycle.deals import pipeline_stats
from lifecycle.errors import ConflictError, NetworkError, ProjectProvisioningError, ValidationError


class TestDealStageMoves:
    """Drag-drop moves and the Back/Next controls."""

    def setup_method(self):
        self.world = build_world()
        self.pipeline = self.world.deals

    def test_drag_drop_ignores_order(self):
        deal = seed_deal(self.world)

        moved = self.pipeline.move_stage(deal.id, stages.INVOICE_SENT)

        assert moved.pipeline_stage == stages.INVOICE_SENT
        assert self.world.backend.prospects[deal.id]["pipeline_stage"] == stages.INVOICE_SENT

    def test_same_stage_drop_is_noop(self):
        deal = seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT)

        self.pipeline.move_stage(deal.id, stages.QUOTE_SENT)

        assert f"PATCH /prospects/{deal.id}/stage" not in self.world.transport.calls

    def test_unknown_stage_rejected(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.move_stage(deal.id, "negotiation")

    def test_back_and_next_follow_canonical_order(self):
        deal = seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT)

        assert self.pipeline.next(deal.id).pipeline_stage == stages.FIRST_FOLLOW_UP
        assert self.pipeline.back(deal.id).pipeline_stage == stages.QUOTE_SENT
        assert self.pipeline.back(deal.id).pipeline_stage == stages.QUOTE_REQUESTED

    def test_first_stage_has_no_back(self):
        deal = seed_deal(self.world)

        assert self.pipeline.controls(deal)["back"] is False
        with pytest.raises(ValidationError):
            self.pipeline.back(deal.id)

    def test_last_open_stage_has_no_next_but_has_won(self):
        deal = seed_deal(self.world, pipeline_stage=stages.PAYMENT_DATE_CONFIRMED)

        controls = self.pipeline.controls(deal)

        assert controls == {"back": True, "next": False, "won": True, "lost": True}
        with pytest.raises(ValidationError):
            self.pipeline.next(deal.id)

    def test_lost_deal_cannot_move(self):
        deal = seed_deal(self.world)
        self.pipeline.mark_lost(deal.id, "Budget")

        with pytest.raises(ValidationError, match="Deal is marked lost"):
            self.pipeline.move_stage(deal.id, stages.QUOTE_SENT)

    def test_conflict_forces_refetch(self):
        """A deal won behind the board's back is re-fetched, not retried."""
        deal = seed_deal(self.world)
        self.pipeline.get(deal.id)
        self.world.backend.prospects[deal.id]["status"] = "won"

        with pytest.raises(ConflictError, match="already won"):
            self.pipeline.move_stage(deal.id, stages.QUOTE_SENT)

        assert self.pipeline.get(deal.id).is_won
        assert self.pipeline.get(deal.id).pipeline_stage == stages.OPPORTUNITY

    def test_rejected_move_never_reaches_aggregates(self):
        deal = seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT, quote_amount=4000)
        self.pipeline.refresh()
        self.world.transport.fail("PATCH", f"/prospects/{deal.id}/stage")

        with pytest.raises(NetworkError):
            self.pipeline.move_stage(deal.id, stages.QUOTE_ACCEPTED)

        assert self.pipeline.get(deal.id).pipeline_stage == stages.QUOTE_SENT
        assert self.pipeline.stats().won_count == 0

    def test_timed_out_move_shows_backend_state(self):
        deal = seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT)
        self.pipeline.refresh()
        self.world.transport.fail("PATCH", f"/prospects/{deal.id}/stage", kind="timeout")

        with pytest.raises(NetworkError):
            self.pipeline.move_stage(deal.id, stages.QUOTE_ACCEPTED)

        assert self.pipeline.get(deal.id).pipeline_stage == stages.QUOTE_ACCEPTED

    def test_by_stage_has_every_column_in_order(self):
        seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT)
        lost = seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT)
        self.pipeline.refresh()
        self.pipeline.mark_lost(lost.id, "No response")

        columns = self.pipeline.by_stage()

        assert list(columns) == list(stages.DEAL_STAGE_ORDER)
        assert len(columns[stages.QUOTE_SENT]) == 1


class TestDealResolution:
    """Won/lost resolution and project hand-off."""

    def setup_method(self):
        self.world = build_world()
        self.pipeline = self.world.deals

    def test_scenario_won_deal_gets_exactly_one_project(self):
        deal = seed_deal(self.world)
        self.pipeline.set_quote(deal.id, 10000)
        self.pipeline.move_stage(deal.id, stages.QUOTE_SENT)
        self.pipeline.move_stage(deal.id, stages.QUOTE_ACCEPTED)

        won = self.pipeline.mark_won(deal.id, confirmed=True)

        assert won.deal.is_won
        assert won.deal.pipeline_stage == stages.WON
        assert won.project_created is True
        assert won.project.stage == stages.NEW_CLIENT
        assert won.project.deal_id == deal.id
        assert len(self.world.backend.projects) == 1

        again = self.pipeline.mark_won(deal.id, confirmed=True)

        assert again.project.id == won.project.id
        assert again.project_created is False
        assert len(self.world.backend.projects) == 1

    def test_mark_won_requires_confirmation(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError, match="confirmed"):
            self.pipeline.mark_won(deal.id)

        assert self.world.backend.prospects[deal.id]["status"] == "open"
        assert self.world.backend.projects == {}

    def test_move_to_won_goes_through_mark_won(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.move_stage(deal.id, stages.WON)

        moved = self.pipeline.move_stage(deal.id, stages.WON, confirmed=True)

        assert moved.is_won
        assert len(self.world.backend.projects) == 1

    def test_lost_deal_cannot_be_won(self):
        deal = seed_deal(self.world)
        self.pipeline.mark_lost(deal.id, "Went quiet")

        with pytest.raises(ValidationError):
            self.pipeline.mark_won(deal.id, confirmed=True)

    def test_won_deal_cannot_be_lost(self):
        deal = seed_deal(self.world)
        self.pipeline.mark_won(deal.id, confirmed=True)

        with pytest.raises(ValidationError):
            self.pipeline.mark_lost(deal.id, "Changed mind")

    def test_mark_lost_requires_reason(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.mark_lost(deal.id, " ")

    def test_provisioning_failure_is_distinct(self):
        """Deal stays won; the missing project shows up in reconciliation."""
        deal = seed_deal(self.world)
        self.world.transport.fail("POST", "/projects/create", kind="backend", status=500,
                                  message="Storage quota exceeded")

        with pytest.raises(ProjectProvisioningError) as exc_info:
            self.pipeline.mark_won(deal.id, confirmed=True)

        assert exc_info.value.deal_id == deal.id
        assert "Storage quota exceeded" in exc_info.value.message
        assert self.world.backend.prospects[deal.id]["status"] == "won"
        assert [d.id for d in self.pipeline.unprovisioned()] == [deal.id]

        result = self.pipeline.reconcile()

        assert result.success_count == 1
        assert self.pipeline.unprovisioned() == []
        assert len(self.world.backend.projects) == 1

    def test_won_write_that_timed_out_still_provisions_project(self):
        """The backend applied the won write but the reply was lost."""
        deal = seed_deal(self.world, quote_amount=12000)
        self.pipeline.refresh()
        self.world.transport.fail("PATCH", f"/prospects/{deal.id}/stage", kind="timeout")

        won = self.pipeline.mark_won(deal.id, confirmed=True)

        assert won.deal.is_won
        assert won.project_created is True
        assert self.pipeline.get(deal.id).status == "won"
        assert self.world.backend.prospects[deal.id]["status"] == "won"
        assert len(self.world.backend.projects) == 1
        assert self.pipeline.unprovisioned() == []

    def test_won_write_that_never_arrived_leaves_deal_open(self):
        deal = seed_deal(self.world)
        self.world.transport.fail("PATCH", f"/prospects/{deal.id}/stage")

        with pytest.raises(NetworkError):
            self.pipeline.mark_won(deal.id, confirmed=True)

        assert self.pipeline.get(deal.id).status == "open"
        assert self.world.backend.projects == {}

    def test_recover_returns_deal_to_open(self):
        deal = seed_deal(self.world)
        self.pipeline.mark_lost(deal.id, "Budget")

        recovered = self.pipeline.recover(deal.id)

        assert recovered.status == "open"
        assert recovered.lost_reason is None


class TestDealData:
    """Quote, forecast and tag edits."""

    def setup_method(self):
        self.world = build_world()
        self.pipeline = self.world.deals

    def test_set_quote(self):
        deal = seed_deal(self.world)

        updated = self.pipeline.set_quote(deal.id, 12500, discount=500)

        assert updated.quote_amount == 12500
        assert updated.discount_amount == 500

    @pytest.mark.parametrize("amount,discount", [(-1, 0), (1000, -5), (1000, 1500)])
    def test_invalid_quote_rejected(self, amount, discount):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.set_quote(deal.id, amount, discount)

        assert self.pipeline.get(deal.id).quote_amount == 0

    def test_set_forecast(self):
        deal = seed_deal(self.world)

        updated = self.pipeline.set_forecast(
            deal.id, amount=20000, probability=25, expected_closing_date=date(2026, 3, 15)
        )

        assert updated.forecast_amount == 20000
        assert updated.forecast_probability == 25
        assert updated.expected_closing_date == date(2026, 3, 15)
        assert self.world.backend.prospects[deal.id]["expected_closing_date"] == "2026-03-15"

    def test_forecast_probability_bounds(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.set_forecast(deal.id, probability=120)

    def test_add_tags_unions(self):
        deal = seed_deal(self.world, tags=["vip"])

        updated = self.pipeline.add_tags(deal.id, ["vip", "urgent", " "])

        assert updated.tags == ["vip", "urgent"]

    def test_add_tags_requires_a_tag(self):
        deal = seed_deal(self.world)

        with pytest.raises(ValidationError):
            self.pipeline.add_tags(deal.id, ["", "  "])

    def test_set_case_type(self):
        deal = seed_deal(self.world, case_type=None)

        updated = self.pipeline.set_case_type(deal.id, "Study Visa")

        assert updated.case_type == "Study Visa"

    def test_delete(self):
        deal = seed_deal(self.world)
        self.pipeline.refresh()

        self.pipeline.delete(deal.id)

        assert deal.id not in self.world.backend.prospects
        assert deal.id not in self.pipeline.board


class TestPipelineStats:
    """Aggregates over non-lost deals."""

    def setup_method(self):
        self.world = build_world()
        self.pipeline = self.world.deals

    def test_empty_pipeline(self):
        stats = pipeline_stats([])

        assert stats.total_value == 0
        assert stats.avg_deal_size == 0
        assert stats.conversion_rate == 0

    def test_scenario_lost_deal_leaves_every_aggregate(self):
        accepted = seed_deal(self.world, pipeline_stage=stages.QUOTE_ACCEPTED, quote_amount=10000)
        seed_deal(self.world, quote_amount=5000)
        seed_deal(self.world, pipeline_stage=stages.QUOTE_SENT, quote_amount=2000)
        self.pipeline.refresh()

        before = self.pipeline.stats()
        assert before.total_value == pytest.approx(17000)
        assert before.deal_count == 3
        assert before.won_count == 1
        assert before.conversion_rate == pytest.approx(1 / 3)
        assert before.avg_deal_size == pytest.approx(17000 / 3)

        self.pipeline.mark_lost(accepted.id, "Chose another firm")

        after = self.pipeline.stats()
        assert after.total_value == pytest.approx(7000)
        assert after.deal_count == 2
        assert after.won_count == 0
        assert after.conversion_rate == 0

        self.pipeline.recover(accepted.id)

        assert self.pipeline.stats() == before

    def test_won_status_and_late_stages_count_as_won(self):
        seed_deal(self.world, pipeline_stage=stages.ENGAGEMENT_SENT)
        seed_deal(self.world, pipeline_stage=stages.INVOICE_SENT)
        seed_deal(self.world, pipeline_stage=stages.OPPORTUNITY, status="won")
        seed_deal(self.world, pipeline_stage=stages.PAYMENT_DATE_CONFIRMED)
        self.pipeline.refresh()

        stats = self.pipeline.stats()

        assert stats.won_count == 3
        assert stats.conversion_rate == pytest.approx(0.75)

    def test_won_stage_token_is_normalized_to_status(self):
        deal = seed_deal(self.world, pipeline_stage=stages.WON)

        assert deal.status == "won"
        assert deal.is_won

    def test_total_equals_sum_over_non_lost(self):
        amounts = [1200, 3400, 560, 7800]
        deals = [seed_deal(self.world, quote_amount=a) for a in amounts]
        self.pipeline.refresh()
        self.pipeline.mark_lost(deals[1].id, "Ineligible")

        assert self.pipeline.stats().total_value == pytest.approx(sum(amounts) - 3400)
