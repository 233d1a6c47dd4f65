import os
import sys
from unittest.mock import patch

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from helpers import build_world, seed_deal, seed_lead, seed_project
from lifecycle import stages
from lifecycle.checklist_templates import template_for
from lifecycle.conversion import default_folder
from lifecycle.errors import PartialBatchError, ProjectProvisioningError
from lifecycle.models import Deal


class TestLeadToDeal:
    """Idempotent lead -> deal conversion."""

    def setup_method(self):
        self.world = build_world()
        self.bridge = self.world.bridge

    def test_creates_deal_at_opportunity(self):
        lead = seed_lead(self.world, company="Acme Imports", assigned_employee_id="emp-2")

        conversion = self.bridge.convert_to_deal(lead)

        deal = conversion.record
        assert conversion.created is True
        assert deal.pipeline_stage == stages.OPPORTUNITY
        assert deal.status == "open"
        assert deal.email == "thandi@example.com"
        assert deal.company == "Acme Imports"
        assert deal.assigned_employee_id == "emp-2"

    def test_second_conversion_returns_existing_deal(self):
        lead = seed_lead(self.world)
        first = self.bridge.convert_to_deal(lead)

        second = self.bridge.convert_to_deal(lead)

        assert second.created is False
        assert second.record.id == first.record.id
        assert len(self.world.backend.prospects) == 1


class TestWonDealToProject:
    """Exactly-once project provisioning."""

    def setup_method(self):
        self.world = build_world()
        self.bridge = self.world.bridge

    def _won_deal(self, **fields):
        return seed_deal(self.world, status="won", pipeline_stage=stages.WON, **fields)

    def test_creates_project_with_folder_and_checklist(self):
        deal = self._won_deal()

        conversion = self.bridge.create_project(deal)

        project = conversion.record
        assert conversion.created is True
        assert project.stage == stages.NEW_CLIENT
        assert project.deal_id == deal.id
        assert project.name == "Priya Naidoo - Spouse Visa"
        assert project.folder == f"Clients/priya-naidoo-{deal.id}"
        assert len(self.world.gate.items(project.id)) == len(template_for("Spouse Visa"))

    def test_exactly_once_per_deal(self):
        deal = self._won_deal()
        first = self.bridge.create_project(deal)

        second = self.bridge.create_project(deal)

        assert second.created is False
        assert second.record.id == first.record.id
        assert len(self.world.backend.projects) == 1
        assert len(self.world.backend.checklist) == len(template_for("Spouse Visa"))

    def test_adopts_project_created_by_a_concurrent_writer(self):
        deal = self._won_deal()
        existing = seed_project(self.world, deal_id=deal.id)

        with patch.object(self.world.client, "find_project_for_deal", side_effect=[None, existing]):
            conversion = self.bridge.create_project(deal)

        assert conversion.created is False
        assert conversion.record.id == existing.id
        assert len(self.world.backend.projects) == 1

    def test_claim_in_progress_blocks_duplicate_creation(self):
        deal = self._won_deal()
        self.world.idem.check_and_set(f"project:{deal.id}")

        with pytest.raises(ProjectProvisioningError, match="already in progress"):
            self.bridge.create_project(deal)

        assert self.world.backend.projects == {}

    def test_creation_failure_alerts_and_releases_claim(self):
        deal = self._won_deal()
        self.world.transport.fail("POST", "/projects/create", kind="backend", status=500,
                                  message="Storage quota exceeded")

        with patch.object(self.world.notifier, "send_provisioning_alert") as mock_alert:
            mock_alert.return_value = "mock_ts"
            with pytest.raises(ProjectProvisioningError) as exc_info:
                self.bridge.create_project(deal)

        assert exc_info.value.project_id is None
        mock_alert.assert_called_once()
        assert "Storage quota exceeded" in mock_alert.call_args[0][1]

        assert self.bridge.create_project(deal).created is True

    def test_lookup_network_failure_is_provisioning_error(self):
        deal = self._won_deal()
        self.world.transport.fail("GET", "/projects")

        with pytest.raises(ProjectProvisioningError):
            self.bridge.create_project(deal)

        assert self.world.backend.projects == {}

    def test_failed_seeding_is_repaired_on_next_call(self):
        deal = self._won_deal()
        self.world.transport.fail("POST", r"/projects/[^/]+/checklist")

        with pytest.raises(ProjectProvisioningError) as exc_info:
            self.bridge.create_project(deal)

        project_id = exc_info.value.project_id
        assert project_id is not None
        assert self.world.gate.items(project_id) == []

        conversion = self.bridge.create_project(deal)

        assert conversion.created is False
        assert conversion.record.id == project_id
        assert len(self.world.gate.items(project_id)) == len(template_for("Spouse Visa"))

    def test_team_notified_only_for_new_projects(self):
        deal = self._won_deal()

        with patch.object(self.world.notifier, "send_deal_won") as mock_won:
            mock_won.return_value = "mock_ts"
            self.bridge.create_project(deal)
            self.bridge.create_project(deal)

        mock_won.assert_called_once()

    def test_default_folder_falls_back_to_company(self):
        deal = Deal(id="42", first_name="", last_name="", company="Ndlovu & Sons")

        assert default_folder(deal) == "Clients/ndlovu-sons-42"


class TestReconciliation:
    """Every won deal should have a project."""

    def setup_method(self):
        self.world = build_world()
        self.bridge = self.world.bridge

    def test_unprovisioned_lists_won_deals_without_project(self):
        provisioned = seed_deal(self.world, status="won")
        missing = seed_deal(self.world, status="won")
        open_deal = seed_deal(self.world)
        seed_project(self.world, deal_id=provisioned.id)

        result = self.bridge.unprovisioned([provisioned, missing, open_deal])

        assert [d.id for d in result] == [missing.id]

    def test_reconcile_reports_partial_counts(self):
        first = seed_deal(self.world, status="won")
        second = seed_deal(self.world, status="won")
        self.world.transport.fail("POST", "/projects/create", kind="backend", status=500, message="Timeout")

        with pytest.raises(PartialBatchError) as exc_info:
            self.bridge.reconcile([first, second])

        result = exc_info.value.result
        assert result.success_count == 1
        assert result.failure_count == 1
        assert first.id in result.failed
        assert [d.id for d in self.bridge.unprovisioned([first, second])] == [first.id]
