"""
Document checklist gate.

Required items block the move out of Document Preparation until every one
of them is received; optional items never block.
"""
from datetime import date
from typing import List, Optional

from loguru import logger

from integrations.crm import CrmClient
from integrations.slack import SlackNotifier
from lifecycle.checklist_templates import template_for
from lifecycle.errors import BatchResult, CaseError, raise_for_batch
from lifecycle.models import ChecklistItem, Project


def missing_required_items(items: List[ChecklistItem]) -> List[ChecklistItem]:
    return [i for i in items if i.is_required and not i.is_received]


def checklist_complete(items: List[ChecklistItem]) -> bool:
    """True when there are no required items or all of them are received."""
    return not missing_required_items(items)


class ChecklistGate:

    def __init__(self, client: CrmClient, notifier: Optional[SlackNotifier] = None):
        self.client = client
        self.notifier = notifier

    def items(self, project_id: str) -> List[ChecklistItem]:
        return self.client.list_checklist(project_id)

    def is_complete(self, project_id: str) -> bool:
        return checklist_complete(self.items(project_id))

    def missing_required(self, project_id: str) -> List[ChecklistItem]:
        return missing_required_items(self.items(project_id))

    def mark_received(self, item_id: str, received: bool = True, on: Optional[date] = None) -> ChecklistItem:
        """Record a document as received (or un-received)."""
        received_date = (on or date.today()).isoformat() if received else None
        return self.client.update_checklist_item(
            item_id, {"is_received": received, "received_date": received_date}
        )

    def seed(self, project: Project) -> int:
        """
        Create checklist rows from the project's case-type template.

        The case type is read from the project. Template rows the project
        already has (matched by name) are left alone, so seeding can be
        repeated after a partial failure and only fills the gaps.

        Returns:
            Number of rows created
        """
        template = template_for(project.case_type)
        if not template:
            logger.warning(f"No checklist template for case type {project.case_type!r} (project {project.id})")
            return 0

        existing = {item.name for item in self.items(project.id)}
        missing = [req for req in template if req.name not in existing]
        if not missing:
            logger.info(f"Checklist already seeded for project {project.id}")
            return 0

        rows = [
            {
                "category": req.category,
                "name": req.name,
                "is_required": req.is_required,
                "notes": req.note,
            }
            for req in missing
        ]
        created = self.client.create_checklist(project.id, rows)
        logger.info(f"Seeded {len(created)} checklist items for project {project.id}")
        return len(created)

    def send_reminder(self, project_id: str, today: Optional[date] = None) -> BatchResult:
        """
        Stamp ``reminder_sent_date`` on every missing required document.

        Items already stamped today are skipped. The project stage is never
        touched.

        Raises:
            PartialBatchError: at least one item could not be stamped
        """
        today = today or date.today()
        result = BatchResult()
        stamped: List[str] = []

        for item in self.missing_required(project_id):
            if item.reminder_sent_date == today:
                result.skip(item.id)
                continue
            try:
                self.client.update_checklist_item(item.id, {"reminder_sent_date": today.isoformat()})
            except CaseError as e:
                result.fail(item.id, e.message)
                continue
            result.ok(item.id)
            stamped.append(item.name)

        logger.info(
            f"Reminder for project {project_id}: {result.success_count} stamped, "
            f"{len(result.skipped)} already reminded, {result.failure_count} failed"
        )
        if stamped and self.notifier:
            self.notifier.send_document_reminder(project_id, stamped)

        return raise_for_batch("send_reminder", result)
