"""
Delivery workflow for won cases.

    1 New Client -> 2 Document Preparation -> 3 Submission
      -> 4 Submission Status -> 5 Tracking -> 6 Completed

Every forward move is checked by a guard before anything is written; the
stage bump and the data that justified it go out in a single write.
"""
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel

from integrations.crm import CrmClient
from lifecycle import stages
from lifecycle.board import Board
from lifecycle.checklist import ChecklistGate
from lifecycle.errors import ValidationError
from lifecycle.models import Project, TrackingInfo

SUBMISSION_STATUSES = ("on_hold", "compiling", "submitted")


class ProjectWorkflow:
    """Single authority for project stage transitions, shared by every view of a project."""

    def __init__(self, client: CrmClient, gate: ChecklistGate):
        self.client = client
        self.gate = gate
        self.board: Board[Project] = Board("project", client.get_project)

    def refresh(self) -> List[Project]:
        self.board.replace_all(self.client.list_projects())
        return self.board.values()

    def get(self, project_id: str) -> Project:
        return self.board.get(project_id)

    def blocker(self, project: Project) -> Optional[str]:
        """Why the project cannot advance from its current stage, or None."""
        stage = project.stage
        if stage == stages.NEW_CLIENT:
            return None
        if stage == stages.DOCUMENT_PREPARATION:
            return None if self.gate.is_complete(project.id) else "Required documents missing"
        if stage == stages.SUBMISSION:
            if project.supervisor_reviewed and project.submitted:
                return None
            return "Tasks incomplete"
        if stage == stages.SUBMISSION_STATUS:
            if project.submission_status == "submitted":
                return None
            return "Submission has not been submitted"
        if stage == stages.TRACKING:
            missing = project.tracking.missing()
            if missing:
                return f"Tracking information missing: {', '.join(missing)}"
            return None
        return "Project is already completed"

    def advance(self, project_id: str) -> Project:
        """Move the project one stage forward if its guard holds."""
        project = self.get(project_id)
        self._check(project, self.blocker(project))
        return self._write(project, project.stage + 1)

    def complete_introduction(self, project_id: str) -> Project:
        project = self.get(project_id)
        if project.stage != stages.NEW_CLIENT:
            self._reject(project, "Introduction is already complete")
        return self._write(project, stages.DOCUMENT_PREPARATION)

    def back(self, project_id: str) -> Project:
        """Step back from Submission Status or Tracking; no other stage goes back."""
        project = self.get(project_id)
        previous = stages.PROJECT_BACK_MOVES.get(project.stage)
        if previous is None:
            self._reject(project, f"Cannot go back from {stages.PROJECT_STAGE_LABELS[project.stage]}")
        return self._write(project, previous)

    def update_tasks(self, project_id: str, supervisor_reviewed: Optional[bool] = None,
                     submitted: Optional[bool] = None) -> Project:
        """Persist the submission task flags; the stage is left alone."""
        project = self.get(project_id)
        self._check_open(project)
        changes: Dict[str, Any] = {}
        if supervisor_reviewed is not None:
            changes["supervisor_reviewed"] = supervisor_reviewed
        if submitted is not None:
            changes["submitted"] = submitted
        if not changes:
            return project
        return self._save(project, changes)

    def set_submission_status(self, project_id: str, status: str) -> Project:
        """
        Record the submission status.

        "submitted" at Submission Status moves the project to Tracking in the
        same write; other values are stored and the stage stays put.
        """
        project = self.get(project_id)
        if status not in SUBMISSION_STATUSES:
            self._reject(project, f"Unknown submission status {status!r}")
        self._check_open(project)
        if project.stage < stages.SUBMISSION_STATUS:
            self._reject(project, "Tasks incomplete")

        if status == "submitted" and project.stage == stages.SUBMISSION_STATUS:
            return self._write(project, stages.TRACKING, submission_status=status)
        return self._save(project, {"submission_status": status})

    def save_tracking(self, project_id: str, tracking: Union[TrackingInfo, Dict[str, Any]],
                      finalize: bool = False) -> Project:
        """
        Merge tracking details into the project.

        Args:
            project_id: Project to update
            tracking: Tracking fields; blank values keep what is stored
            finalize: Complete the project; all six fields must be present

        Returns:
            Updated project
        """
        project = self.get(project_id)
        self._check_open(project)
        if project.stage < stages.SUBMISSION_STATUS:
            self._reject(project, "Tracking is captured after submission")

        if isinstance(tracking, TrackingInfo):
            updates = tracking.model_dump(exclude_none=True)
        else:
            updates = TrackingInfo.model_validate(tracking).model_dump(exclude_none=True)
        merged = project.tracking.model_copy(update=updates)

        if not finalize:
            return self._save(project, {"tracking": merged})

        missing = merged.missing()
        if missing:
            self._reject(project, f"Tracking information missing: {', '.join(missing)}")
        if project.stage != stages.TRACKING:
            self._reject(project, "Submission has not been submitted")
        return self._write(project, stages.COMPLETED, tracking=merged)

    def delete(self, project_id: str) -> None:
        self.client.delete_project(project_id)
        self.board.drop(project_id)
        logger.info(f"Project {project_id} deleted")

    def _check_open(self, project: Project) -> None:
        if project.is_completed:
            self._reject(project, "Project is already completed")

    def _check(self, project: Project, blocker: Optional[str]) -> None:
        if blocker:
            self._reject(project, blocker)

    def _reject(self, project: Project, message: str) -> None:
        logger.info(f"Project {project.id} at stage {project.stage}: {message}")
        raise ValidationError(message, project.id)

    def _write(self, project: Project, stage: int, **data: Any) -> Project:
        changes: Dict[str, Any] = {
            **data,
            "stage": stage,
            "status": stages.PROJECT_STAGE_LABELS[stage],
            "progress": stages.stage_progress(stage),
        }
        updated = self._save(project, changes)
        logger.info(f"Project {project.id}: stage {project.stage} -> {updated.stage}")
        return updated

    def _save(self, project: Project, changes: Dict[str, Any]) -> Project:
        payload = {
            key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
            for key, value in changes.items()
        }
        return self.board.mutate(
            project.id, changes, lambda: self.client.update_project(project.id, payload)
        )
