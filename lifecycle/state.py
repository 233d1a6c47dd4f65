from typing import TypedDict, Optional, List

from lifecycle.errors import CaseError
from lifecycle.models import Deal, Lead, Project

class DealConversionState(TypedDict, total=False):
    """State shape for the lead → deal conversion flow."""
    lead: Lead
    deal: Optional[Deal]
    created: bool
    errors: List[str]
    failure: Optional[CaseError]      # first error, re-raised to the caller

class ProjectProvisionState(TypedDict, total=False):
    """State shape for the won deal → project provisioning flow."""
    deal: Deal
    project: Optional[Project]
    created: bool
    checklist_seeded: int
    notifications: List[str]          # Slack message ids
    errors: List[str]
    failure: Optional[CaseError]
