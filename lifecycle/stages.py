"""
Canonical stage catalogs for the lead, deal and project pipelines.

Stages are plain constants; the ordering lives in the tuples below and
nowhere else.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class StageDefinition:
    key: str
    label: str
    order: int
    is_conversion_stage: bool = False
    is_terminal: bool = False


# ---------------------------------------------------------------------------
# Lead funnel (cold leads, before conversion)
# ---------------------------------------------------------------------------

FIRST_CONTACT = 101
SECOND_CONTACT = 102
THIRD_CONTACT = 103
CONVERT_TO_OPPORTUNITY = 104

LEAD_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(str(FIRST_CONTACT), "First Contact", 1),
    StageDefinition(str(SECOND_CONTACT), "Second Contact", 2),
    StageDefinition(str(THIRD_CONTACT), "Third Contact", 3),
    StageDefinition(str(CONVERT_TO_OPPORTUNITY), "Convert to Opportunity", 4,
                    is_conversion_stage=True, is_terminal=True),
)

LEAD_STAGE_IDS: Tuple[int, ...] = tuple(int(s.key) for s in LEAD_STAGES)

# ---------------------------------------------------------------------------
# Deal pipeline
# ---------------------------------------------------------------------------

OPPORTUNITY = "opportunity"
QUOTE_REQUESTED = "quote_requested"
QUOTE_SENT = "quote_sent"
FIRST_FOLLOW_UP = "first_follow_up"
SECOND_FOLLOW_UP = "second_follow_up"
MID_MONTH_FOLLOW_UP = "mid_month_follow_up"
MONTH_END_FOLLOW_UP = "month_end_follow_up"
NEXT_MONTH_FOLLOW_UP = "next_month_follow_up"
DISCOUNT_REQUESTED = "discount_requested"
QUOTE_ACCEPTED = "quote_accepted"
ENGAGEMENT_SENT = "engagement_sent"
INVOICE_SENT = "invoice_sent"
PAYMENT_DATE_CONFIRMED = "payment_date_confirmed"
WON = "won"

DEAL_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(OPPORTUNITY, "Opportunity", 1),
    StageDefinition(QUOTE_REQUESTED, "Quote Requested", 2),
    StageDefinition(QUOTE_SENT, "Quote Sent", 3),
    StageDefinition(FIRST_FOLLOW_UP, "First Follow-up", 4),
    StageDefinition(SECOND_FOLLOW_UP, "Second Follow-up", 5),
    StageDefinition(MID_MONTH_FOLLOW_UP, "Mid-Month", 6),
    StageDefinition(MONTH_END_FOLLOW_UP, "Month-End", 7),
    StageDefinition(NEXT_MONTH_FOLLOW_UP, "Next Month", 8),
    StageDefinition(DISCOUNT_REQUESTED, "Discount Requested", 9),
    StageDefinition(QUOTE_ACCEPTED, "Quote Accepted", 10),
    StageDefinition(ENGAGEMENT_SENT, "Engagement Sent", 11),
    StageDefinition(INVOICE_SENT, "Invoice Sent", 12),
    StageDefinition(PAYMENT_DATE_CONFIRMED, "Payment Date Confirmed", 13),
    StageDefinition(WON, "Won", 14, is_conversion_stage=True, is_terminal=True),
)

DEAL_STAGE_ORDER: Tuple[str, ...] = tuple(s.key for s in DEAL_STAGES)

# Late-funnel stages counted as won in the conversion rate
WON_STAGES = frozenset([QUOTE_ACCEPTED, ENGAGEMENT_SENT, INVOICE_SENT])

# ---------------------------------------------------------------------------
# Project delivery workflow
# ---------------------------------------------------------------------------

NEW_CLIENT = 1
DOCUMENT_PREPARATION = 2
SUBMISSION = 3
SUBMISSION_STATUS = 4
TRACKING = 5
COMPLETED = 6

PROJECT_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(str(NEW_CLIENT), "New Client", 1),
    StageDefinition(str(DOCUMENT_PREPARATION), "Document Preparation", 2),
    StageDefinition(str(SUBMISSION), "Submission", 3),
    StageDefinition(str(SUBMISSION_STATUS), "Submission Status", 4),
    StageDefinition(str(TRACKING), "Tracking", 5),
    StageDefinition(str(COMPLETED), "Completed", 6, is_terminal=True),
)

PROJECT_STAGE_LABELS: Dict[int, str] = {int(s.key): s.label for s in PROJECT_STAGES}

# Backward moves the workflow allows: current stage -> previous stage
PROJECT_BACK_MOVES: Dict[int, int] = {
    SUBMISSION_STATUS: SUBMISSION,
    TRACKING: SUBMISSION_STATUS,
}


def lead_stage(stage_id: int) -> Optional[StageDefinition]:
    for stage in LEAD_STAGES:
        if stage.key == str(stage_id):
            return stage
    return None


def next_lead_stage(stage_id: int) -> Optional[int]:
    """Next cold-lead stage id, or None at the conversion stage."""
    idx = LEAD_STAGE_IDS.index(stage_id)
    if LEAD_STAGES[idx].is_terminal:
        return None
    return LEAD_STAGE_IDS[idx + 1]


def deal_stage_index(stage: str) -> int:
    return DEAL_STAGE_ORDER.index(stage)


def is_deal_stage(stage: str) -> bool:
    return stage in DEAL_STAGE_ORDER


def stage_progress(stage: int) -> int:
    """Progress percentage based on the stage's position in the workflow."""
    total = len(PROJECT_STAGES)
    if stage < NEW_CLIENT:
        return 0
    return int((min(stage, total) / total) * 100)
