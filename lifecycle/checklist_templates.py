"""Document checklist templates seeded onto new projects, keyed by case type."""
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ChecklistRequirement:
    name: str
    category: str
    is_required: bool = True
    note: Optional[str] = None


R = ChecklistRequirement

CHECKLIST_TEMPLATES: Dict[str, List[ChecklistRequirement]] = {
    "Visitors Visa 11(1)": [
        R("Passport copy", "Identity Documents"),
        R("Letter of motivation for the visitors visa", "Letters", note="Will be drafted by us"),
        R("Letter of support for the visitors visa", "Letters", note="Will be drafted by us"),
        R("Passport + visa of Sponsor", "Sponsor Documents"),
        R("3 months Bank statement of Sponsor", "Financial Documents"),
        R("Proof of address", "Supporting Documents"),
        R("Return Flight ticket reservation", "Travel Documents", note="We will assist"),
    ],
    "Visitors Visa Extension": [
        R("Passport copy", "Identity Documents"),
        R("Current visa/entry stamp", "Identity Documents"),
        R("Letter of motivation for extension", "Letters", note="We will draft. Just provide reason for extension"),
        R("Letter of support from sponsor", "Letters"),
        R("Letter of consent by parent", "Letters", is_required=False, note="If applicable"),
        R("Passport + visa of Parent/Sponsor", "Sponsor Documents"),
        R("3 months Bank statement of Parent/Sponsor", "Financial Documents"),
        R("Proof of address", "Supporting Documents"),
        R("Return Flight ticket reservation", "Travel Documents"),
    ],
    "Critical Skills Work Visa": [
        R("Application form", "Application Forms", note="We assist"),
        R("Copy of Passport of Applicant", "Identity Documents"),
        R("Current visa", "Identity Documents"),
        R("Medical report", "Medical Documents", note="Attend GP or medical practitioner for general check-up"),
        R("Radiology waiver", "Medical Documents"),
        R("Police clearance certificate", "Background Checks",
          note="From each country lived in for 12+ months (18+ years only)"),
        R("Marriage certificate", "Personal Documents", is_required=False, note="If applicable"),
        R("Birth certificate", "Personal Documents"),
        R("Qualifications", "Educational Documents"),
        R("CV", "Professional Documents", note="Word version"),
        R("Reference letters (at least 2)", "Professional Documents"),
        R("SAQA Evaluation Certificate", "Educational Documents", note="Foreign qualifications only"),
        R("Proof of Registration with SAQA accredited Body", "Professional Documents", note="We assist"),
        R("Letter from SAQA accredited body confirming Skill", "Professional Documents", note="We assist"),
        R("Contract of employment / Offer of employment", "Employment Documents"),
        R("Repatriation undertaking from employer", "Employment Documents", note="See template"),
        R("Company registration documents (CIPC)", "Employment Documents"),
        R("Letter of good standing from Department of Labour", "Employment Documents"),
        R("3 Months bank statement", "Financial Documents", note="Balance of R8500 reflecting"),
    ],
    "Accompanying Dependent (Spouse)": [
        R("Application form", "Application Forms", note="We assist"),
        R("2 passport sized photos", "Identity Documents"),
        R("Passport of Applicant", "Identity Documents"),
        R("Current visa", "Identity Documents"),
        R("Medical Report", "Medical Documents"),
        R("Radiological waiver", "Medical Documents"),
        R("Police clearance certificate from country of origin", "Background Checks"),
        R("Letter of Support from Spouse", "Letters", note="We will draft it"),
        R("Passport + Visa copy of Spouse", "Spouse Documents"),
        R("Marriage Certificate / Notarial Contract OR Life Partnership Agreement", "Relationship Documents"),
        R("Proof of address", "Supporting Documents", note="Lease agreement, utility bills, or WiFi bill"),
        R("Spouse 3 months' bank statement", "Financial Documents", note="Minimum balance of R8500"),
    ],
    "Spouse Visa": [
        R("Application form", "Application Forms", note="We assist"),
        R("2 passport sized photos", "Identity Documents"),
        R("Copy of Passport of Applicant", "Identity Documents"),
        R("Current visa", "Identity Documents"),
        R("Medical Report", "Medical Documents"),
        R("Radiology waiver", "Medical Documents"),
        R("Police clearance certificate", "Background Checks",
          note="From each country lived in for 12+ months (18+ years only)"),
        R("Letter of Support from Spouse", "Letters", note="We will draft it"),
        R("ID of Spouse", "Spouse Documents"),
    ],
    "Study Visa": [
        R("Valid passport (original)", "Identity"),
        R("Passport photos (2)", "Identity"),
        R("Completed BI-1738 form", "Application Forms"),
        R("Letter of acceptance from institution", "Education"),
        R("Proof of registration", "Education"),
        R("Proof of payment of tuition", "Financial"),
        R("Proof of medical cover", "Medical"),
        R("Financial proof (sponsor/self)", "Financial"),
        R("Police clearance certificate", "Background Checks"),
        R("Medical certificate", "Medical"),
        R("Radiological report", "Medical"),
    ],
    "Relatives Visa": [
        R("Valid passport (original)", "Identity"),
        R("Passport photos (2)", "Identity"),
        R("Completed BI-1740 form", "Application Forms"),
        R("Proof of relationship", "Relationship"),
        R("Sponsor's ID/passport copy", "Sponsor Documents"),
        R("Sponsor's proof of residence", "Sponsor Documents"),
        R("Sponsor's financial proof", "Financial"),
        R("Undertaking by sponsor", "Sponsor Documents"),
        R("Police clearance certificate", "Background Checks"),
        R("Medical certificate", "Medical"),
        R("Radiological report", "Medical"),
    ],
}


def template_for(case_type: Optional[str]) -> List[ChecklistRequirement]:
    """Checklist rows for a case type; unknown case types have none."""
    if not case_type:
        return []
    return list(CHECKLIST_TEMPLATES.get(case_type, []))
