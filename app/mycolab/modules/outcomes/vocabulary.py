from __future__ import annotations

from dataclasses import dataclass

OUTCOME_CATEGORIES = ("success", "failure", "neutral", "partial")


@dataclass(frozen=True)
class OutcomeOption:
    code: str
    label: str
    category: str
    description: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "label": self.label,
            "category": self.category,
            "description": self.description,
        }


GROW_OUTCOMES: tuple[OutcomeOption, ...] = (
    OutcomeOption("completed_success", "Completed Successfully", "success", "Harvested with expected yield"),
    OutcomeOption("completed_excellent", "Excellent Harvest", "success", "Yield above expectations"),
    OutcomeOption("completed_low_yield", "Low Yield", "partial", "Harvested, but below expected yield"),
    OutcomeOption("contamination_early", "Contamination (Early)", "failure", "Contaminated during spawning"),
    OutcomeOption("contamination_mid", "Contamination (Mid)", "failure", "Contaminated during colonization"),
    OutcomeOption("contamination_late", "Contamination (Late)", "failure", "Contaminated during fruiting"),
    OutcomeOption("stalled_colonization", "Stalled Colonization", "failure", "Mycelium stopped growing"),
    OutcomeOption("stalled_fruiting", "Failed to Fruit", "failure", "Colonized but never pinned"),
    OutcomeOption("genetics_failure", "Genetics Failure", "failure", "Poor or unstable genetics"),
    OutcomeOption("aborted_user", "Aborted by User", "neutral", "Stopped intentionally"),
    OutcomeOption("aborted_environmental", "Environmental Issue", "neutral", "Power outage, temperature swing, etc."),
    OutcomeOption("experiment_ended", "Experiment Ended", "neutral", "Planned end of a test run"),
    OutcomeOption("transferred_out", "Transferred Out", "neutral", "Moved to someone else"),
)

CULTURE_OUTCOMES: tuple[OutcomeOption, ...] = (
    OutcomeOption("used_up", "Used Up", "success", "Fully consumed for inoculations"),
    OutcomeOption("transferred", "Transferred", "success", "Transferred to new media"),
    OutcomeOption("expanded", "Expanded", "success", "Expanded into more cultures"),
    OutcomeOption("contamination", "Contaminated", "failure", "Culture became contaminated"),
    OutcomeOption("senescence", "Senescence", "failure", "Culture weakened with age"),
    OutcomeOption("failed_germination", "Failed Germination", "failure", "Spores never germinated"),
    OutcomeOption("dried_out", "Dried Out", "failure", "Media dried out"),
    OutcomeOption("expired_unused", "Expired Unused", "neutral", "Expired before it was used"),
    OutcomeOption("discarded_user", "Discarded", "neutral", "Discarded by choice"),
    OutcomeOption("gifted", "Gifted", "neutral", "Given away"),
    OutcomeOption("partially_used", "Partially Used", "partial", "Some used, remainder disposed"),
)

OUTCOME_VOCABULARIES: dict[str, dict[str, OutcomeOption]] = {
    "grow": {o.code: o for o in GROW_OUTCOMES},
    "culture": {o.code: o for o in CULTURE_OUTCOMES},
}

CONTAMINATION_TYPES: dict[str, str] = {
    "trichoderma": "Trichoderma (Green Mold)",
    "cobweb": "Cobweb Mold",
    "black_mold": "Black Mold",
    "penicillium": "Penicillium (Blue-Green Mold)",
    "aspergillus": "Aspergillus",
    "bacterial": "Bacterial",
    "lipstick": "Lipstick Mold",
    "wet_spot": "Wet Spot",
    "yeast": "Yeast",
    "unknown": "Unknown",
}

SUSPECTED_CAUSES: dict[str, str] = {
    "sterilization_failure": "Sterilization Failure",
    "inoculation_technique": "Inoculation Technique",
    "contaminated_source": "Contaminated Source",
    "environmental": "Environmental",
    "substrate_issue": "Substrate Issue",
    "equipment": "Equipment",
    "user_error": "User Error",
}


def options_for(entity_type: str) -> dict[str, OutcomeOption] | None:
    return OUTCOME_VOCABULARIES.get((entity_type or "").strip().lower())


def is_contamination_code(outcome_code: str) -> bool:
    return "contamination" in (outcome_code or "")
