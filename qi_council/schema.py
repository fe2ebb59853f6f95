"""Response schemas. Raw model output is validated here into immutable records.

Validation is strict about shape: strings must be strings and lists must be
lists. Unknown keys are ignored, so models may add commentary fields freely.
"""

import logging
from enum import Enum
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    APPROVE = "APPROVE"
    REVISE = "REVISE"
    BLOCK = "BLOCK"


class ValidationError(Exception):
    """Raised when a model payload does not match the expected schema."""

    def __init__(self, issues: list[str], source: str = "") -> None:
        self.issues = issues
        self.source = source
        prefix = f"[{source}] " if source else ""
        super().__init__(f"{prefix}Schema validation failed: {'; '.join(issues)}")


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class Decision(_Record):
    """The council's answer to a scenario."""

    summary: StrictStr
    required_changes: tuple[StrictStr, ...] = Field(alias="requiredChanges")
    risk_flags: tuple[StrictStr, ...] = Field(alias="riskFlags")
    universal_benefits: tuple[StrictStr, ...] = Field(alias="universalBenefits")
    verdict: Verdict
    served_by: StrictStr = Field(default="", alias="servedBy")

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("summary must not be blank")
        return value


# -- Deliberation phase payloads --------------------------------------------


class BriefPayload(_Record):
    """Initial brief: the agent's Decision fields plus its independent observations."""

    agent_id: StrictStr = Field(default="", alias="agentId")
    summary: StrictStr = ""
    verdict: Verdict | None = None
    observations: tuple[StrictStr, ...] = ()
    recommendations: tuple[StrictStr, ...] = ()
    urgency: StrictStr = "medium"
    confidence: float = Field(default=50.0, ge=0, le=100)
    heuristic: bool = False


class AgentPoint(_Record):
    agent: StrictStr
    point: StrictStr


class BlindSpot(_Record):
    agent: StrictStr
    concern: StrictStr


class CritiquePayload(_Record):
    agent_id: StrictStr = Field(default="", alias="agentId")
    agreement: AgentPoint = Field(alias="agreementWith")
    blind_spot: BlindSpot = Field(alias="blindSpotFlag")
    gap_addressed: StrictStr = Field(alias="gapAddress")
    heuristic: bool = False


class Conflict(_Record):
    between: tuple[StrictStr, ...]
    nature: StrictStr


class TradeOff(_Record):
    we_accept: StrictStr = Field(alias="weAccept")
    we_forgo: StrictStr = Field(alias="weForgo")
    rationale: StrictStr


class Attribution(_Record):
    decision: StrictStr
    source_agent: StrictStr = Field(alias="sourceAgent")
    contribution: StrictStr = ""


class UnifiedPolicy(_Record):
    immediate_actions: tuple[StrictStr, ...] = Field(default=(), alias="immediateActions")
    short_term_changes: tuple[StrictStr, ...] = Field(default=(), alias="shortTermChanges")
    long_term_reforms: tuple[StrictStr, ...] = Field(default=(), alias="longTermReforms")
    attributions: tuple[Attribution, ...] = ()


class OverruledObjection(_Record):
    from_agent: StrictStr = Field(alias="from")
    objection: StrictStr
    reason: StrictStr


class SynthesisPayload(_Record):
    summary: StrictStr = ""
    conflicts: tuple[Conflict, ...] = Field(default=(), alias="identifiedConflicts")
    trade_offs: tuple[TradeOff, ...] = Field(default=(), alias="tradeOffs")
    unified_policy: UnifiedPolicy = Field(alias="unifiedPolicy")
    overruled_objections: tuple[OverruledObjection, ...] = Field(default=(), alias="overruledObjections")
    verdict: Verdict
    served_by: StrictStr = Field(default="", alias="servedBy")
    heuristic: bool = False


class Counterfactual(_Record):
    agent: StrictStr
    outcome: StrictStr
    flaw: StrictStr


class ReflectionPayload(_Record):
    counterfactuals: tuple[Counterfactual, ...]
    collective_advantage: StrictStr = Field(alias="collectiveAdvantage")
    key_insight: StrictStr = Field(default="", alias="keyInsight")
    served_by: StrictStr = Field(default="", alias="servedBy")
    heuristic: bool = False


# -- Advisory payloads -------------------------------------------------------


class DistressLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class AdvisoryNote(_Record):
    """Context from one advisory agent, gathered before the briefs."""

    agent_id: StrictStr = Field(default="", alias="agentId")
    summary: StrictStr
    dominant_emotion: StrictStr | None = Field(default=None, alias="dominantEmotion")
    distress_level: DistressLevel | None = Field(default=None, alias="distressLevel")
    relevant_signals: tuple[StrictStr, ...] = Field(default=(), alias="relevantSignals")
    policy_context: StrictStr = Field(default="", alias="policyContext")


# -- Veto payloads -----------------------------------------------------------


class VetoPayload(_Record):
    concerns: tuple[StrictStr, ...] = Field(default=(), alias="detectedConcerns")
    veto_reason: StrictStr | None = Field(default=None, alias="vetoReason")


class VetoReviewPayload(_Record):
    escalate: StrictBool = Field(alias="escalateToVeto")
    veto_reason: StrictStr | None = Field(default=None, alias="vetoReason")
    additional_concerns: tuple[StrictStr, ...] = Field(default=(), alias="additionalConcerns")


# -- Validation entry points -------------------------------------------------

_ModelT = TypeVar("_ModelT", bound=BaseModel)

# Keys the orchestrator stamps; a model never gets to set them.
_STAMPED_KEYS = ("servedBy", "served_by", "agentId", "agent_id", "heuristic")


def _issues(exc: pydantic.ValidationError) -> list[str]:
    issues = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "<root>"
        issues.append(f"{location}: {err['msg']}")
    return issues


def validate_payload(model_cls: type[_ModelT], raw: Any, source: str = "", **stamps: Any) -> _ModelT:
    """Validate a raw dict against model_cls and stamp orchestrator-owned fields.

    Raises:
        ValidationError: With one issue string per failing field.
    """
    if not isinstance(raw, dict):
        raise ValidationError([f"<root>: expected a JSON object, got {type(raw).__name__}"], source)
    payload = {key: value for key, value in raw.items() if key not in _STAMPED_KEYS}
    payload.update(stamps)
    try:
        return model_cls.model_validate(payload)
    except pydantic.ValidationError as exc:
        issues = _issues(exc)
        logger.debug("Validation of %s from %s failed: %s", model_cls.__name__, source or "?", issues)
        raise ValidationError(issues, source) from exc


def validate_decision(raw: Any, served_by: str) -> Decision:
    """Validate raw model output as a Decision served by served_by."""
    return validate_payload(Decision, raw, served_by, served_by=served_by)
