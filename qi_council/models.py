"""Dataclasses for the council advisory pipeline."""

from dataclasses import dataclass, field
from enum import Enum

from qi_council.schema import (
    AdvisoryNote,
    BriefPayload,
    CritiquePayload,
    Decision,
    DistressLevel,
    ReflectionPayload,
    SynthesisPayload,
    Verdict,
)

_POLICY_CONTEXT_CHARS = 300


@dataclass(frozen=True)
class ScenarioInput:
    """A pilot policy scenario submitted for advice.

    Raises ValueError if a required description is missing or blank.
    """

    primary_objective: str
    current_state_description: str
    target_state_description: str
    known_harms: str | None = None
    community_voice: str | None = None
    detected_signals: str | None = None
    pilot_id: str | None = None

    def __post_init__(self) -> None:
        for name in ("primary_objective", "current_state_description", "target_state_description"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"ScenarioInput.{name} is required and must be non-blank")

    def as_prompt(self) -> str:
        """Render the scenario as the case-file block shared by every prompt."""
        lines = [
            f"PRIMARY OBJECTIVE: {self.primary_objective}",
            f"CURRENT STATE: {self.current_state_description}",
            f"TARGET STATE: {self.target_state_description}",
        ]
        if self.known_harms:
            lines.append(f"KNOWN HARMS: {self.known_harms}")
        if self.community_voice:
            lines.append(f"COMMUNITY VOICE: {self.community_voice}")
        if self.detected_signals:
            lines.append(f"DETECTED SIGNALS: {self.detected_signals}")
        return "\n".join(lines)

    def combined_text(self) -> str:
        """All scenario fields joined into one lowercase string for keyword scans."""
        parts = [
            self.primary_objective,
            self.current_state_description,
            self.target_state_description,
            self.known_harms or "",
            self.community_voice or "",
            self.detected_signals or "",
        ]
        return " ".join(parts).lower()


@dataclass(frozen=True)
class AgentVote:
    agent_id: str
    decision: Decision | None
    error: str | None = None  # set iff decision is None
    latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    brief: BriefPayload | None = None


@dataclass(frozen=True)
class VetoVote:
    decision: Decision
    veto_triggered: bool
    veto_reason: str | None = None
    detected_concerns: tuple[str, ...] = ()
    latency_ms: float = 0.0
    escalated: bool = False


class Phase(str, Enum):
    INITIAL_BRIEFS = "initial_briefs"
    CROSS_CRITIQUE = "cross_critique"
    SYNTHESIS = "synthesis"
    REFLECTION = "reflection"


class ConsensusLevel(str, Enum):
    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    PLURALITY = "plurality"
    SINGLE = "single"


@dataclass(frozen=True)
class PhaseRecord:
    phase: Phase
    votes: tuple[AgentVote, ...] = ()
    briefs: tuple[BriefPayload, ...] = ()
    critiques: tuple[CritiquePayload, ...] = ()
    failures: dict[str, str] = field(default_factory=dict)  # agent_id -> error
    synthesis: SynthesisPayload | None = None
    reflection: ReflectionPayload | None = None
    heuristic: bool = False
    latency_ms: float = 0.0


@dataclass(frozen=True)
class AdvisoryContext:
    """Notes gathered from advisory agents before the briefs. Empty when none ran."""

    notes: tuple[AdvisoryNote, ...] = ()
    failures: dict[str, str] = field(default_factory=dict)  # agent_id -> error
    latency_ms: float = 0.0

    @property
    def critical_distress(self) -> bool:
        return any(note.distress_level is DistressLevel.CRITICAL for note in self.notes)

    def as_prompt(self) -> str:
        """Render the notes as the advisory block placed in each brief prompt."""
        blocks = []
        for note in self.notes:
            lines = [f"=== {note.agent_id.upper()} ===", f"Summary: {note.summary}"]
            if note.dominant_emotion or note.distress_level:
                distress = note.distress_level.value if note.distress_level else "unknown"
                lines.append(f"Emotional state: {note.dominant_emotion or 'unclear'} (distress: {distress})")
            if note.relevant_signals:
                lines.append(f"Relevant signals: {'; '.join(note.relevant_signals)}")
            if note.policy_context:
                lines.append(f"Policy context: {note.policy_context[:_POLICY_CONTEXT_CHARS]}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks) or "(no advisory context)"


@dataclass(frozen=True)
class ConsensusResult:
    final_decision: Decision
    rounds: tuple[PhaseRecord, ...]
    participating_agents: frozenset[str]
    failed_agents: frozenset[str]
    consensus_level: ConsensusLevel
    status_votes: dict[Verdict, frozenset[str]]
    synthesis: SynthesisPayload
    reflection: ReflectionPayload
    veto: VetoVote | None = None
    veto_triggered: bool = False
    advisory_context: AdvisoryContext = field(default_factory=AdvisoryContext)
    total_latency_ms: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    def phase(self, phase: Phase) -> PhaseRecord | None:
        return next((record for record in self.rounds if record.phase is phase), None)
