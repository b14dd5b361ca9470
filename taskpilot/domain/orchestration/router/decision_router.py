from typing import List, Optional, Sequence, Tuple
from datetime import date
import re
import time

import structlog
from pydantic import BaseModel

from taskpilot.domain.models.agent_state import ConversationTurn, DecisionOutcome, Role
from taskpilot.domain.orchestration.router.intent_classifier import IntentClassifier
from taskpilot.domain.orchestration.router.query_shape import QueryPlan, infer_query_plan
from taskpilot.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


QUESTION_STARTS = (
    "how", "what", "which", "when", "where", "who", "whats", "what's",
    "do", "does", "did", "is", "are", "am", "have", "has", "any", "show", "list",
)

# polite lead-ins before an imperative: "please add ...", "can you delete ..."
_LEAD_IN = re.compile(
    r"^(?:(?:please|pls|ok|okay|hey|so|now|also|and|then)\s+|(?:can|could|would|will) you\s+(?:please\s+)?"
    r"|i (?:want|need|would like|'d like) (?:you )?to\s+|let'?s\s+|go ahead and\s+)+"
)


class RoutingDecision(BaseModel):
    """Router verdict for one message, never stored"""
    outcome: DecisionOutcome
    source: str
    confidence: Optional[float] = None
    plan: Optional[QueryPlan] = None
    reason: str = ""


class KeywordHeuristic:
    """Deterministic keyword/pattern classifier used when the model is unavailable or unsure"""

    def __init__(self, mutating_verbs: Sequence[str], read_cues: Sequence[str], fast_path_min_score: int = 1):
        self.mutating_verbs = tuple(v.lower() for v in mutating_verbs)
        self.read_cues = tuple(c.lower() for c in read_cues)
        self.fast_path_min_score = fast_path_min_score

    def imperative_verb(self, message: str) -> Optional[str]:
        """Mutating verb in command position, if any"""

        text = _LEAD_IN.sub("", _normalize(message))
        first = text.split(" ", 1)[0] if text else ""
        if first in self.mutating_verbs:
            return first
        # "... and then delete the old one"
        for clause in re.split(r"[,;.]|\band\b|\bthen\b", text)[1:]:
            words = _LEAD_IN.sub("", clause.strip()).split(" ", 1)
            if words and words[0] in self.mutating_verbs:
                return words[0]
        return None

    def read_score(self, message: str) -> int:
        """Number of read-only cues present, phrases count once each"""

        text = _normalize(message)
        return sum(1 for cue in self.read_cues if re.search(rf"\b{re.escape(cue)}\b", text))

    def is_question(self, message: str) -> bool:
        text = _normalize(message)
        if message.strip().endswith("?"):
            return True
        first = text.split(" ", 1)[0] if text else ""
        return first in QUESTION_STARTS

    def classify(self, message: str, plan: Optional[QueryPlan]) -> Tuple[DecisionOutcome, float, str]:
        """(outcome, confidence, reason)"""

        verb = self.imperative_verb(message)
        if verb:
            return DecisionOutcome.AGENT_PATH, 0.9, f"imperative verb '{verb}'"
        if plan is None:
            return DecisionOutcome.AGENT_PATH, 0.6, "no recognizable query shape"
        if self.is_question(message):
            return DecisionOutcome.FAST_PATH, 0.85, f"question with {plan.shape.value} shape"

        score = self.read_score(message)
        if score >= self.fast_path_min_score:
            confidence = min(0.5 + 0.1 * score, 0.8)
            return DecisionOutcome.FAST_PATH, confidence, f"{score} read cue(s)"
        return DecisionOutcome.AGENT_PATH, 0.5, "ambiguous statement"


class DecisionRouter:
    """
    Two-tier router: model classification first, keyword heuristic as fallback.
    A message only goes to the fast path when a query shape can be inferred for it
    and it carries no imperative mutating verb.
    """

    def __init__(
        self,
        heuristic: KeywordHeuristic,
        classifier: Optional[IntentClassifier] = None,
        confidence_threshold: float = 0.7,
    ):
        self.heuristic = heuristic
        self.classifier = classifier
        self.confidence_threshold = confidence_threshold

    @classmethod
    def from_settings(cls, settings, classifier: Optional[IntentClassifier] = None) -> "DecisionRouter":
        heuristic = KeywordHeuristic(
            mutating_verbs=settings.ROUTER_MUTATING_VERBS,
            read_cues=settings.ROUTER_READ_CUES,
            fast_path_min_score=settings.ROUTER_FAST_PATH_MIN_SCORE,
        )
        return cls(
            heuristic=heuristic,
            classifier=classifier if settings.ROUTER_USE_MODEL else None,
            confidence_threshold=settings.ROUTER_CONFIDENCE_THRESHOLD,
        )

    async def classify(self, message: str, recent_turns: Optional[List[ConversationTurn]] = None) -> DecisionOutcome:
        """FAST_PATH or AGENT_PATH for a message"""

        decision = await self.route(message, recent_turns)
        return decision.outcome

    async def route(
        self,
        message: str,
        recent_turns: Optional[List[ConversationTurn]] = None,
        session_id: str = "",
        today: Optional[date] = None,
    ) -> RoutingDecision:
        """Full routing decision, including the inferred query plan for the fast path"""

        start_time = time.time()
        recent_turns = recent_turns or []
        previous = next((t.content for t in reversed(recent_turns) if t.role == Role.USER), None)
        plan = infer_query_plan(message, today, previous)

        outcome, confidence, reason = self.heuristic.classify(message, plan)
        source = "heuristic"

        if self.classifier is not None:
            verdict = await self.classifier.classify(message, recent_turns)
            if verdict is None:
                reason = f"model unavailable, {reason}"
            elif verdict.confidence < self.confidence_threshold:
                reason = f"model below threshold ({verdict.confidence:.2f}), {reason}"
            else:
                outcome, confidence, source = verdict.path, verdict.confidence, "model"
                reason = "model verdict"

        if outcome == DecisionOutcome.FAST_PATH:
            verb = self.heuristic.imperative_verb(message)
            if verb:
                outcome, reason = DecisionOutcome.AGENT_PATH, f"imperative verb '{verb}' overrides {source}"
            elif plan is None:
                outcome, reason = DecisionOutcome.AGENT_PATH, "no query shape for fast path"

        decision = RoutingDecision(
            outcome=outcome,
            source=source,
            confidence=confidence,
            plan=plan if outcome == DecisionOutcome.FAST_PATH else None,
            reason=reason,
        )

        agent_logger.log_routing_decision(
            session_id=session_id,
            outcome=outcome.value,
            source=source,
            confidence=confidence,
        )
        metrics.increment_counter("routing_decisions", tags={"outcome": outcome.value, "source": source})
        metrics.record_latency("routing", (time.time() - start_time) * 1000)
        logger.debug("Routing reason", reason=reason)

        return decision


def _normalize(message: str) -> str:
    text = message.strip().lower()
    text = re.sub(r"[\"“”]", "", text)
    return re.sub(r"\s+", " ", text)
