"""
Interpretation orchestration

Sequences one utterance through the engine:

1. normalize and classify (empty input raises InputError)
2. urgent escalation for CRITICAL and URGENT input: immediate interpretation,
   no confirmation, emergency call or text unless the contact method is "none"
3. direct device action from pointing context or keywords
4. correction-memory lookup, which skips the interpreter at confidence 95
5. otherwise the semantic interpreter, scored and gated on confirmation

Steps 1-4 happen in `analyze`; step 5 is `interpret`, so the session can
report the analyzing and interpreting states separately.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Literal

from ember.utils import mask_phone, tokenize

from .confidence import MEMORY_CONFIDENCE, NEUTRAL_CONFIDENCE, requires_confirmation, score_confidence
from .config import EmergencyConfig
from .correction_memory import CorrectionStore
from .errors import CriticalEscalationFailure, InputError
from .intent_matcher import ACTION_CATEGORIES, ACTION_LABELS, match_action
from .interpreter import InterpreterResult, SemanticInterpreter
from .models import (
    ActionCandidate,
    ConversationTurn,
    Interpretation,
    SpeechPattern,
    UrgencyLevel,
    UserProfile,
    VisualContext,
)
from .notifications import EmergencyNotifier, NotificationResult
from .speech_patterns import classify_speech, detect_aphasia_indicators
from .stutter import normalize_stutter

LOGGER = logging.getLogger(__name__)

MAX_ALTERNATIVES = 3
REPROMPT_TEXT = "Sorry, I didn't catch that. Could you say it again?"
EMERGENCY_ACTIONS = {"emergency_call", "call_help", "call_911", "call_caregiver"}

Route = Literal["urgent", "action", "memory", "interpret"]


@dataclass(frozen=True)
class InterpretationContext:
    profile: UserProfile = field(default_factory=UserProfile)
    visual: VisualContext | None = None
    history: tuple[ConversationTurn, ...] = ()
    available_categories: frozenset[str] | None = None


@dataclass
class Analysis:
    original_text: str
    normalized_text: str
    pattern: SpeechPattern
    route: Route
    interpretation: Interpretation | None = None
    action: ActionCandidate | None = None
    notification: NotificationResult | None = None
    escalation_failure: CriticalEscalationFailure | None = None

    @property
    def needs_interpreter(self) -> bool:
        return self.route == "interpret"


def select_prompt_key(pattern: SpeechPattern) -> str:
    """Instruction template for the interpreter, chosen by pattern type."""
    if pattern.is_urgent or pattern.type in ("critical", "urgent"):
        return "urgent"
    if pattern.type == "aphasia":
        return "aphasia"
    if pattern.type == "dysarthria":
        return "dysarthria"
    return "standard"


def _visual_objects(visual: VisualContext | None) -> list[str]:
    if visual is None:
        return []
    objects = list(visual.objects)
    if visual.pointing_target:
        objects.append(visual.pointing_target)
    return objects


class InterpretationOrchestrator:
    """Turns one finalized transcript into an Interpretation."""

    def __init__(
        self,
        *,
        interpreter: SemanticInterpreter | None,
        memory: CorrectionStore | None = None,
        notifier: EmergencyNotifier | None = None,
        emergency: EmergencyConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.interpreter = interpreter
        self.memory = memory
        self.notifier = notifier
        self.emergency = emergency
        self.logger = logger or LOGGER

    async def analyze(self, text: str, context: InterpretationContext | None = None) -> Analysis:
        context = context or InterpretationContext()
        raw = (text or "").strip()
        normalized = normalize_stutter(raw).strip()
        if not raw or not tokenize(normalized):
            raise InputError("Transcript is empty")

        pattern = classify_speech(raw, normalized, context.profile.conditions)
        self.logger.debug(
            "[orchestrator] %r -> type=%s urgency=%s fragmented=%s",
            raw,
            pattern.type,
            pattern.urgency_level,
            pattern.is_fragmented,
        )

        if pattern.urgency_level is not None and pattern.is_urgent:
            return await self._escalate(raw, normalized, pattern, pattern.urgency_level, normalized, context)

        visual = context.visual
        candidate = match_action(
            raw,
            pointing_target=visual.pointing_target if visual else None,
            pointing_direction=visual.pointing_direction if visual else None,
            room=visual.room if visual else None,
            available_categories=context.available_categories,
        )
        if candidate is not None:
            label = ACTION_LABELS.get(candidate.action_type, candidate.action_type)
            confidence = score_confidence(
                pattern,
                label,
                objects=_visual_objects(visual),
                history_length=len(context.history),
            )
            interpretation = Interpretation(
                original_text=raw,
                interpreted_text=label,
                confidence=confidence,
                category="home_control",
                reasoning=f"Matched {candidate.action_type} from {candidate.source}",
                requires_confirmation=requires_confirmation(confidence, pattern),
                urgency_level=pattern.urgency_level,
                action=candidate,
                response=f"{label}?" if requires_confirmation(confidence, pattern) else f"{label}.",
                source=candidate.source,
            )
            return Analysis(raw, normalized, pattern, "action", interpretation=interpretation, action=candidate)

        if self.memory is not None:
            remembered = self.memory.get(raw)
            if remembered:
                self.logger.info("[orchestrator] Using learned correction for %r", raw)
                interpretation = Interpretation(
                    original_text=raw,
                    interpreted_text=remembered,
                    confidence=MEMORY_CONFIDENCE,
                    category="learned",
                    reasoning="Matched a correction you confirmed before",
                    requires_confirmation=False,
                    urgency_level=pattern.urgency_level,
                    response=remembered,
                    source="memory",
                )
                return Analysis(raw, normalized, pattern, "memory", interpretation=interpretation)

        return Analysis(raw, normalized, pattern, "interpret")

    async def interpret(self, analysis: Analysis, context: InterpretationContext | None = None) -> Interpretation:
        if analysis.interpretation is not None:
            return analysis.interpretation
        context = context or InterpretationContext()
        pattern = analysis.pattern
        prompt_key = select_prompt_key(pattern)

        result: InterpreterResult | None = None
        if self.interpreter is not None:
            try:
                result = await self.interpreter.interpret(
                    analysis.normalized_text,
                    profile=context.profile,
                    visual_context=context.visual,
                    history=context.history,
                    pattern_type=prompt_key,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("[orchestrator] Interpreter failed, using raw text: %s", exc)

        if result is None:
            interpretation = Interpretation(
                original_text=analysis.original_text,
                interpreted_text=analysis.original_text,
                confidence=NEUTRAL_CONFIDENCE,
                category="unknown",
                reasoning="Interpreter unavailable; using what was heard",
                requires_confirmation=True,
                urgency_level=pattern.urgency_level,
                response=f'Did you say "{analysis.original_text}"?',
                source="fallback",
            )
            analysis.interpretation = interpretation
            return interpretation

        if result.category == "urgent" or (result.action or "") in EMERGENCY_ACTIONS:
            self.logger.info("[orchestrator] Interpreter flagged %r as urgent", analysis.original_text)
            escalated = await self._escalate(
                analysis.original_text,
                analysis.normalized_text,
                replace(pattern, urgency_level="URGENT"),
                "URGENT",
                result.interpretation,
                context,
            )
            analysis.route = "urgent"
            analysis.pattern = escalated.pattern
            analysis.notification = escalated.notification
            urgent = escalated.interpretation
            if urgent is None:
                raise RuntimeError("Escalation produced no interpretation")
            analysis.interpretation = urgent
            return urgent

        confidence = score_confidence(
            pattern,
            result.interpretation,
            external=result.confidence,
            objects=_visual_objects(context.visual),
            history_length=len(context.history),
        )
        action = None
        if result.action in ACTION_LABELS:
            category = ACTION_CATEGORIES.get(result.action)
            if context.available_categories is not None and category not in context.available_categories:
                category = None
            action = ActionCandidate(
                action_type=result.action,
                source="interpreter",
                room=context.visual.room if context.visual else None,
                device_category=category,
            )
        interpretation = Interpretation(
            original_text=analysis.original_text,
            interpreted_text=result.interpretation,
            confidence=confidence,
            category=result.category,
            reasoning=result.reasoning or self._reasoning(analysis),
            requires_confirmation=requires_confirmation(confidence, pattern),
            alternatives=tuple(result.alternatives[:MAX_ALTERNATIVES]),
            urgency_level=pattern.urgency_level,
            action=action,
            response=result.response,
            source="interpreter",
        )
        analysis.action = action
        analysis.interpretation = interpretation
        return interpretation

    def confirm(self, interpretation: Interpretation, choice: str | None = None) -> Interpretation:
        """Accept an interpretation, optionally swapping in the alternative the user picked."""
        final = interpretation
        if choice and choice.strip() and choice.strip() != interpretation.interpreted_text:
            final = replace(interpretation, interpreted_text=choice.strip(), response=choice.strip())
        final = replace(final, requires_confirmation=False)
        if self.memory is not None and interpretation.source == "interpreter":
            try:
                self.memory.put(interpretation.original_text, final.interpreted_text)
            except Exception as exc:
                self.logger.warning("[orchestrator] Failed to store correction: %s", exc)
        return final

    def reject(self, interpretation: Interpretation) -> str:
        self.logger.debug("[orchestrator] Interpretation rejected: %r", interpretation.interpreted_text)
        return REPROMPT_TEXT

    def _reasoning(self, analysis: Analysis) -> str:
        pattern = analysis.pattern
        parts = [f"Speech pattern: {pattern.type}"]
        if pattern.is_fragmented:
            parts.append("fragmented")
        if pattern.has_repeated_sounds:
            parts.append("repeated sounds")
        indicators = detect_aphasia_indicators(analysis.original_text)
        if indicators.likely_aphasia:
            parts.append(f"{indicators.subtype} aphasia indicators")
        return ", ".join(parts)

    async def _escalate(
        self,
        raw: str,
        normalized: str,
        pattern: SpeechPattern,
        level: UrgencyLevel,
        interpreted_text: str,
        context: InterpretationContext,
    ) -> Analysis:
        action_required = "call_911" if level == "CRITICAL" else "call_caregiver"
        confidence = score_confidence(
            pattern,
            interpreted_text,
            objects=_visual_objects(context.visual),
            history_length=len(context.history),
        )
        analysis = Analysis(raw, normalized, pattern, "urgent")
        response = (
            "Calling your emergency contact now. Stay calm, help is on the way."
            if level == "CRITICAL"
            else "I hear you. I'm alerting your caregiver now."
        )

        emergency = self.emergency
        if emergency is not None and emergency.notifications_enabled:
            failure_reason: str | None = None
            cause: BaseException | None = None
            if not emergency.contact_phone:
                failure_reason = "No emergency contact configured"
            elif self.notifier is None:
                failure_reason = "No emergency notification provider configured"
            else:
                try:
                    result = await self.notifier.notify(emergency.contact_phone, raw, context.profile.name)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failure_reason = str(exc) or exc.__class__.__name__
                    cause = exc
                else:
                    analysis.notification = result
                    if not result.success:
                        failure_reason = result.error or "Emergency call was not placed"

            if failure_reason is not None:
                self.logger.error(
                    "[orchestrator] Emergency call to %s failed (%s): %s",
                    mask_phone(emergency.contact_phone),
                    level,
                    failure_reason,
                )
                if level == "CRITICAL":
                    analysis.escalation_failure = CriticalEscalationFailure(
                        f"Emergency call failed: {failure_reason}",
                        original_text=raw,
                        cause=cause,
                    )
                    response = "Sorry, I couldn't make the emergency call. Please call for help manually."

        analysis.interpretation = Interpretation(
            original_text=raw,
            interpreted_text=interpreted_text,
            confidence=confidence,
            category="urgent",
            reasoning=f"Detected {level} urgency",
            requires_confirmation=False,
            urgency_level=level,
            action_required=action_required,
            response=response,
            source="urgent",
        )
        return analysis

