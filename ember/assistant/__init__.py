"""
Speech interpretation engine for atypical speech

This package turns a finalized speech transcript into a confident,
confirmable intent for users with stuttering, dysarthria or aphasia:

- Stutter normalization: collapse repeated sounds, syllables and words
- Pattern classification: urgency tiers, fragmentation, aphasia indicators
- Intent matching: device actions from keywords and pointing gestures
- Confidence scoring: local heuristics fused with the interpreter's score
- Orchestration: urgent fast path, correction memory, semantic interpreter
- Calibration: word-by-word alignment of a read-aloud passage
- Session control: one utterance at a time, cancellable, with confirmation

Key modules:
- config: Configuration management from environment variables
- orchestrator: Sequencing of one utterance into an Interpretation
- session: Conversation state machine and confirmation gate
- interpreter: Gemini / OpenAI semantic interpreter clients
- home_control: Home Assistant device actions
- notifications: Twilio emergency calls
"""

from __future__ import annotations

__all__ = [
    "config",
    "stutter",
    "speech_patterns",
    "intent_matcher",
    "confidence",
    "correction_memory",
    "calibration",
    "interpreter",
    "orchestrator",
    "session",
    "home_control",
    "notifications",
    "speech_output",
    "audio",
    "vision",
    "mqtt",
    "mqtt_publisher",
]
