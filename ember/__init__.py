"""
Ember - speech interpretation for people with speech disabilities

Root package for Ember, containing shared utilities and the interpretation
engine that turns noisy or fragmented transcripts into confirmable intents.

Core modules:
- utils: Environment parsing and async helpers
- assistant: Normalization, classification, intent matching, confidence
  scoring, interpretation orchestration, calibration and session control
"""

__version__ = "0.4.2"
