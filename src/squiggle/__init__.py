"""squiggle - position-exact writing suggestions from local rules and an LLM."""

from .local_rules import analyze
from .pipeline import suggest_text
from .policy import reconcile

__all__ = ["analyze", "reconcile", "suggest_text"]
