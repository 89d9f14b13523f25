"""
Prompt templates for contradiction detection.

Keeping templates in a separate module makes them easy to iterate on
without touching detection logic.
"""

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

CONTRADICTION_SYSTEM = (
    "You are a neutral technical editor. Compare two documentation approaches, "
    "identify contradictions, and respond with strict JSON."
)

# ---------------------------------------------------------------------------
# Pair comparison prompt ({payload} is a JSON object describing both approaches)
# ---------------------------------------------------------------------------

CONTRADICTION_USER = """\
Compare the following approaches. Respond with JSON matching this schema:
{{
  "contradiction": boolean,
  "topic": string | null,
  "difference": string,
  "severity": "high" | "medium" | "low",
  "recommendation": string,
  "confidence": number
}}
If there is no contradiction, respond with {{"contradiction": false}}.

{payload}
"""

# ---------------------------------------------------------------------------
# Defaults when the model omits a field
# ---------------------------------------------------------------------------

DEFAULT_DIFFERENCE = "Contradiction detected."
DEFAULT_RECOMMENDATION = "Prefer the more recent or higher quality source."
