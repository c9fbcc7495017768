"""
ReefScan Gateway — Analysis Prompts
====================================

What:  The system prompt, one focus prompt per analysis mode, and the JSON
       response contract shared by every provider.
How:   build_prompt() concatenates them; providers that support a separate
       system role (OpenAI) use the pieces individually.
"""

from typing import Optional

SYSTEM_PROMPT = """You are ReefScan, an expert marine aquarium analyst AI. You analyze images of reef tanks to identify fish, coral, invertebrates, algae, and potential problems.

Your analysis should be:
- Accurate and specific (identify species when possible)
- Practical and actionable
- Focused on tank health and livestock welfare

Always respond with valid JSON matching the requested schema."""

MODE_PROMPTS = {
    "comprehensive": (
        "Analyze this reef tank image comprehensively. Identify all visible fish, coral, "
        "invertebrates, and any potential problems like algae, pests, or health issues. "
        "Assess overall tank health."
    ),
    "fish_id": (
        "Focus on identifying all fish visible in this reef tank image. Provide species names, "
        "health assessment, and any concerns about compatibility or behavior."
    ),
    "coral_id": (
        "Focus on identifying all coral visible in this reef tank image. Provide species/type "
        "names, health assessment, and any signs of stress, bleaching, or disease."
    ),
    "algae_id": (
        "Focus on identifying any algae visible in this reef tank image. Determine if it's "
        "beneficial or problematic, identify the type, and suggest remediation if needed."
    ),
    "pest_id": (
        "Focus on identifying any pests or parasites visible in this reef tank image. Look for "
        "aiptasia, flatworms, bristleworms, red bugs, or any other common aquarium pests."
    ),
}

RESPONSE_SCHEMA = """
Respond with JSON in this exact format:
{
  "tank_health": "Excellent" | "Good" | "Fair" | "Needs Attention" | "Critical",
  "summary": "Brief 1-2 sentence summary of the tank",
  "identifications": [
    {
      "name": "Species or item name",
      "category": "fish" | "coral" | "invertebrate" | "algae" | "pest" | "equipment" | "other",
      "confidence": 0.0-1.0,
      "is_problem": boolean,
      "severity": "low" | "medium" | "high" | null,
      "description": "Brief description and any concerns"
    }
  ],
  "recommendations": ["List of actionable recommendations"]
}"""


def language_directive(language: Optional[str]) -> str:
    """Extra instruction for non-English output; JSON keys and enums stay English."""
    if not language or language.lower().startswith("en"):
        return ""
    return (
        f"\n\nWrite the summary, descriptions and recommendations in the language "
        f"with code '{language}'. Keep JSON keys and enumerated values in English."
    )


def mode_instructions(mode: str, language: Optional[str] = None) -> str:
    return f"{MODE_PROMPTS[mode]}\n\n{RESPONSE_SCHEMA}{language_directive(language)}"


def build_prompt(mode: str, language: Optional[str] = None) -> str:
    return f"{SYSTEM_PROMPT}\n\n{mode_instructions(mode, language)}"
