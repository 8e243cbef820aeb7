"""Prompt templates for ingredient classification."""

from typing import List, Optional

from pydantic import BaseModel

from src.vetting.types import ResearchResult, ScoreLookupResult

SYSTEM_PROMPT = (
    "You are a cosmetic ingredient safety researcher. "
    "Respond with a single JSON object and nothing else."
)

TIER_GUIDANCE = """Guidelines:
- "safe": Generally recognized as safe, low risk, well-studied with no major concerns (EWG score 1-4)
- "caution": Mixed evidence, potential concerns at high concentrations, needs careful consideration (EWG score 5-7)
- "banned": Known health risks, regulatory restrictions, or significant safety concerns (EWG score 8-10)"""

# Response schema for structured output
CLASSIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["safe", "caution", "banned"]},
        "rationale": {"type": "string"},
        "description": {"type": "string"},
        "edgeCases": {"type": "string"},
        "confidence": {"type": "number"},
    },
    "required": ["status", "rationale", "description", "edgeCases", "confidence"],
}


class IngredientPromptContext(BaseModel):
    """Evidence gathered before classification, rendered into a prompt."""

    ingredient_name: str
    ewg_score: Optional[int] = None
    data_availability: Optional[str] = None
    concerns: List[str] = []
    suggested_matches: List[str] = []
    research: List[dict] = []

    @classmethod
    def from_evidence(
        cls,
        ingredient_name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
        max_snippets: int = 5,
    ) -> "IngredientPromptContext":
        return cls(
            ingredient_name=ingredient_name,
            ewg_score=lookup.score if lookup.found else None,
            data_availability=lookup.data_availability,
            concerns=lookup.concerns,
            suggested_matches=lookup.suggested_matches or [],
            research=[r.to_dict() for r in research[:max_snippets]],
        )

    def _score_context(self) -> str:
        if self.ewg_score is not None:
            context = (
                f"EWG Skin Deep Score: {self.ewg_score}/10 "
                f"(Data Availability: {self.data_availability or 'Unknown'})"
            )
            if self.concerns:
                context += f"\nEWG Concerns: {', '.join(self.concerns)}"
            return context

        context = "EWG Skin Deep: Not found or score unavailable"
        if self.suggested_matches:
            context += f"\nSuggested similar ingredients: {', '.join(self.suggested_matches)}"
        return context

    def _research_context(self) -> str:
        if not self.research:
            return ""
        lines = ["Additional Research Sources Found:"]
        for source in self.research:
            lines.append(
                f"- {source['source'].upper()}: {source['title']} ({source['url']})"
            )
            if source.get("snippet"):
                lines.append(f"  {source['snippet']}")
        return "\n".join(lines)

    def to_detailed_prompt(self) -> str:
        """Long-form prompt with field-by-field instructions."""
        parts = [
            "You are a cosmetic ingredient safety researcher. "
            f'Analyze the safety of this ingredient: "{self.ingredient_name}"',
            "",
            self._score_context(),
        ]
        research = self._research_context()
        if research:
            parts.append(research)

        parts.append(
            """
Provide your analysis in JSON format:
{
  "status": "safe" | "caution" | "banned",
  "rationale": "Detailed explanation based on scientific evidence. Be specific about why this ingredient received this rating. Include known health concerns, regulatory status, and research findings.",
  "description": "Exactly 3 sentences. First: what it is and its primary use. Second: safety profile and key characteristics. Third: common applications in cosmetics.",
  "edgeCases": "One sentence about special considerations (e.g. 'Avoid during pregnancy.'), or 'None known.'",
  "confidence": 0.0-1.0
}
"""
        )
        parts.append(TIER_GUIDANCE)
        parts.append(
            """
If an EWG score is provided, treat it as the primary basis for status determination:
- Score 1-4 -> "safe"
- Score 5-7 -> "caution"
- Score 8-10 -> "banned"

Be specific and evidence-based. The rationale must be unique to this ingredient, not generic."""
        )
        return "\n".join(parts)

    def to_compact_prompt(self) -> str:
        """Short prompt for models that follow JSON contracts well."""
        parts = [
            f'Analyze this cosmetic ingredient: "{self.ingredient_name}"',
            self._score_context(),
        ]
        if self.ewg_score is not None:
            parts.append("EWG tiers: 1-4=safe, 5-7=caution, 8-10=banned")
        research = self._research_context()
        if research:
            parts.append(research)
        parts.append(
            """
Return JSON only:
{
  "status": "safe" | "caution" | "banned",
  "rationale": "Ingredient-specific scientific explanation",
  "description": "3 sentences: what it is and primary use; safety profile; common applications",
  "edgeCases": "One sentence on edge cases, or 'None known.'",
  "confidence": 0.0-1.0
}"""
        )
        return "\n".join(parts)
