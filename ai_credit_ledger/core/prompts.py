"""
Prompt templates for chunk generation and refinement.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List


class ChunkRole(Enum):
    OPENING = "introduction and opening section"
    BODY = "main body section"
    CLOSING = "conclusion and closing section"


@dataclass(frozen=True)
class ChunkBrief:
    """Everything a template needs to describe one chunk."""
    prompt: str
    chunk_target: int
    chunk_index: int
    total_target: int
    style: str
    tone: str
    context: str = ""
    subject: str = ""
    additional_instructions: str = ""


def chunk_role(chunk_index: int, words_before: int, chunk_target: int,
               total_target: int, closing_fraction: float = 0.2) -> ChunkRole:
    """Role of a chunk: first is the opening, one ending in the final stretch closes."""
    if chunk_index == 0:
        return ChunkRole.OPENING
    if words_before + chunk_target > total_target * (1 - closing_fraction):
        return ChunkRole.CLOSING
    return ChunkRole.BODY


def build_chunk_prompt(brief: ChunkBrief, role: ChunkRole) -> str:
    flow = "from the provided context" if brief.context else "as the opening section"
    context_block = f"Context from previous sections:\n{brief.context}\n\n" if brief.context else ""
    return (
        f"Write a {role.value} for the following assignment:\n\n"
        f"{brief.prompt}\n\n"
        "Requirements:\n"
        f"- Target word count: {brief.chunk_target} words\n"
        f"- Writing style: {brief.style}\n"
        f"- Tone: {brief.tone}\n"
        f"- Subject area: {brief.subject}\n"
        f"- Additional instructions: {brief.additional_instructions}\n\n"
        f"{context_block}"
        "Instructions:\n"
        f"1. Write exactly {brief.chunk_target} words\n"
        f"2. Maintain {brief.style} style with {brief.tone} tone\n"
        f"3. Ensure smooth flow {flow}\n"
        "4. Use original thinking and avoid cliches\n"
        "5. Include specific examples and evidence where appropriate\n"
        "6. Make the writing sound natural and human-authored\n\n"
        "Content:"
    )


def build_polish_prompt(brief: ChunkBrief, base_content: str) -> str:
    return (
        "Polish and adapt the following content to match the new requirements:\n\n"
        f"Original Content:\n{base_content}\n\n"
        "New Requirements:\n"
        f"- Prompt: {brief.prompt}\n"
        f"- Target word count: {brief.chunk_target} words\n"
        f"- Style: {brief.style}\n"
        f"- Tone: {brief.tone}\n"
        f"- Context from previous sections: {brief.context}\n\n"
        "Instructions:\n"
        "1. Maintain the core ideas but adapt to the new prompt\n"
        "2. Adjust the content to match the specified style and tone\n"
        "3. Ensure smooth transition from the provided context\n"
        f"4. Target exactly {brief.chunk_target} words\n"
        "5. Make the content original and avoid AI detection patterns\n\n"
        "Polished Content:"
    )


def build_regeneration_prompt(brief: ChunkBrief) -> str:
    """Requirements for a full rewrite; recommendations travel separately."""
    return (
        "Requirements:\n"
        f"- Prompt: {brief.prompt}\n"
        f"- Target word count: {brief.chunk_target} words\n"
        f"- Style: {brief.style}\n"
        f"- Tone: {brief.tone}\n"
        f"- Context: {brief.context}\n\n"
        "Instructions:\n"
        "1. Create completely original content\n"
        "2. Avoid AI detection patterns and cliches\n"
        "3. Use varied sentence structures and vocabulary\n"
        "4. Ensure natural flow and human-like writing\n"
        "5. Maintain academic rigor and authenticity\n\n"
        "Regenerated Content:"
    )


def build_refinement_prompt(brief: ChunkBrief, content: str, sections: List[str]) -> str:
    numbered = "\n".join(f"{i}. {section}" for i, section in enumerate(sections, 1))
    return (
        "Refine the following content by improving these problematic sections:\n"
        f"{numbered}\n\n"
        f"Current Content:\n{content}\n\n"
        "Instructions:\n"
        "1. Rewrite only the problematic sections\n"
        "2. Maintain the overall structure and flow\n"
        f"3. Target word count: {brief.chunk_target} words\n"
        f"4. Style: {brief.style}, Tone: {brief.tone}\n"
        "5. Make improvements sound natural and human-written\n\n"
        "Refined Content:"
    )


def build_simplification_prompt(brief: ChunkBrief, content: str, grade: float) -> str:
    return (
        f"Simplify the following content, currently at reading grade {grade:.1f}:\n\n"
        f"{content}\n\n"
        "Instructions:\n"
        "1. Shorten long sentences and split compound ones\n"
        "2. Prefer common words over technical jargon where meaning allows\n"
        f"3. Keep the target word count of {brief.chunk_target} words\n"
        f"4. Style: {brief.style}, Tone: {brief.tone}\n\n"
        "Simplified Content:"
    )
