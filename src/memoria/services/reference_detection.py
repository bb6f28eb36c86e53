from __future__ import annotations

import re
from dataclasses import dataclass

from memoria.schemas.agent import ResolvedEntity

_REFERENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(he|him|his|she|her|hers|they|them|their|theirs|it|its)\b", re.IGNORECASE),
    re.compile(r"\b(this|that|these|those)\b", re.IGNORECASE),
    re.compile(
        r"\bthe (person|company|project|organization|system|application|product|service"
        r"|tool|library|framework|same|one)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(there|here)\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class ReferenceDetection:
    has_pronouns: bool
    pronouns_found: list[str]
    explanation: str


def detect_pronouns(question: str) -> ReferenceDetection:
    """Pattern-match pronouns and implicit references in ``question``.

    This is a heuristic sanity signal that runs independently of any model call.
    Matches are lower-cased and reported once each, in order of first appearance.
    """
    found: dict[str, int] = {}
    for pattern in _REFERENCE_PATTERNS:
        for match in pattern.finditer(question):
            found.setdefault(match.group(0).lower(), match.start())
    pronouns = sorted(found, key=lambda reference: found[reference])

    if pronouns:
        explanation = f"Found {len(pronouns)} pronoun(s)/reference(s): {', '.join(pronouns)}"
    else:
        explanation = "No pronouns or implicit references detected"
    return ReferenceDetection(
        has_pronouns=bool(pronouns),
        pronouns_found=pronouns,
        explanation=explanation,
    )


def substitute_references(question: str, entities: list[ResolvedEntity]) -> str:
    """Replace each resolved reference (whole word, any case) with its entity.

    All references are matched in one pass over the original text, so a replacement is never
    rewritten by a later reference.
    """
    replacements: dict[str, str] = {}
    for entity in entities:
        reference = entity.pronoun.strip()
        if reference and entity.resolved_to.strip():
            replacements.setdefault(reference.casefold(), entity.resolved_to)
    if not replacements:
        return question

    # Longer references first so "the company" wins over a bare "company".
    alternatives = sorted(replacements, key=len, reverse=True)
    pattern = re.compile(
        r"\b(?:" + "|".join(re.escape(reference) for reference in alternatives) + r")\b",
        re.IGNORECASE,
    )
    return pattern.sub(
        lambda match: replacements.get(match.group(0).casefold(), match.group(0)), question
    )


def describe_resolutions(entities: list[ResolvedEntity]) -> str | None:
    if not entities:
        return None
    mapping = ", ".join(
        f'"{entity.pronoun}" refers to "{entity.resolved_to}"' for entity in entities
    )
    return (
        f"The following pronouns/references have been resolved: {mapping}. "
        "Use this information to understand what the question is asking about."
    )
