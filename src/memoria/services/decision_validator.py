from __future__ import annotations

from dataclasses import dataclass, field

from memoria.schemas.agent import DependencyDecision, ExistenceCheck
from memoria.services.reference_detection import detect_pronouns

LOW_CONFIDENCE_THRESHOLD = 0.3

_ACKNOWLEDGEMENT_MARKERS = ("similar", "previous", "asked before", "existing", "reuse")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_memory_decisions(
    existence_check: ExistenceCheck,
    dependency_decision: DependencyDecision,
    *,
    question: str | None = None,
) -> ValidationResult:
    """Rule-check the existence and dependency decisions before anything acts on them.

    Hard errors make the run abort; warnings are reported but do not block it. When
    ``question`` is given, local reference detection also makes resolution mandatory.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not existence_check.search_query.strip():
        errors.append("Existence check must include a search query")
    if not existence_check.explanation.strip():
        errors.append("Existence check must include an explanation")

    if existence_check.similar_question_exists:
        if not existence_check.existing_run_id:
            errors.append("Similar question exists but no run id provided")
        if not existence_check.existing_question:
            errors.append("Similar question exists but no question text provided")
        if not existence_check.existing_answer:
            errors.append("Similar question exists but no answer provided")

    if not dependency_decision.reason.strip():
        errors.append("Memory dependency decision must include a reason")

    resolution = dependency_decision.pronoun_resolution
    detected = detect_pronouns(question) if question is not None else None

    if resolution is None:
        if detected is not None and detected.has_pronouns:
            errors.append(
                "References detected in the question "
                f"({', '.join(detected.pronouns_found)}) but no resolution was provided"
            )
    else:
        has_pronouns = resolution.has_pronouns or (detected is not None and detected.has_pronouns)
        if has_pronouns and not resolution.resolution_attempted:
            errors.append("Pronouns detected but resolution was not attempted - this is mandatory")

        if resolution.resolution_attempted and not resolution.explanation.strip():
            errors.append("Pronoun resolution attempted but no explanation provided")

        if resolution.resolved and not resolution.resolved_entities:
            errors.append("Pronouns marked as resolved but no resolved entities provided")

        if resolution.has_pronouns and not resolution.pronouns_found:
            warnings.append("Pronouns detected but list of pronouns is empty")

        for entity in resolution.resolved_entities:
            if not 0.0 <= entity.confidence <= 1.0:
                errors.append(
                    f"Invalid confidence score for {entity.pronoun!r}: {entity.confidence}"
                )
            elif entity.confidence < LOW_CONFIDENCE_THRESHOLD:
                warnings.append(
                    f"Low confidence ({entity.confidence}) for pronoun resolution: "
                    f"{entity.pronoun!r} -> {entity.resolved_to!r}"
                )

    if existence_check.similar_question_exists and not dependency_decision.requires_memory:
        reason = dependency_decision.reason.lower()
        if not any(marker in reason for marker in _ACKNOWLEDGEMENT_MARKERS):
            warnings.append(
                "Similar question exists but dependency reason doesn't acknowledge this"
            )

    if (
        resolution is not None
        and resolution.resolved
        and resolution.resolved_entities
        and not dependency_decision.requires_memory
    ):
        warnings.append(
            "Pronouns were resolved using prior context but memory is marked as not required"
        )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def format_validation_result(result: ValidationResult) -> str:
    lines = [
        "Memory decision validation passed"
        if result.valid
        else "Memory decision validation FAILED"
    ]
    if result.errors:
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in result.errors)
    if result.warnings:
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in result.warnings)
    return "\n".join(lines)
