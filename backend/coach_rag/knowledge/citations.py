"""Post-generation checks of an answer against the retrieved evidence."""

import logging
import re
from typing import Iterable

from coach_rag.knowledge.models import Citation, ValidationReport

logger = logging.getLogger(__name__)

# Ids may hold any characters except whitespace, "#" and "]"
CITATION_PATTERN = re.compile(r"\[KB:([^\]#\s]+)#(\d+)\]")

_EXERCISES = (
    r"squats?|front squats?|deadlifts?|romanian deadlifts?|rdls?|bench press(?:es)?|"
    r"incline press(?:es)?|overhead press(?:es)?|shoulder press(?:es)?|leg press(?:es)?|"
    r"rows?|pull[- ]?ups?|chin[- ]?ups?|pulldowns?|lat pulldowns?|curls?|leg curls?|"
    r"extensions?|lateral raises?|raises?|flyes|flys?|dips?|lunges?|hip thrusts?|"
    r"push[- ]?ups?|calf raises?|pullovers?|shrugs?"
)

PARAMETER_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "exercise": (re.compile(rf"\b(?:{_EXERCISES})\b", re.IGNORECASE),),
    "reps": (
        re.compile(r"\b\d+\s*(?:-|–|to)\s*\d+\s*(?:reps?|repetitions)\b", re.IGNORECASE),
        re.compile(r"\b\d+\s*(?:reps?|repetitions)\b", re.IGNORECASE),
        re.compile(r"\b\d+\s*x\s*\d+", re.IGNORECASE),
        re.compile(r"\bsets?\s+of\s+\d+", re.IGNORECASE),
        re.compile(r"\breps?\s*:\s*\d+", re.IGNORECASE),
    ),
    "sets": (
        re.compile(r"\b\d+\s*(?:-|–|to)?\s*\d*\s*sets?\b", re.IGNORECASE),
        re.compile(r"\b\d+\s*x\s*\d+", re.IGNORECASE),
        re.compile(r"\bsets?\s*:\s*\d+", re.IGNORECASE),
    ),
    "rest": (
        re.compile(
            r"\b\d+(?:\.\d+)?\s*(?:(?:-|–|to)\s*\d+(?:\.\d+)?\s*)?"
            r"(?:s|secs?|seconds?|mins?|minutes?)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\brest\s*:\s*\d", re.IGNORECASE),
    ),
}

REQUIRED_PROGRAM_PARAMETERS: tuple[str, ...] = ("exercise", "reps", "sets", "rest")


def extract_citations(answer: str) -> list[Citation]:
    """Parse well-formed ``[KB:<id>#<index>]`` markers in order of appearance.

    Malformed markers are ignored. Repeated markers are reported once.
    """
    citations: list[Citation] = []
    seen: set[tuple[str, int]] = set()
    for match in CITATION_PATTERN.finditer(answer):
        key = (match.group(1), int(match.group(2)))
        if key in seen:
            continue
        seen.add(key)
        citations.append(Citation(id=key[0], index=key[1]))
    return citations


def has_parameter(answer: str, key: str) -> bool:
    """Whether ``answer`` states the programming parameter ``key``.

    Raises:
        ValueError: If ``key`` is not a known parameter.
    """
    patterns = PARAMETER_PATTERNS.get(key)
    if patterns is None:
        raise ValueError(
            f"Unknown parameter key: {key}. Expected one of {sorted(PARAMETER_PATTERNS)}"
        )
    return any(pattern.search(answer) for pattern in patterns)


def validate(
    answer: str,
    required_parameter_keys: Iterable[str] = (),
    available: Iterable[Citation] | None = None,
    high_relevance_count: int = 0,
) -> ValidationReport:
    """Inspect a generated answer. Nothing is fixed here.

    Args:
        answer: Generated text.
        required_parameter_keys: Subset of exercise, reps, sets, rest.
        available: Citations that were offered in the context; markers
            outside this set are reported as unknown.
        high_relevance_count: High-relevance candidates in the originating
            retrieval. With zero citations in the answer this raises the
            ``uncited_evidence`` warning.

    Returns:
        The validation report.
    """
    citations = extract_citations(answer)
    missing = [key for key in required_parameter_keys if not has_parameter(answer, key)]

    unknown: list[Citation] = []
    if available is not None:
        known = {citation.key for citation in available}
        unknown = [citation for citation in citations if citation.key not in known]

    uncited = not citations and high_relevance_count > 0

    report = ValidationReport(
        citations=citations,
        missing_parameters=missing,
        unknown_citations=unknown,
        uncited_evidence=uncited,
    )
    if report.needs_repair:
        logger.info(
            f"Answer validation: {len(citations)} citations, missing={missing}, "
            f"unknown={len(unknown)}, uncited_evidence={uncited}"
        )
    return report


def build_repair_instructions(report: ValidationReport) -> str:
    """Re-prompt text asking the generator to close the reported gaps."""
    parts: list[str] = []
    if report.missing_parameters:
        parts.append(
            "The following required details are missing: "
            + ", ".join(report.missing_parameters)
            + ". Add concrete values for each."
        )
    if report.unknown_citations:
        parts.append(
            "These citations do not match any provided source and must be removed or corrected: "
            + ", ".join(c.marker for c in report.unknown_citations)
            + "."
        )
    if report.uncited_evidence:
        parts.append(
            "The answer cites no sources although relevant sources were provided. "
            "Cite the sources you rely on with their [KB:<id>#<index>] markers."
        )
    return " ".join(parts)
