"""Keyword and pattern based query intent classification.

The rules are plain data (keyword tuples, compiled regex tables and the
muscle to category dictionary) so they can be tested and extended without
touching ``classify_intent``.
"""

import re

from coach_rag.knowledge.models import IntentKind, QueryIntent

# Category names as tagged on knowledge items
PROGRAM_CATEGORY = "hypertrophy_programs"
PRINCIPLES_CATEGORY = "hypertrophy_principles"
PROGRAM_REVIEW_CATEGORY = "program_review"
MYTHS_CATEGORY = "myths"

PROGRAM_GENERATION_KEYWORDS: tuple[str, ...] = (
    "create a program",
    "create program",
    "workout program",
    "training program",
    "workout plan",
    "training plan",
    "routine",
    "schedule me a workout",
    "schedule workout",
    "design a program",
    "design program",
    "build a program",
    "build program",
    "workout routine",
    "training routine",
    "full program",
    "weekly plan",
    "split routine",
    "training split",
    "program for me",
    "workout schedule",
)

PROGRAM_GENERATION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"create.*\d.*day.*workout",
        r"create.*\d.*day.*program",
        r"design.*\d.*day.*workout",
        r"\d.*day.*workout.*program",
        r"\d.*day.*training.*program",
        r"program.*\d.*day",
        r"workout.*\d.*day",
        r"\d+\s*-?\s*day\s+split",
    )
)

PROGRAM_REVIEW_KEYWORDS: tuple[str, ...] = (
    "review my program",
    "review my workout",
    "review my routine",
    "check my program",
    "check my workout",
    "check my routine",
    "evaluate my program",
    "evaluate my workout",
    "analyze my program",
    "analyze my workout",
    "feedback on my program",
    "feedback on my workout",
    "rate my program",
    "rate my workout",
    "critique my program",
    "critique my workout",
    "what do you think of my program",
    "what do you think of my workout",
)

PROGRAM_REVIEW_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"here.*is.*my.*program",
        r"here.*is.*my.*workout",
        r"this.*is.*my.*program",
        r"this.*is.*my.*workout",
        r"my.*current.*program",
        r"my.*current.*workout",
        r"is.*this.*program.*good",
        r"is.*this.*workout.*good",
    )
)

# A pasted workout counts as a review request
WORKOUT_STRUCTURE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\d+\s*x\s*\d+",
        r"\d+\s*sets?\s*of\s*\d+",
        r"\d+\s*reps?\b",
        r"\d+\s*sets?\b",
    )
)
MIN_STRUCTURE_INDICATORS = 3
MIN_RECOGNIZED_EXERCISES = 2

EXERCISE_NAMES: tuple[str, ...] = (
    "squat",
    "deadlift",
    "bench press",
    "row",
    "pull up",
    "pullup",
    "curl",
    "extension",
    "raise",
    "press",
    "fly",
    "dip",
    "lunge",
)

MYTH_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bmyths?\b",
        r"\bmisconceptions?\b",
        r"\bis it true\b",
        r"\bdoes .+ really\b",
        r"\bdo .+ really\b",
        r"\btrue or false\b",
        r"\bdebunk",
        r"\bbro science\b",
    )
)

MUSCLE_CATEGORY_MAP: dict[str, tuple[str, ...]] = {
    "chest": ("chest",),
    "pectorals": ("chest",),
    "pecs": ("chest",),
    "biceps": ("elbow_flexors",),
    "bicep": ("elbow_flexors",),
    "arms": ("elbow_flexors", "triceps", "forearms"),
    "triceps": ("triceps",),
    "tricep": ("triceps",),
    "shoulders": ("shoulders",),
    "delts": ("shoulders",),
    "deltoids": ("shoulders",),
    "back": ("back",),
    "lats": ("back",),
    "latissimus": ("back",),
    "rhomboids": ("back",),
    "traps": ("back",),
    "trapezius": ("back",),
    "legs": ("legs", "quadriceps", "hamstrings", "glutes", "calves", "adductors"),
    "quads": ("quadriceps",),
    "quadriceps": ("quadriceps",),
    "hamstrings": ("hamstrings",),
    "glutes": ("glutes",),
    "calves": ("calves",),
    "adductor": ("adductors",),
    "adductors": ("adductors",),
    "abs": ("abs",),
    "core": ("abs",),
    "abdominals": ("abs",),
    "forearms": ("forearms",),
    "forearm": ("forearms",),
}

# Mentions recognized as muscles but without a category of their own
MUSCLE_VOCABULARY: tuple[str, ...] = tuple(MUSCLE_CATEGORY_MAP) + (
    "neck",
    "hip flexors",
    "obliques",
)

_MUSCLE_PATTERN = re.compile(
    r"\b(" + "|".join(sorted((re.escape(m) for m in MUSCLE_VOCABULARY), key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

# Training concepts and the phrases that signal them, in query and in content
TRAINING_CONCEPTS: dict[str, tuple[str, ...]] = {
    "hypertrophy": ("hypertrophy", "muscle growth", "build muscle", "mass"),
    "strength": ("strength", "power", "1rm", "max"),
    "volume": ("volume", "sets", "reps"),
    "frequency": ("frequency", "times per week", "how often"),
    "progressive_overload": ("progressive overload", "progression", "increase"),
    "rep_ranges": ("rep range", "reps", "repetitions"),
    "rest_periods": ("rest", "recovery", "between sets"),
    "technique": ("form", "technique", "execution", "biomechanics"),
}

_CONCEPT_PATTERNS: dict[str, re.Pattern[str]] = {
    concept: re.compile(r"\b(" + "|".join(re.escape(p) for p in phrases) + r")\b", re.IGNORECASE)
    for concept, phrases in TRAINING_CONCEPTS.items()
}


def _contains_any(text: str, phrases: tuple[str, ...]) -> bool:
    return any(phrase in text for phrase in phrases)


def _matches_any(text: str, patterns: tuple[re.Pattern[str], ...]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def is_program_generation(query: str) -> bool:
    lowered = query.lower()
    return _contains_any(lowered, PROGRAM_GENERATION_KEYWORDS) or _matches_any(
        query, PROGRAM_GENERATION_PATTERNS
    )


def has_workout_structure(text: str) -> bool:
    """True when text looks like a pasted workout with sets and reps."""
    lowered = text.lower()
    indicators = sum(len(pattern.findall(text)) for pattern in WORKOUT_STRUCTURE_PATTERNS)
    exercises = sum(1 for name in EXERCISE_NAMES if name in lowered)
    return indicators >= MIN_STRUCTURE_INDICATORS and exercises >= MIN_RECOGNIZED_EXERCISES


def is_program_review(query: str) -> bool:
    lowered = query.lower()
    if _contains_any(lowered, PROGRAM_REVIEW_KEYWORDS) or _matches_any(query, PROGRAM_REVIEW_PATTERNS):
        return True
    return has_workout_structure(query)


def is_myth_check(query: str) -> bool:
    return _matches_any(query, MYTH_PATTERNS)


def find_muscles(query: str) -> list[str]:
    """Muscle words in order of first mention, lowercased and deduplicated."""
    muscles: list[str] = []
    for match in _MUSCLE_PATTERN.finditer(query):
        muscle = match.group(1).lower()
        if muscle not in muscles:
            muscles.append(muscle)
    return muscles


def find_training_concepts(query: str) -> list[str]:
    """Training concepts the query touches, in table order."""
    return [concept for concept, pattern in _CONCEPT_PATTERNS.items() if pattern.search(query)]


def mentions_concept(text: str, concept: str) -> bool:
    pattern = _CONCEPT_PATTERNS.get(concept)
    return bool(pattern and pattern.search(text))


def muscle_categories(muscles: list[str]) -> list[str]:
    """Map muscles to categories. Unmapped muscles are ignored."""
    categories: list[str] = []
    for muscle in muscles:
        for category in MUSCLE_CATEGORY_MAP.get(muscle, ()):
            if category not in categories:
                categories.append(category)
    return categories


def classify_intent(query: str) -> QueryIntent:
    """Classify a query into intent kinds and ordered priority categories.

    Kinds accumulate. Program review categories come first, then program
    generation, then muscle categories; the myths category is always last
    and always present.
    """
    kinds: set[IntentKind] = set()
    categories: list[str] = []

    muscles = find_muscles(query)
    mapped = muscle_categories(muscles)
    if muscles:
        kinds.add(IntentKind.MUSCLE_FOCUS)
    categories.extend(mapped)

    if is_program_generation(query):
        kinds.add(IntentKind.PROGRAM_GENERATION)
        categories = [PROGRAM_CATEGORY, PRINCIPLES_CATEGORY] + categories

    if is_program_review(query):
        kinds.add(IntentKind.PROGRAM_REVIEW)
        categories = [PROGRAM_REVIEW_CATEGORY, PROGRAM_CATEGORY] + categories

    if is_myth_check(query):
        kinds.add(IntentKind.MYTH_CHECK)
    categories.append(MYTHS_CATEGORY)

    if not kinds:
        kinds.add(IntentKind.NONE)

    ordered: list[str] = []
    for category in categories:
        if category not in ordered:
            ordered.append(category)

    return QueryIntent(
        kinds=frozenset(kinds),
        muscles=tuple(muscles),
        categories=tuple(ordered),
        muscle_categories=tuple(mapped),
        concepts=tuple(find_training_concepts(query)),
    )
