"""Pytest configuration and fixtures for retrieval evaluations."""

import pytest

from coach_rag.core.config import Settings
from coach_rag.knowledge.config_store import StaticConfigStore
from coach_rag.knowledge.models import ChunkRecord, RetrievalConfiguration
from coach_rag.knowledge.pipeline import RetrievalPipeline
from coach_rag.knowledge.store import InMemoryChunkStore

# Each axis counts occurrences of its terms; the last axis is a constant bias
# so texts without any term still have a direction.
TOPIC_AXES: tuple[tuple[str, ...], ...] = (
    ("chest", "pec", "bench"),
    ("leg", "squat", "quad"),
    ("sets", "reps", "repetitions"),
    ("rest", "recovery"),
    ("volume", "weekly"),
    ("myth", "spot reduction"),
    ("hypertrophy", "muscle growth", "muscle building"),
    ("protein", "calorie"),
)
BIAS = 0.2


def keyword_vector(text: str) -> list[float]:
    lowered = text.lower()
    vector = [float(sum(lowered.count(term) for term in axis)) for axis in TOPIC_AXES]
    vector.append(BIAS)
    return vector


class KeywordEmbedder:
    """Deterministic embedder projecting text onto fixed topic axes."""

    name = "keyword"

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return keyword_vector(text)


# (item id, title, categories, chunk contents)
CORPUS: list[tuple[str, str, list[str], list[str]]] = [
    (
        "chest-hypertrophy-guide",
        "Chest Hypertrophy Guide",
        ["chest"],
        [
            "Bench press is the foundation of chest hypertrophy.",
            "Incline bench press targets the upper chest and pec fibres.",
            "Dumbbell flyes stretch the chest under load.",
            "Dips lean forward to bias the lower chest.",
        ],
    ),
    (
        "pec-anatomy",
        "Pec Anatomy",
        ["chest"],
        ["The pec major has clavicular and sternal heads; chest growth needs both."],
    ),
    (
        "chest-training-faq",
        "Chest Training FAQ",
        ["chest"],
        ["How often to train chest: twice weekly."],
    ),
    (
        "leg-day-guide",
        "Leg Day Guide",
        ["legs"],
        [
            "Squat deep to train the quad and glutes for leg hypertrophy.",
            "Leg press adds volume without spinal loading.",
        ],
    ),
    (
        "programming-basics",
        "Programming Basics",
        ["hypertrophy_principles"],
        [
            "Perform 3 to 4 sets of 8 to 12 reps per exercise for hypertrophy.",
            "Rest 2 to 3 minutes between sets to support muscle growth.",
        ],
    ),
    (
        "volume-guidelines",
        "Volume Guidelines",
        ["hypertrophy_principles"],
        ["Aim for 10 to 20 weekly sets per muscle group; volume drives muscle building."],
    ),
    (
        "myth-busting",
        "Myth Busting",
        ["myths"],
        ["Myth: spot reduction burns belly fat. Spot reduction is not supported."],
    ),
    (
        "nutrition-notes",
        "Nutrition Notes",
        ["nutrition"],
        ["Eat enough protein every day."],
    ),
]


@pytest.fixture
def corpus_records() -> list[ChunkRecord]:
    """The evaluation corpus embedded with the keyword embedder."""
    records: list[ChunkRecord] = []
    for item_id, title, categories, chunks in CORPUS:
        for index, content in enumerate(chunks):
            records.append(
                ChunkRecord(
                    id=f"{item_id}_c{index:02d}",
                    parent_item_id=item_id,
                    parent_title=title,
                    content=content,
                    chunk_index=index,
                    embedding=keyword_vector(content),
                    categories=categories,
                )
            )
    return records


@pytest.fixture
def eval_config() -> RetrievalConfiguration:
    return RetrievalConfiguration(
        similarity_threshold=0.3,
        high_relevance_threshold=0.85,
        max_chunks=4,
        per_source_cap=2,
    )


@pytest.fixture
def keyword_embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def eval_pipeline(corpus_records, eval_config, keyword_embedder, metrics) -> RetrievalPipeline:
    """Pipeline over the evaluation corpus."""
    return RetrievalPipeline(
        InMemoryChunkStore(corpus_records),
        StaticConfigStore(eval_config),
        keyword_embedder,
        settings=Settings(embedding_retry_base_delay_seconds=0.0),
        metrics=metrics,
    )
