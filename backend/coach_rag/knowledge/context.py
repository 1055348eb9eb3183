"""Formats ranked chunks into the context block handed to the generator.

Each chunk is wrapped in a machine-parsable block::

    [[SOURCE id="item-1" index="3" title="Chest \\"Guide\\" \\[v2\\]" cite="[KB:item-1#3]"]]
    chunk content
    [[END SOURCE]]

Blocks are joined in rank order by ``BLOCK_SEPARATOR``. Content is never
truncated; chunks are bounded when they are created.
"""

import re

from coach_rag.knowledge.models import Citation, RetrievalCandidate

BLOCK_SEPARATOR = "\n\n---\n\n"
END_MARKER = "[[END SOURCE]]"

UNGROUNDED_NOTICE = (
    "No specific information was found in the knowledge base for this query. "
    "Use your general knowledge as a fallback, but clearly state that the answer "
    "is not backed by the knowledge base."
)

CITATION_INSTRUCTIONS = (
    "Cite every claim taken from a source with its cite marker, "
    "for example [KB:item-1#3]."
)

_HEADER_PATTERN = re.compile(
    r'^\[\[SOURCE id="(?P<id>(?:[^"\\]|\\.)*)" index="(?P<index>\d+)" '
    r'title="(?P<title>(?:[^"\\]|\\.)*)" cite="[^"]*"\]\]$'
)
_UNESCAPE_PATTERN = re.compile(r"\\(.)")


def escape_attribute(value: str) -> str:
    """Escape a header attribute so it cannot break the block syntax."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\r", " ").replace("\n", " ")
    # a bare "]]" would read as the end of the header
    return escaped.replace("]", "\\]")


def unescape_attribute(value: str) -> str:
    return _UNESCAPE_PATTERN.sub(lambda m: m.group(1), value)


def citation_for(candidate: RetrievalCandidate) -> Citation:
    return Citation(id=candidate.parent_item_id, index=candidate.chunk_index, title=candidate.title)


def citations_for(candidates: list[RetrievalCandidate]) -> list[Citation]:
    """Citations in rank order, one per fragment."""
    citations: list[Citation] = []
    seen: set[tuple[str, int]] = set()
    for candidate in candidates:
        if candidate.key in seen:
            continue
        seen.add(candidate.key)
        citations.append(citation_for(candidate))
    return citations


def format_block(candidate: RetrievalCandidate) -> str:
    citation = citation_for(candidate)
    header = (
        f'[[SOURCE id="{escape_attribute(candidate.parent_item_id)}" '
        f'index="{candidate.chunk_index}" '
        f'title="{escape_attribute(candidate.title)}" '
        f'cite="{citation.marker}"]]'
    )
    return f"{header}\n{candidate.content}\n{END_MARKER}"


def assemble(candidates: list[RetrievalCandidate]) -> str:
    """Build the context block in the given rank order.

    Returns:
        The joined blocks, or an empty string when there are no candidates.
    """
    if not candidates:
        return ""
    return BLOCK_SEPARATOR.join(format_block(candidate) for candidate in candidates)


def parse_context(context: str) -> list[tuple[Citation, str]]:
    """Recover (citation, content) pairs from an assembled context block."""
    blocks: list[tuple[Citation, str]] = []
    lines = context.split("\n")
    i = 0
    while i < len(lines):
        match = _HEADER_PATTERN.match(lines[i])
        if match is None:
            i += 1
            continue

        body: list[str] = []
        j = i + 1
        while j < len(lines) and lines[j] != END_MARKER:
            body.append(lines[j])
            j += 1
        if j >= len(lines):
            # unterminated block
            break

        citation = Citation(
            id=unescape_attribute(match.group("id")),
            index=int(match.group("index")),
            title=unescape_attribute(match.group("title")),
        )
        blocks.append((citation, "\n".join(body)))
        i = j + 1
    return blocks
