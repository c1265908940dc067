"""Assemble prompt context from search hits within a token budget."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from nexus_forge.models import SearchHit

DEFAULT_CONTEXT_TOKENS = 6_000


def estimate_tokens(text: str) -> int:
    """Rough token count: four bytes per token."""
    return len(text.encode("utf-8")) // 4


@dataclass(frozen=True)
class ContextBlock:
    source: str
    content: str
    relevance: float

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


@dataclass
class ContextBuilder:
    max_tokens: int = DEFAULT_CONTEXT_TOKENS
    blocks: list[ContextBlock] = field(default_factory=list)

    def add(self, block: ContextBlock) -> None:
        self.blocks.append(block)
        # Stable: equal relevance keeps insertion order.
        self.blocks.sort(key=lambda b: -b.relevance)

    def add_hits(self, hits: Iterable[SearchHit], texts: dict[str, str] | None = None) -> None:
        for hit in hits:
            content = (texts or {}).get(hit.chunk_id, hit.snippet)
            source = f"{hit.path}:{hit.start_line}-{hit.end_line} ({hit.kind.value} {hit.symbol})"
            self.add(ContextBlock(source=source, content=content, relevance=hit.score))

    def build(self) -> str:
        parts: list[str] = []
        used = 0
        for block in self.blocks:
            if used + block.token_count > self.max_tokens:
                break
            parts.append(f"// Source: {block.source}\n{block.content}")
            used += block.token_count
        return "\n\n".join(parts)
