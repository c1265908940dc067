import hashlib
import math
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import PurePosixPath
from typing import Protocol

import numpy as np
import numpy.typing as npt

from nexus_forge.models import Chunk

DEFAULT_DIMENSION = 1024
SYMBOL_WEIGHT = 3

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

_STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "do", "for", "from", "how", "if", "in", "into",
        "is", "it", "its", "me", "my", "no", "not", "of", "on", "or", "so", "that", "the", "then", "this",
        "to", "us", "was", "we", "what", "when", "where", "which", "with", "you",
        # language keywords that carry no meaning for retrieval
        "def", "fn", "func", "fun", "let", "var", "val", "const", "pub", "self", "return", "import",
        "use", "mut", "end", "new", "null", "none", "nil", "true", "false", "void", "static",
    }
)  # fmt: skip


class Embedder(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    def embed(self, texts: Sequence[str]) -> npt.NDArray[np.float32]: ...


def stem(token: str) -> str:
    """Strip common English suffixes so that ``handling`` and ``handle`` meet."""
    if token.endswith("ies") and len(token) > 4:
        token = token[:-3] + "y"
    else:
        for suffix in ("ing", "ed", "er", "es"):
            if token.endswith(suffix) and len(token) - len(suffix) >= 3:
                token = token[: -len(suffix)]
                break
        else:
            if token.endswith("s") and not token.endswith("ss") and len(token) > 3:
                token = token[:-1]
    if token.endswith("e") and len(token) > 3:
        token = token[:-1]
    return token


def split_identifier(identifier: str) -> list[str]:
    parts: list[str] = []
    for piece in identifier.split("_"):
        parts.extend(_CAMEL_RE.findall(piece))
    return parts


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    for identifier in _IDENTIFIER_RE.findall(text):
        for part in split_identifier(identifier):
            lowered = part.lower()
            if len(lowered) < 2 or lowered in _STOP_WORDS:
                continue
            tokens.append(stem(lowered))
    return tokens


def document_text(chunk: Chunk) -> str:
    """Text handed to the embedder for ``chunk``; the symbol name is repeated to weight it."""
    symbol_line = " ".join([chunk.symbol] * SYMBOL_WEIGHT)
    return f"{symbol_line}\n{PurePosixPath(chunk.path).stem}\n{chunk.text}"


class HashingEmbedder:
    """Feature-hashing bag of identifier tokens.

    Each token is hashed with blake2b into one of ``dimension`` buckets; bucket
    weights are ``1 + log(tf)`` and every row is L2-normalised, so all vectors
    are non-negative and cosine scores land in ``[0, 1]``. Texts without
    indexable tokens embed to the zero vector.
    """

    def __init__(self, dimension: int = DEFAULT_DIMENSION) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    @property
    def name(self) -> str:
        return "hashing-v1"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "little") % self._dimension

    def embed_tokens(self, tokens: Iterable[str]) -> npt.NDArray[np.float32]:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token, tf in Counter(tokens).items():
            vector[self._bucket(token)] += 1.0 + math.log(tf)
        norm = float(np.linalg.norm(vector))
        if norm > 0.0:
            vector /= norm
        return vector

    def embed(self, texts: Sequence[str]) -> npt.NDArray[np.float32]:
        matrix = np.zeros((len(texts), self._dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            matrix[row] = self.embed_tokens(tokenize(text))
        return matrix
