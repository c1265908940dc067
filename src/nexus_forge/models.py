from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Position(BaseModel):
    row: int
    column: int


class SyntaxNode(BaseModel):
    type: str
    start_byte: int
    end_byte: int
    start_point: Position
    end_point: Position
    name: str | None = None
    has_error: bool = False
    children: list["SyntaxNode"] | None = None


SyntaxNode.model_rebuild()  # necessary for recursive types


class SourceFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    language: str
    content: bytes
    mtime_ns: int = 0
    content_hash: str = ""


class ParseTree(BaseModel):
    source: SourceFile
    root: SyntaxNode
    error_count: int = 0


class ChunkKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    MODULE = "module"
    COMMENT_BLOCK = "comment_block"


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    kind: ChunkKind
    text: str
    path: str
    start_byte: int
    end_byte: int
    start_line: int
    end_line: int
    language: str
    parent_id: str | None = None


class FileStatus(str, Enum):
    OK = "ok"
    RECOVERABLE = "recoverable"


class FileRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    size: int
    mtime_ns: int
    content_hash: str
    language: str = ""
    chunk_count: int = 0
    status: FileStatus = FileStatus.OK


class IndexProblem(BaseModel):
    path: str
    kind: str
    message: str


class IndexStats(BaseModel):
    files_scanned: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    chunks_written: int = 0
    chunks_removed: int = 0
    recoverable_errors: int = 0
    fatal_errors: int = 0
    full_rebuild: bool = False
    duration_ms: int = 0
    problems: list[IndexProblem] = Field(default_factory=list)


class SearchHit(BaseModel):
    chunk_id: str
    symbol: str
    kind: ChunkKind
    path: str
    language: str
    start_byte: int
    end_byte: int
    start_line: int
    end_line: int
    parent_id: str | None = None
    snippet: str = ""
    score: float
