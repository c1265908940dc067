from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OperationKind(str, Enum):
    GENERATE = "generate"
    CHAT = "chat"
    ASK = "ask"
    EXPLAIN = "explain"
    REVIEW = "review"
    FIX = "fix"
    TEST = "test"
    COMMIT = "commit"
    DOC = "doc"
    REFACTOR = "refactor"
    DIFF = "diff"
    CONVERT = "convert"
    OPTIMIZE = "optimize"


ALL_OPERATIONS: frozenset[OperationKind] = frozenset(OperationKind)


class ProviderKind(str, Enum):
    DIRECT = "direct"
    PROXY = "proxy"
    LOCAL = "local"


class RouterState(str, Enum):
    INIT = "init"
    SELECTING = "selecting"
    CALLING = "calling"
    STREAMING = "streaming"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResponseStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProviderProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: ProviderKind
    requires_key: bool
    capabilities: frozenset[OperationKind] = ALL_OPERATIONS
    max_prompt_bytes: int = 400_000
    requests_per_minute: int | None = None

    def supports(self, operation: OperationKind) -> bool:
        return operation in self.capabilities


class ChatTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    content: str


class Request(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: OperationKind
    prompt: str
    context: str | None = None
    language: str | None = None
    history: tuple[ChatTurn, ...] = ()
    prefill: str = ""

    @property
    def payload_bytes(self) -> int:
        size = len(self.prompt.encode("utf-8")) + len((self.context or "").encode("utf-8"))
        return size + sum(len(turn.content.encode("utf-8")) for turn in self.history)

    def resumed(self, emitted: str) -> "Request":
        return self.model_copy(update={"prefill": emitted})


class Response(BaseModel):
    status: ResponseStatus
    text: str = ""
    error: str | None = None
    error_kind: str | None = None
    hint: str | None = None
    byte_count: int = 0
    token_count: int | None = None
    backend: str | None = None
    attempts: int = 0
    backends_tried: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.COMPLETED


@dataclass(frozen=True)
class Fragment:
    """One piece of provider output; ``output_tokens`` is set when the backend reports usage."""

    text: str = ""
    output_tokens: int | None = None


class EndpointSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str
    model: str | None = None
    max_tokens: int = 4096
    timeout_seconds: float = 60.0


class RouterConfig(BaseModel):
    """Everything the router needs, resolved once and passed in explicitly."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    default_provider: str = "claude"
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    claude: EndpointSettings = EndpointSettings(
        base_url="https://api.anthropic.com",
        model="claude-sonnet-4-20250514",
        timeout_seconds=120.0,
    )
    proxy: EndpointSettings = EndpointSettings(base_url="https://api-nexus.mustafasarac.com", timeout_seconds=60.0)
    ollama: EndpointSettings = EndpointSettings(
        base_url="http://localhost:11434",
        model="codellama",
        timeout_seconds=300.0,
    )

    @property
    def has_direct_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())
