"""Error taxonomy shared by the parser, index, search and provider router."""

from __future__ import annotations


class NexusError(Exception):
    """Base class for every user-visible failure.

    ``kind`` is a short stable identifier printed by the CLI; ``hint`` is an
    optional remediation line.
    """

    kind = "error"
    hint: str | None = None

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint

    @property
    def message(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseError(NexusError):
    kind = "parse"

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class RecoverableSyntaxError(ParseError):
    """The file parsed into a best-effort tree containing error nodes."""

    kind = "parse.recoverable"

    def __init__(self, path: str, error_count: int) -> None:
        super().__init__(path, f"{error_count} syntax error node(s)")
        self.error_count = error_count


class FatalParseError(ParseError):
    """The file could not be read or parsed at all."""

    kind = "parse.fatal"


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------


class IndexingError(NexusError):
    kind = "index"


class IndexIOError(IndexingError):
    kind = "index.io"


class CorruptIndexError(IndexingError):
    kind = "index.corrupt"
    hint = "re-run `nexus index --force` to rebuild the index"


class ConcurrentIndexError(IndexingError):
    kind = "index.conflict"
    hint = "another `nexus index` is running for this repository; wait for it to finish"


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchError(NexusError):
    kind = "search"


class MalformedQueryError(SearchError):
    kind = "search.malformed_query"
    hint = "use words or identifiers, e.g. `nexus search \"parse config\"`"


class StoreUnavailableError(SearchError):
    kind = "search.store_unavailable"
    hint = "run `nexus index` first"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ProviderError(NexusError):
    """A backend call failed. ``retryable`` drives the router's retry policy."""

    kind = "provider"
    retryable = False

    def __init__(self, message: str, *, provider: str | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider


class AuthError(ProviderError):
    kind = "provider.auth"
    hint = "check that ANTHROPIC_API_KEY holds a valid key"


class RateLimitedError(ProviderError):
    kind = "provider.rate_limited"
    retryable = True

    def __init__(self, message: str, *, provider: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    kind = "provider.timeout"
    retryable = True


class MalformedRequestError(ProviderError):
    kind = "provider.malformed"


class UnreachableError(ProviderError):
    kind = "provider.unreachable"
    retryable = True
    hint = "check your network connection or NEXUS_PROXY_URL"


class TruncatedStreamError(UnreachableError):
    """The connection closed before the backend sent its end marker."""

    kind = "provider.truncated"
    hint = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class RouterError(NexusError):
    kind = "router"


class NoProviderAvailable(RouterError):
    kind = "router.no_provider"
    hint = "set ANTHROPIC_API_KEY or check network"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(NexusError):
    kind = "config"
    hint = "run `nexus init --force` to write a fresh configuration file"
