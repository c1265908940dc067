from nexus_forge.ai.providers.base import Provider, make_client
from nexus_forge.ai.providers.claude import CLAUDE_PROFILE, ClaudeProvider
from nexus_forge.ai.providers.ollama import OLLAMA_PROFILE, OllamaProvider
from nexus_forge.ai.providers.proxy import PROXY_PROFILE, ProxyProvider

__all__ = [
    "CLAUDE_PROFILE",
    "OLLAMA_PROFILE",
    "PROXY_PROFILE",
    "ClaudeProvider",
    "OllamaProvider",
    "Provider",
    "ProxyProvider",
    "make_client",
]
