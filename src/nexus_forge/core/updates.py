import logging
import re
import subprocess
import sys

import httpx

from nexus_forge.errors import UnreachableError

logger = logging.getLogger(__name__)

DISTRIBUTION = "nexus-forge"
PYPI_JSON_URL = f"https://pypi.org/pypi/{DISTRIBUTION}/json"

_NUMERIC_PREFIX = re.compile(r"\d+")


def version_key(version: str) -> tuple[int, ...]:
    """Numeric release segments of ``version``; pre-release suffixes are ignored."""
    parts: list[int] = []
    for segment in version.strip().lstrip("v").split("."):
        match = _NUMERIC_PREFIX.match(segment)
        if match is None:
            break
        parts.append(int(match.group()))
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def is_newer(candidate: str, current: str) -> bool:
    return version_key(candidate) > version_key(current)


async def fetch_latest_version(client: httpx.AsyncClient, url: str = PYPI_JSON_URL) -> str:
    try:
        response = await client.get(url, timeout=10.0)
        response.raise_for_status()
        return str(response.json()["info"]["version"])
    except (httpx.HTTPError, KeyError, ValueError) as exc:
        raise UnreachableError(f"Could not check {url}: {exc}", provider="pypi") from exc


def upgrade_command(force: bool = False) -> list[str]:
    command = [sys.executable, "-m", "pip", "install", "--upgrade", DISTRIBUTION]
    if force:
        command.insert(-1, "--force-reinstall")
    return command


def run_upgrade(force: bool = False) -> int:
    command = upgrade_command(force)
    logger.info("Running %s", " ".join(command))
    return subprocess.run(command, check=False).returncode
