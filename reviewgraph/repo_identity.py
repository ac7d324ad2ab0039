"""Stable repository identifiers derived from clone URLs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SSH_RE = re.compile(r"^git@([^:]+):(.+)$")


@dataclass
class RepoIdentity:
    repo_id: str
    workspace: Optional[str] = None
    repo_slug: Optional[str] = None
    host: Optional[str] = None


def repo_id_from_slug(workspace: str, repo_slug: str) -> str:
    return f"{workspace}/{repo_slug}"


def _path_parts(path: str) -> List[str]:
    cleaned = re.sub(r"\.git$", "", path.strip("/"), flags=re.IGNORECASE)
    return [p for p in cleaned.split("/") if p]


def _identity(host: str, parts: List[str]) -> RepoIdentity:
    if "bitbucket.org" in host and len(parts) >= 2:
        return RepoIdentity(
            repo_id=repo_id_from_slug(parts[0], parts[1]),
            workspace=parts[0],
            repo_slug=parts[1],
            host=host,
        )
    return RepoIdentity(repo_id=f"{host}/{'/'.join(parts)}", host=host)


def derive_repo_id(repo_url: str) -> RepoIdentity:
    """Bitbucket URLs map to ``workspace/slug``; anything else to ``host/path``.

    Credentials embedded in the URL never reach the identifier. An
    unparseable value is used verbatim.
    """
    trimmed = repo_url.strip()

    parsed = urlparse(trimmed)
    if parsed.scheme and parsed.hostname:
        host = parsed.hostname
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return _identity(host, _path_parts(parsed.path))

    match = SSH_RE.match(trimmed)
    if match:
        return _identity(match.group(1), _path_parts(match.group(2)))

    logger.warning("Failed to parse repo URL %r; using raw value as repo id", trimmed)
    return RepoIdentity(repo_id=trimmed)
