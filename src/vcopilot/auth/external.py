from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from vcopilot.atomic_io import read_json
from vcopilot.models import LongLivedCredential

_GITHUB_HOST = "github.com"
_STORAGE_FILES = ("hosts.json", "apps.json", "token.json")


def candidate_paths(home: Path | None = None, appdata: str | None = None) -> list[Path]:
    """Known VS Code Copilot storage locations, in search order."""
    home = Path.home() if home is None else home
    appdata = os.environ.get("APPDATA") if appdata is None else appdata

    roots = [
        home / "Library" / "Application Support" / "Code" / "User" / "globalStorage" / "github.copilot",
        home / ".config" / "Code" / "User" / "globalStorage" / "github.copilot",
        home / ".vscode-server" / "data" / "User" / "globalStorage" / "github.copilot",
        home / ".config" / "github-copilot",
    ]
    if appdata:
        roots.append(Path(appdata) / "Code" / "User" / "globalStorage" / "github.copilot")

    return [root / name for root in roots for name in _STORAGE_FILES]


def extract_token(data: dict) -> str | None:
    """Pull a GitHub token out of either known storage shape.

    Host map: ``{"github.com": "gho_..."}`` or ``{"github.com": {"oauth_token": ...}}``
    (apps.json keys look like ``"github.com:Iv1..."``).
    Token object: ``{"token": ...}`` or ``{"access_token": ...}``.
    """
    for key, value in data.items():
        if key == _GITHUB_HOST or key.startswith(f"{_GITHUB_HOST}:"):
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                nested = value.get("oauth_token") or value.get("token")
                if isinstance(nested, str) and nested:
                    return nested

    token = data.get("token") or data.get("access_token")
    if isinstance(token, str) and token:
        return token
    return None


def find_external_session(paths: list[Path] | None = None) -> LongLivedCredential | None:
    for path in paths if paths is not None else candidate_paths():
        if not path.exists():
            continue
        data = read_json(path)
        if data is None:
            continue
        token = extract_token(data)
        if token:
            logger.debug(f"Editor session token found in {path}")
            return LongLivedCredential(token=token, source=f"external:{path}")

    logger.debug("No editor session token found in any known location")
    return None
