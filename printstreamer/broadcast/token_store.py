"""OAuth token persistence."""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from printstreamer.utils.files import atomic_write_json

logger = logging.getLogger(__name__)


@dataclass
class OAuthToken:
    """Token file contents. Field names match the JSON keys."""

    access_token: str = ""
    refresh_token: str = ""
    expires_in: Optional[int] = None
    scope: str = ""
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthToken":
        expires_in = data.get("expires_in")
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=data.get("scope") or "",
            token_type=data.get("token_type") or "Bearer",
        )

    def __repr__(self) -> str:
        return (
            f"OAuthToken(access_token=***, refresh_token=***, expires_in={self.expires_in!r}, "
            f"scope={self.scope!r}, token_type={self.token_type!r})"
        )


class TokenStore:
    """Reads and atomically writes the token file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[OAuthToken]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Token file {self.path} unreadable: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Token file {self.path} has unexpected content")
            return None
        return OAuthToken.from_dict(data)

    def save(self, token: OAuthToken) -> None:
        atomic_write_json(self.path, token.to_dict())
        logger.debug(f"Token file {self.path} updated")
