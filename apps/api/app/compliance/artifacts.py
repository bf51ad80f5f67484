from __future__ import annotations

import re
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from app.compliance.errors import ArtifactExpired, InvalidRequest

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def url(self, key: str, ttl: timedelta) -> str: ...


def export_artifact_key(request_id: object) -> str:
    return f"export-{request_id}.json"


class LocalArtifactStore:
    """Blob store on local disk with signed, expiring download links."""

    def __init__(
        self,
        base_dir: str | Path | None,
        secret: str,
        *,
        algorithm: str = "HS256",
        base_url: str = "/api/compliance/artifacts",
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir()) / "leadcrm_artifacts"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.secret = secret
        self.algorithm = algorithm
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key) or key.startswith("."):
            raise InvalidRequest(f"Invalid artifact key: {key}")
        return self.base_dir / key

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        partial = path.with_name(f".{key}.partial")
        partial.write_bytes(data)
        partial.replace(path)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(f"artifact not found: {key}")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def url(self, key: str, ttl: timedelta) -> str:
        self._path(key)
        expires_at = datetime.now(timezone.utc) + ttl
        token = jwt.encode(
            {"sub": key, "purpose": "artifact", "exp": int(expires_at.timestamp())},
            self.secret,
            algorithm=self.algorithm,
        )
        return f"{self.base_url}/{key}?token={token}"

    def resolve(self, key: str, token: str) -> bytes:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise ArtifactExpired(f"Download link for {key} has expired") from exc
        except JWTError as exc:
            raise InvalidRequest("Invalid artifact token") from exc
        if payload.get("sub") != key or payload.get("purpose") != "artifact":
            raise InvalidRequest("Artifact token does not match key")
        return self.get(key)
