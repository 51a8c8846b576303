from __future__ import annotations

from pathlib import Path
from typing import Any, BinaryIO, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from .config import settings
from .errors import SourceUnavailable
from .logging_utils import get_logger

logger = get_logger(__name__)


class ObjectStore(Protocol):
    def get(self, container: str, key: str) -> BinaryIO:
        """Open the object body as a binary stream; the caller closes it."""


class FilesystemObjectStore:
    """Objects live at ``<root>/<container>/<key>``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, container: str, key: str) -> Path:
        container_root = (self.root / container).resolve()
        candidate = (container_root / key).resolve()
        if container_root not in candidate.parents:
            raise SourceUnavailable(f"object key escapes container: {container}/{key}")
        return candidate

    def get(self, container: str, key: str) -> BinaryIO:
        path = self._resolve(container, key)
        if not path.is_file():
            raise SourceUnavailable(f"No body for object {container}/{key}")
        return path.open("rb")

    def put(self, container: str, key: str, data: bytes) -> Path:
        path = self._resolve(container, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path


class S3ObjectStore:
    def __init__(self, client: Any) -> None:
        self.client = client

    def get(self, container: str, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=container, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            logger.warning(
                "object_store.get_failed bucket=%s key=%s code=%s", container, key, code
            )
            raise SourceUnavailable(f"No body for object s3://{container}/{key}: {code}") from exc
        body = response.get("Body")
        if body is None:
            raise SourceUnavailable(f"No body in S3 response for s3://{container}/{key}")
        return body


def _s3_client() -> Any:
    kwargs = {}
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.s3_region:
        kwargs["region_name"] = settings.s3_region
    return boto3.client("s3", **kwargs)


def build_object_store(backend: Optional[str] = None) -> ObjectStore:
    selected = (backend or settings.object_store_backend).lower()
    if selected == "s3":
        return S3ObjectStore(_s3_client())
    if selected == "filesystem":
        return FilesystemObjectStore(Path(settings.object_store_root))
    raise ValueError(f"unsupported object store backend: {selected}")
