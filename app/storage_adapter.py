"""
Thin adapter over the hosted object store (Supabase Storage).
"""
import logging
import re
from functools import lru_cache
from typing import Iterable, List, Optional

from supabase import create_client

import app_config
from app_errors import InfrastructureException

logger = logging.getLogger(__name__)

_PUBLIC_PATH = re.compile(r"/storage/v1/object/public/([^/]+)/([^?]+)")


class ObjectStorage:

    def __init__(self, client):
        self.client = client

    def upload(self, bucket: str, path: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        """Store bytes under bucket/path and return the public URL."""
        try:
            store = self.client.storage.from_(bucket)
            store.upload(
                path=path,
                file=data,
                file_options={"content-type": content_type, "upsert": "true" if upsert else "false"},
            )
            url = store.get_public_url(path)
        except Exception as exc:
            logger.error("Storage upload failed for %s/%s: %s", bucket, path, exc)
            raise InfrastructureException(f"Storage upload failed: {exc}") from exc
        if not url:
            raise InfrastructureException("Storage did not return a public URL")
        return url.rstrip("?")

    def remove(self, bucket: str, paths: Iterable[str]) -> None:
        paths = [p for p in paths if p]
        if not paths:
            return
        try:
            self.client.storage.from_(bucket).remove(paths)
        except Exception as exc:
            logger.error("Storage removal failed for %d object(s) in %s: %s", len(paths), bucket, exc)
            raise InfrastructureException(f"Storage removal failed: {exc}") from exc


def path_from_public_url(url: str, bucket: str) -> Optional[str]:
    match = _PUBLIC_PATH.search(url or "")
    if not match or match.group(1) != bucket:
        return None
    return match.group(2)


def paths_from_public_urls(urls: Iterable[str], bucket: str) -> List[str]:
    paths = (path_from_public_url(url, bucket) for url in urls)
    return [p for p in paths if p]


@lru_cache(maxsize=1)
def get_object_storage() -> ObjectStorage:
    return ObjectStorage(create_client(app_config.SUPABASE_URL, app_config.SUPABASE_SERVICE_ROLE_KEY))
