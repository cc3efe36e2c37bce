"""Artifact publishing - upload assembled audio and return a public reference."""

import logging
import os
import re
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path

from chapter2audio.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

# Timeout for HTTP requests (seconds)
REQUEST_TIMEOUT = 60

CONTENT_TYPE_EXTENSIONS = {
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
}

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def check_chapter_id(chapter_id: str) -> str:
    """Reject ids that cannot be used as a storage key segment.

    Raises:
        ValidationError: If the id has characters outside ``[A-Za-z0-9_-]``.
    """
    if not _SAFE_ID_RE.match(chapter_id):
        raise ValidationError(f"Identificativo capitolo non valido: {chapter_id!r}")
    return chapter_id


class ObjectStorage(ABC):
    """Binary blob store keyed by path."""

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``, replacing any existing object.

        Raises:
            StorageError: If the upload fails.
        """
        ...

    @abstractmethod
    def public_url(self, key: str) -> str:
        ...


class LocalObjectStorage(ObjectStorage):
    """Stores objects under a directory, served by the web app at ``public_base_url``."""

    def __init__(self, root, public_base_url: str = "/media"):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Percorso non valido: {key}")
        return path

    def upload(self, key: str, data: bytes, content_type: str) -> None:
        dest = self.path_for(key)
        tmp = dest.with_suffix(dest.suffix + ".tmp")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Scrittura fallita per {key}: {e}") from e

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"


class SupabaseObjectStorage(ObjectStorage):
    """Uploads to a Supabase Storage bucket through its REST API."""

    def __init__(self, url: str, service_key: str, bucket: str = "audio-files"):
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket

    def upload(self, key: str, data: bytes, content_type: str) -> None:
        endpoint = f"{self.url}/storage/v1/object/{self.bucket}/{urllib.parse.quote(key)}"
        req = urllib.request.Request(
            endpoint,
            data=data,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
                "Content-Type": content_type,
                "x-upsert": "true",
                "User-Agent": "chapter2audio/0.1",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=REQUEST_TIMEOUT) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            raise StorageError(f"Upload fallito ({e.code}): {detail}") from e
        except (urllib.error.URLError, OSError) as e:
            raise StorageError(f"Upload fallito: {e}") from e

    def public_url(self, key: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{urllib.parse.quote(key)}"


class ArtifactPublisher:
    """Uploads artifacts under ``audio/{chapter_id}{ext}``.

    The key only depends on the chapter, so regenerating overwrites the
    previous object instead of leaving orphans behind.
    """

    def __init__(self, storage: ObjectStorage):
        self.storage = storage

    @staticmethod
    def key_for(chapter_id: str, content_type: str) -> str:
        check_chapter_id(chapter_id)
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type, ".bin")
        return f"audio/{chapter_id}{ext}"

    def publish(self, chapter_id: str, artifact: bytes, content_type: str = "audio/mpeg") -> str:
        key = self.key_for(chapter_id, content_type)
        logger.info("Upload audio %s (%d byte)", key, len(artifact))
        try:
            self.storage.upload(key, artifact, content_type)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload fallito per {key}: {e}") from e
        return self.storage.public_url(key)
