"""Runtime settings loaded from environment variables."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from chapter2audio.segmenter import DEFAULT_MAX_CHUNK_CHARS, DEFAULT_MAX_FRAGMENT_BYTES
from chapter2audio.synthesizer import DEFAULT_TIMEOUT


@dataclass
class Settings:
    """Service configuration.

    Every field can be set from the environment (see :meth:`from_env`);
    CLI flags and request bodies override individual values per call.
    """
    db_path: str = "./data/chapter2audio.db"
    data_dir: str = "./data"
    public_base_url: str = "/media"
    engine: str = "edge"
    max_workers: int = 2
    synthesis_timeout: float = DEFAULT_TIMEOUT
    max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS
    max_fragment_bytes: int = DEFAULT_MAX_FRAGMENT_BYTES
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    storage_bucket: str = "audio-files"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            db_path=env.get("C2A_DB_PATH", defaults.db_path),
            data_dir=env.get("C2A_DATA_DIR", defaults.data_dir),
            public_base_url=env.get("C2A_PUBLIC_BASE_URL", defaults.public_base_url),
            engine=env.get("C2A_ENGINE", defaults.engine),
            max_workers=int(env.get("C2A_MAX_WORKERS", defaults.max_workers)),
            synthesis_timeout=float(env.get("C2A_SYNTHESIS_TIMEOUT", defaults.synthesis_timeout)),
            max_chunk_chars=int(env.get("C2A_MAX_CHUNK_CHARS", defaults.max_chunk_chars)),
            max_fragment_bytes=int(env.get("C2A_MAX_FRAGMENT_BYTES", defaults.max_fragment_bytes)),
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_service_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
            storage_bucket=env.get("C2A_STORAGE_BUCKET", defaults.storage_bucket),
        )

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)
