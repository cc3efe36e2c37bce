"""FastAPI web interface for chapter2audio."""

import json
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from chapter2audio.config import Settings
from chapter2audio.errors import (
    AudioPipelineError,
    ChapterNotFoundError,
    JobAlreadyActiveError,
    PermissionDeniedError,
    ValidationError,
)
from chapter2audio.feed import ChangeFeed, JobStateChanged
from chapter2audio.models import JobState
from chapter2audio.pipeline import AudioService, create_service
from chapter2audio.storage import LocalObjectStorage

logger = logging.getLogger(__name__)

# How often the SSE stream wakes up when no event arrives
SSE_POLL_SECONDS = 0.5


# --- Pydantic models ---

class GenerateRequest(BaseModel):
    text: Optional[str] = None
    voice: Optional[str] = None
    regenerate: bool = True
    request_key: Optional[str] = None


class VoicePreferenceRequest(BaseModel):
    voice: str


def _http_error(e: AudioPipelineError) -> HTTPException:
    if isinstance(e, ChapterNotFoundError):
        return HTTPException(404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(400, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        return HTTPException(403, detail=str(e))
    if isinstance(e, JobAlreadyActiveError):
        return HTTPException(409, detail=str(e))
    return HTTPException(500, detail=str(e))


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(401, detail="Utente non autenticato")
    return user_id


# --- App factory ---

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[AudioService] = None,
    feed: Optional[ChangeFeed] = None,
) -> FastAPI:
    app = FastAPI(title="chapter2audio", version="0.1.0")
    settings = settings or Settings.from_env()
    if service is None:
        feed = feed or ChangeFeed()
        service = create_service(settings, feed)
    else:
        feed = feed or service.feed or ChangeFeed()

    app.state.service = service
    app.state.feed = feed

    # --- Routes ---

    @app.get("/api/engines")
    async def list_engines_route():
        from chapter2audio.tts import describe_engines, import_engines
        import_engines()
        return {"engines": describe_engines()}

    @app.get("/api/voices")
    async def list_voices_route(engine: str, language: str = "en"):
        from chapter2audio.tts import get_engine, import_engines
        import_engines()
        try:
            eng = get_engine(engine)
            eng.initialize()
            voices = eng.list_voices(language)
            return {"voices": voices}
        except (ValueError, RuntimeError) as e:
            raise HTTPException(400, detail=str(e))

    @app.post("/api/chapters/{chapter_id}/audio", status_code=202)
    async def generate_audio(
        chapter_id: str,
        req: GenerateRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        try:
            job = service.generate(
                chapter_id, user_id, req.text, req.voice,
                request_key=req.request_key, regenerate=req.regenerate,
            )
        except AudioPipelineError as e:
            raise _http_error(e)
        return {"job_id": job.id, "state": job.state.value}

    @app.get("/api/chapters/{chapter_id}/audio")
    async def get_job_status(chapter_id: str):
        job = service.job_status(chapter_id)
        if not job:
            raise HTTPException(404, detail="Job non trovato")
        return job.to_dict()

    @app.get("/api/chapters/{chapter_id}/audio/history")
    async def get_job_history(chapter_id: str):
        return {"jobs": [job.to_dict() for job in service.job_history(chapter_id)]}

    @app.get("/api/chapters/{chapter_id}/events")
    async def job_events(chapter_id: str):
        async def event_generator():
            # The subscription only exists while the stream runs. Subscribe
            # before reading the snapshot so no transition falls in between.
            subscription = feed.subscribe(JobStateChanged.topic, chapter_id)
            last_sequence = -1
            try:
                current = service.job_status(chapter_id)
                if current is not None:
                    snapshot = JobStateChanged.from_job(current)
                    last_sequence = snapshot.sequence
                    yield {"event": "job", "data": json.dumps(snapshot.to_dict())}
                    if current.state.is_terminal:
                        return

                while True:
                    event = await subscription.aget(timeout=SSE_POLL_SECONDS)
                    if event is None:
                        if subscription.closed:
                            return
                        continue
                    if event.sequence <= last_sequence:
                        continue
                    last_sequence = event.sequence
                    yield {"event": "job", "data": json.dumps(event.to_dict())}
                    if JobState(event.state).is_terminal:
                        return
            finally:
                subscription.close()

        return EventSourceResponse(event_generator())

    @app.post("/api/books/{book_id}/voice-preference")
    async def set_voice_preference(
        book_id: str,
        req: VoicePreferenceRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        user_id = _require_user(x_user_id)
        try:
            profile = service.set_voice_preference(book_id, user_id, req.voice)
        except AudioPipelineError as e:
            raise _http_error(e)
        return {"book_id": book_id, "voice": profile.value}

    storage = service.publisher.storage
    if isinstance(storage, LocalObjectStorage):

        @app.get("/media/{key:path}")
        async def get_media(key: str):
            try:
                path = storage.path_for(key)
            except AudioPipelineError:
                raise HTTPException(404, detail="File non trovato")
            if not path.is_file():
                raise HTTPException(404, detail="File non trovato")
            return FileResponse(str(path), media_type="audio/mpeg")

    return app


# --- CLI entry point ---

def main():
    """Run the chapter2audio web server."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="chapter2audio web interface")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--data-dir", default=None, help="Directory per database e audio")
    parser.add_argument("--verbose", action="store_true", help="Abilita log dettagliati")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = Settings.from_env()
    if args.data_dir:
        settings.data_dir = args.data_dir
        settings.db_path = str(Path(args.data_dir) / "chapter2audio.db")

    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
