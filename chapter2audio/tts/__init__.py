"""Speech provider registry.

Engine modules register themselves with :func:`register_engine` when
imported; :func:`import_engines` imports the bundled ones.
"""

from chapter2audio.tts.base import TTSEngine

ENGINE_REGISTRY: dict[str, type[TTSEngine]] = {}


def register_engine(name: str):
    """Class decorator adding an engine to the registry under ``name``."""
    def decorator(cls):
        ENGINE_REGISTRY[name] = cls
        return cls
    return decorator


def get_engine(name: str) -> TTSEngine:
    """Instantiate a registered engine.

    Raises:
        ValueError: If no engine is registered under ``name``.
    """
    try:
        engine_cls = ENGINE_REGISTRY[name]
    except KeyError:
        available = ", ".join(sorted(ENGINE_REGISTRY)) or "(nessuno)"
        raise ValueError(f"Engine sconosciuto '{name}'. Disponibili: {available}") from None
    return engine_cls()


def list_engines() -> list[str]:
    return sorted(ENGINE_REGISTRY)


def describe_engines() -> list[dict]:
    """Registered engines with the provider voice behind each profile."""
    return [
        {
            "id": key,
            "voices": {profile.value: voice for profile, voice in cls.VOICE_PROFILES.items()},
        }
        for key, cls in sorted(ENGINE_REGISTRY.items())
    ]


def import_engines() -> None:
    import chapter2audio.tts.edge_engine  # noqa: F401
    import chapter2audio.tts.google_engine  # noqa: F401
