"""Command-line interface for chapter2audio."""

import argparse
import logging
import sys
from pathlib import Path

from chapter2audio import __version__
from chapter2audio.errors import AudioPipelineError
from chapter2audio.models import VoiceProfile
from chapter2audio.segmenter import DEFAULT_MAX_CHUNK_CHARS, DEFAULT_MAX_FRAGMENT_BYTES
from chapter2audio.synthesizer import DEFAULT_TIMEOUT


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="chapter2audio",
        description="Converti il testo di un capitolo in audio MP3 narrato",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument(
        "input_file",
        nargs="?",
        help="File di testo (UTF-8) da convertire",
    )
    parser.add_argument(
        "output_file",
        nargs="?",
        help="File MP3 di output (default: stesso nome dell'input con .mp3)",
    )

    parser.add_argument(
        "-e", "--engine",
        default="edge",
        choices=["edge", "google"],
        help="Motore TTS da usare (default: edge)",
    )
    parser.add_argument(
        "-v", "--voice",
        default=VoiceProfile.FEMALE.value,
        choices=[p.value for p in VoiceProfile],
        help="Profilo voce (default: female)",
    )
    parser.add_argument(
        "-s", "--speed",
        type=float,
        default=1.0,
        help="Velocità di lettura (default: 1.0)",
    )
    parser.add_argument(
        "-l", "--language",
        default="en-US",
        help="Codice lingua (default: en-US)",
    )
    parser.add_argument(
        "--list-voices",
        action="store_true",
        help="Elenca le voci disponibili per l'engine selezionato ed esci",
    )
    parser.add_argument(
        "-j", "--max-workers",
        type=int,
        default=1,
        help="Richieste TTS in parallelo (default: 1)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Timeout per richiesta TTS in secondi (default: {DEFAULT_TIMEOUT:g})",
    )
    parser.add_argument(
        "--max-chunk-chars",
        type=int,
        default=DEFAULT_MAX_CHUNK_CHARS,
        help=f"Caratteri massimi per blocco (default: {DEFAULT_MAX_CHUNK_CHARS})",
    )
    parser.add_argument(
        "--max-fragment-bytes",
        type=int,
        default=DEFAULT_MAX_FRAGMENT_BYTES,
        help=f"Byte massimi per frase (default: {DEFAULT_MAX_FRAGMENT_BYTES})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Abilita log dettagliati",
    )

    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    from chapter2audio.tts import get_engine, import_engines

    import_engines()

    # Handle --list-voices
    if args.list_voices:
        engine = get_engine(args.engine)
        engine.initialize()
        voices = engine.list_voices(args.language)
        if not voices:
            print(f"Nessuna voce trovata per lingua '{args.language}' con engine '{args.engine}'")
            sys.exit(0)
        print(f"\nVoci disponibili ({engine.name}, lingua: {args.language}):\n")
        for v in voices:
            gender = v.get("gender", "")
            print(f"  {v['name']:<35} {v['language']:<10} {gender}")
        sys.exit(0)

    # Validate input file
    if not args.input_file:
        parser.error("Specificare il file di testo da convertire")

    input_path = Path(args.input_file)
    if not input_path.exists():
        parser.error(f"File non trovato: {input_path}")

    if args.output_file:
        output_path = Path(args.output_file)
    else:
        output_path = input_path.with_suffix(".mp3")

    engine = get_engine(args.engine)
    engine.initialize()

    from chapter2audio.audio.assembler import assemble
    from chapter2audio.progress import ProgressReporter
    from chapter2audio.segmenter import segment
    from chapter2audio.synthesizer import Synthesizer

    synthesizer = Synthesizer(
        engine, timeout=args.timeout, speed=args.speed, language=args.language,
    )

    reporter = None
    try:
        text = input_path.read_text(encoding="utf-8")
        chunks = segment(text, args.max_chunk_chars, args.max_fragment_bytes)
        logging.info("%d blocchi da sintetizzare con %s", len(chunks), engine.name)

        reporter = ProgressReporter(len(chunks))
        audio = synthesizer.synthesize_all(
            chunks, args.voice, max_workers=args.max_workers, on_progress=reporter.update,
        )
        artifact, duration = assemble(audio)
        output_path.write_bytes(artifact)
    except KeyboardInterrupt:
        print("\n\nConversione interrotta.")
        sys.exit(1)
    except (AudioPipelineError, OSError) as e:
        logging.error("Errore: %s", e)
        if args.verbose:
            logging.exception("Dettagli:")
        sys.exit(1)
    finally:
        if reporter:
            reporter.close()

    print(f"\nAudio creato: {output_path} (~{duration}s)")


if __name__ == "__main__":
    main()
