"""
livescribe command line.

    livescribe record [--context TEXT] [--duration SECONDS]
    livescribe engines
    livescribe recover [--data-dir DIR]
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from .errors import DeviceError
from .logger import LOG_FILE, LivescribeLogger, get_logger
from .utils import ConfigManager

logger = get_logger(__name__)


def _load_config(config_path=None):
    ConfigManager.reset()
    ConfigManager.initialize(config_path=config_path)

    level = str(ConfigManager.get_config_value('misc', 'log_level') or "INFO").upper()
    LivescribeLogger.set_level(getattr(logging, level, logging.INFO))
    if ConfigManager.get_config_value('misc', 'print_to_terminal'):
        LivescribeLogger.enable_console(logging.WARNING)


def _make_console_sink():
    from .pipeline.transcript import TranscriptSink

    class ConsoleSink(TranscriptSink):
        """Prints committed lines; interim text is shown on a single rewritten line."""

        def deliver(self, lines, cumulative_word_count, cumulative_position):
            for line in lines:
                print(f"\r\033[K{line.format()}", flush=True)

        def preview(self, text, speaker):
            print(f"\r\033[K  ... {text[-70:]}", end="", flush=True)

    return ConsoleSink()


def cmd_record(args) -> int:
    from .pipeline.session import TranscriptionPipeline
    from .scheduler import Scheduler

    _load_config(args.config)

    scheduler = Scheduler()
    scheduler.start()
    pipeline = TranscriptionPipeline(_make_console_sink(), scheduler=scheduler)
    try:
        try:
            session_id = pipeline.start_session(args.context)
        except DeviceError as e:
            print(f"Cannot start recording: {e}")
            return 1
        except ValueError as e:
            print(f"Invalid settings: {e}")
            return 1

        print(f"Recording session {session_id}")
        if args.duration:
            print(f"Stopping after {args.duration:.0f}s (Ctrl+C to stop early)")
            threading.Event().wait(args.duration)
        else:
            print("Press Enter to stop")
            input()
    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        summary = pipeline.stop_session()
        scheduler.stop()

    if summary is not None:
        print(f"\nStopped after {summary.duration_ms / 1000:.1f}s: "
              f"{summary.line_count} lines, {summary.word_count} words "
              f"(backend: {summary.backend or 'none'})")
        if summary.transcription_error:
            print(f"Transcription stopped early: {summary.transcription_error}")
        print(f"Saved to: {summary.recording_dir}")
    return 0


def cmd_engines(args) -> int:
    from .engines import get_all_engines, get_all_recognizers
    from .engines.whisper_engine import WHISPER_MODELS

    print("Local engines:")
    for engine_id, engine_class in get_all_engines().items():
        status = "available" if engine_class.is_available() else f"missing ({engine_class.get_install_hint()})"
        print(f"  {engine_id:<20} {engine_class.ENGINE_NAME:<30} {status}")

    print("Streaming recognizers:")
    for recognizer_id, recognizer_class in get_all_recognizers().items():
        status = "available" if recognizer_class.is_available() else f"missing ({recognizer_class.get_install_hint()})"
        print(f"  {recognizer_id:<20} {recognizer_class.RECOGNIZER_NAME:<30} {status}")

    print("Whisper models:")
    for model in WHISPER_MODELS:
        languages = "multilingual" if model.multilingual else "english"
        print(f"  {model.id:<20} ~{model.size_mb}MB  {languages:<13} {model.description}")
    return 0


def cmd_recover(args) -> int:
    from .pipeline.recording import find_recoverable, recover

    _load_config(args.config)
    data_dir = args.data_dir or ConfigManager.get_config_value('misc', 'data_dir')

    directories = find_recoverable(data_dir)
    if not directories:
        print("Nothing to recover.")
        return 0
    for directory in directories:
        lines = recover(directory)
        print(f"Recovered {len(lines)} lines: {directory}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livescribe", description="Live audio transcription")
    parser.add_argument("--config", help="Path to config.yaml (default: $LIVESCRIBE_CONFIG or ./config.yaml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Record and transcribe a session")
    record.add_argument("--context", "-c", default="", help="Free-text session context stored in metadata")
    record.add_argument("--duration", "-d", type=float, default=None,
                        help="Stop after this many seconds (default: wait for Enter)")
    record.set_defaults(func=cmd_record)

    engines = subparsers.add_parser("engines", help="List transcription engines and availability")
    engines.set_defaults(func=cmd_engines)

    recover_parser = subparsers.add_parser("recover", help="Recover transcripts from sessions that crashed")
    recover_parser.add_argument("--data-dir", help="Data directory (default: misc.data_dir)")
    recover_parser.set_defaults(func=cmd_recover)
    return parser


def main(argv: List[str] = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except Exception as e:
        logger.exception(f"livescribe {args.command} failed")
        print(f"Error: {e} (details in {LOG_FILE})")
        return 1


if __name__ == "__main__":
    sys.exit(main())
