"""Command-Line Interface handler for DualSub."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from tqdm import tqdm

from .config_loader import ConfigLoader, PipelineSettings
from .exceptions import ConfigurationError, DualSubError
from .log_setup import setup_logging
from .models import BatchMode, ProgressStatus, ProgressUpdate, SubtitleItem
from .orchestrator import PipelineOrchestrator
from .subtitle_formatter import SRTFormatter, read_items_json, write_items_json
from .utils import ensure_dir_exists

logger = logging.getLogger(__name__) # Get logger for this module


class ProgressBar:
    """Progress sink rendering chunk/group updates as a tqdm bar."""

    def __init__(self, unit: str):
        self.unit = unit
        self.bar: Optional[tqdm] = None
        self.failed = 0

    def __call__(self, update: ProgressUpdate) -> None:
        if self.bar is None and update.total:
            self.bar = tqdm(total=update.total, unit=self.unit, desc="Starting")
        if self.bar is None:
            return
        if update.status is ProgressStatus.PROCESSING:
            stage = update.stage.value if update.stage else update.message
            self.bar.set_description(f"{self.unit} {update.id}: {stage}")
        elif update.status is ProgressStatus.COMPLETED:
            self.bar.update(1)
        else:
            self.failed += 1
            self.bar.update(1)
            tqdm.write(f"{self.unit} {update.id} failed: {update.message}")

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()


def parse_batch_list(value: str) -> List[int]:
    """Parses ``"1,3,5-7"`` (1-based) into 0-based batch indices."""
    indices = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                first, last = (int(x) for x in part.split("-", 1))
                indices.extend(range(first - 1, last))
            else:
                indices.append(int(part) - 1)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid batch list: {value!r}")
    return indices


def parse_comments(values: Optional[List[str]]) -> Dict[int, str]:
    """Parses repeated ``N=text`` options (1-based batch numbers)."""
    comments: Dict[int, str] = {}
    for value in values or []:
        number, sep, text = value.partition("=")
        if not sep or not number.strip().isdigit():
            raise ConfigurationError(f"Invalid --comment {value!r}, expected N=text.")
        comments[int(number) - 1] = text.strip()
    return comments


def install_interrupt_handler(loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event) -> bool:
    """
    Makes the first Ctrl+C set ``cancel_event`` so finished work is still written.

    The handler removes itself when it fires, so a second Ctrl+C raises
    KeyboardInterrupt and aborts a run stuck on a hung call.

    Returns:
        False if the loop does not support signal handlers.
    """
    def on_interrupt() -> None:
        logger.warning("Ctrl+C received; finishing started work. Press Ctrl+C again to abort.")
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unsupported here; Ctrl+C will abort without partial output.")
        return False
    return True


class CLIHandler:
    """Parses arguments and runs the DualSub generate / regenerate commands."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            description="DualSub: Generate and refine bilingual subtitles for media files.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
        )
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            "-o", "--output-dir",
            required=True,
            help="Directory to save the subtitle files (.json and .srt)."
        )
        common.add_argument(
            "-c", "--config",
            default=None,
            help="Path to the configuration YAML file (defaults are used when omitted)."
        )
        common.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Set the logging level for console and file output."
        )
        common.add_argument(
            "--target-language",
            default=None, # Default taken from config
            help="Override the translation target language."
        )

        commands = parser.add_subparsers(dest="command", required=True)

        generate = commands.add_parser(
            "generate", parents=[common],
            help="Transcribe, refine and translate a media file.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        generate.add_argument("-i", "--input", required=True, help="Path to the input video or audio file.")
        generate.add_argument(
            "--chunk-duration", type=int, default=None,
            help="Override the chunk length in seconds."
        )

        regenerate = commands.add_parser(
            "regenerate", parents=[common],
            help="Proofread, re-time or re-translate selected batches of a subtitle JSON file.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        regenerate.add_argument("-s", "--subtitles", required=True, help="Subtitle JSON written by 'generate'.")
        regenerate.add_argument(
            "-m", "--mode", required=True, choices=[mode.value for mode in BatchMode],
            help="Regeneration mode."
        )
        regenerate.add_argument("-i", "--input", default=None, help="Source media (text-only when omitted).")
        selection = regenerate.add_mutually_exclusive_group(required=True)
        selection.add_argument("-b", "--batches", type=parse_batch_list, help="1-based batch numbers, e.g. 1,3,5-7.")
        selection.add_argument("--all", action="store_true", help="Regenerate every batch.")
        regenerate.add_argument(
            "--comment", action="append", metavar="N=TEXT",
            help="Instruction for batch N (repeatable)."
        )
        return parser

    def _load_settings(self, args: argparse.Namespace) -> PipelineSettings:
        settings = ConfigLoader().load_settings(args.config)
        return settings.with_overrides(
            target_language=args.target_language,
            chunk_duration=getattr(args, "chunk_duration", None),
        )

    @staticmethod
    def _write_outputs(items: List[SubtitleItem], output_dir: str, base_name: str, settings: PipelineSettings) -> None:
        ensure_dir_exists(output_dir)
        write_items_json(items, os.path.join(output_dir, f"{base_name}.json"))
        SRTFormatter().format_subtitles(items, os.path.join(output_dir, f"{base_name}.srt"), settings.output_mode)

    async def _run_async(self, args: argparse.Namespace, settings: PipelineSettings) -> None:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        install_interrupt_handler(loop, cancel_event)

        bar = ProgressBar("chunk" if args.command == "generate" else "batch")
        try:
            if args.command == "generate":
                if not os.path.isfile(args.input):
                    raise FileNotFoundError(f"Input media file not found or is not a file: {args.input}")
                orchestrator = PipelineOrchestrator.from_settings(settings, progress=bar, cancel_event=cancel_event)
                items = await orchestrator.generate(args.input)
                base_name = os.path.splitext(os.path.basename(args.input))[0]
            else:
                current = read_items_json(args.subtitles)
                mode = BatchMode(args.mode)
                selected = args.batches
                if args.all:
                    selected = range(-(-len(current) // settings.proofread_batch_size))
                orchestrator = PipelineOrchestrator.from_settings(
                    settings, with_transcriber=False, progress=bar, cancel_event=cancel_event
                )
                items = await orchestrator.regenerate(
                    args.input, current, selected, mode, parse_comments(args.comment)
                )
                base_name = os.path.splitext(os.path.basename(args.subtitles))[0]
        finally:
            bar.close()
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

        if cancel_event.is_set():
            logger.warning("Interrupted by user (Ctrl+C); writing partial results.")
        self._write_outputs(items, args.output_dir, base_name, settings)
        if bar.failed:
            logger.warning(f"{bar.failed} {bar.unit}(s) failed; see the log for details.")

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Parses arguments, sets up logging, loads config, and runs the command."""
        args = self.parser.parse_args(argv)

        # --- Setup Logging ---
        log_level = getattr(logging, args.log_level.upper(), logging.INFO)

        # Temporarily setup basic logging to catch config loading errors
        setup_logging(log_level=log_level, log_dir='logs', log_file='dualsub_init.log', console_stream=sys.stderr)

        # --- Load Configuration ---
        try:
            settings = self._load_settings(args)
        except (ConfigurationError, FileNotFoundError) as e:
            logger.critical(f"Failed to load configuration from {args.config}: {e}")
            sys.exit(1)

        # --- Re-configure Logging with settings from Config ---
        setup_logging(
            log_level=log_level, log_dir=settings.log_dir, log_file=settings.log_file,
            console_stream=sys.stderr, progress_bars=True,
        )
        logger.info("Logging re-configured with settings from config file.")

        try:
            asyncio.run(self._run_async(args, settings))
            logger.info("DualSub finished successfully.")
            sys.exit(0)
        except (DualSubError, FileNotFoundError) as e:
            # Catch errors originating from our application logic
            logger.error(f"A DualSub error occurred: {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            logger.warning("Process interrupted by user (Ctrl+C). Exiting.")
            sys.exit(1)
        except Exception as e:
            # Catch any other unexpected errors
            logger.critical(f"An unexpected critical error occurred at the top level: {e}", exc_info=True)
            sys.exit(2) # Use a different exit code for unexpected crashes


def main() -> None:
    """Console script entry point."""
    CLIHandler().run()
