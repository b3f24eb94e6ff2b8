import argparse
import io
import json
import logging
import signal
import threading
from logging.handlers import RotatingFileHandler

import pytest

from dualsub.cli import install_interrupt_handler, parse_batch_list, parse_comments
from dualsub.exceptions import ConfigurationError, FileSystemError, FormattingError
from dualsub.log_setup import TqdmConsoleHandler, setup_logging
from dualsub.models import SubtitleItem
from dualsub.subtitle_formatter import SRTFormatter, read_items_json, write_items_json
from dualsub.transcriber import clean_non_speech, segments_from_raw
from dualsub.utils import (
    call_sink, ensure_dir_exists, format_time_srt, normalize_time_srt, parse_time_srt, shift_time_srt,
)


class TestTimeFormatting:
    def test_format(self):
        assert format_time_srt(0) == "00:00:00,000"
        assert format_time_srt(3725.5) == "01:02:05,500"
        assert format_time_srt(-3) == "00:00:00,000"

    @pytest.mark.parametrize("text, seconds", [
        ("01:02:05,500", 3725.5),
        ("01:02:05.5", 3725.5),
        ("02:05", 125.0),
        ("7.25", 7.25),
        ("", 0.0),
    ])
    def test_parse_loose_formats(self, text, seconds):
        assert parse_time_srt(text) == pytest.approx(seconds)

    def test_normalize_carries_overflowing_fields(self):
        assert normalize_time_srt("00:00:75.2") == "00:01:15,200"
        assert normalize_time_srt(" 1:2:3,45 ") == "01:02:03,450"
        assert normalize_time_srt("") == "00:00:00,000"

    def test_shift(self):
        assert shift_time_srt("00:00:10,000", 300) == "00:05:10,000"
        assert shift_time_srt("00:00:01,000", -5) == "00:00:00,000"


def test_ensure_dir_exists(tmp_path):
    target = tmp_path / "a" / "b"
    ensure_dir_exists(str(target))
    assert target.is_dir()
    blocker = tmp_path / "file.txt"
    blocker.write_text("x")
    with pytest.raises(FileSystemError):
        ensure_dir_exists(str(blocker))


def test_call_sink_swallows_callback_errors():
    received = []

    def broken(value):
        received.append(value)
        raise RuntimeError("ui went away")

    call_sink(broken, 1)
    call_sink(None, 2)
    assert received == [1]


class TestNonSpeech:
    def test_strips_annotations(self):
        assert clean_non_speech("[Music] Hello (laughter) there ♪") == "Hello there"
        assert clean_non_speech("（笑声）") == ""

    def test_segments_from_raw_drops_empty_and_incomplete(self):
        raw = [
            {"start": 0.0, "end": 1.0, "text": " [applause] "},
            {"start": 1.0, "end": 2.5, "text": " Hi. "},
            {"start": 3.0, "text": "no end"},
        ]
        result = segments_from_raw(raw)
        assert [(s.start_time, s.end_time, s.text) for s in result] == [(1.0, 2.5, "Hi.")]


def _items():
    return [
        SubtitleItem(1, "00:00:01,000", "00:00:02,500", "Hello", "你好"),
        SubtitleItem(2, "00:00:03,000", "00:00:03,000", "OK", "OK"),
        SubtitleItem(3, "00:00:05,000", "00:00:06,000", "Untranslated", "", comment="check"),
    ]


class TestSRTFormatter:
    def test_bilingual(self, tmp_path):
        path = tmp_path / "out.srt"
        SRTFormatter().format_subtitles(_items(), str(path))
        assert path.read_text(encoding="utf-8") == (
            "1\n00:00:01,000 --> 00:00:02,500\nHello\n你好\n\n"
            "2\n00:00:03,000 --> 00:00:03,100\nOK\n\n"
            "3\n00:00:05,000 --> 00:00:06,000\nUntranslated\n\n"
        )

    def test_target_only_falls_back_to_original(self, tmp_path):
        path = tmp_path / "out.srt"
        SRTFormatter().format_subtitles(_items(), str(path), mode="target_only")
        blocks = path.read_text(encoding="utf-8").strip().split("\n\n")
        assert [block.splitlines()[-1] for block in blocks] == ["你好", "OK", "Untranslated"]

    def test_unknown_mode(self, tmp_path):
        with pytest.raises(FormattingError):
            SRTFormatter().format_subtitles(_items(), str(tmp_path / "out.srt"), mode="karaoke")


class TestItemsJson:
    def test_write_then_read(self, tmp_path):
        path = str(tmp_path / "items.json")
        write_items_json(_items(), path)
        assert read_items_json(path) == _items()

    def test_read_normalizes_timestamps(self, tmp_path):
        path = tmp_path / "items.json"
        path.write_text(json.dumps([{"start_time": "0:0:1.5", "end_time": "00:00:02", "original": "hi"}]))
        item = read_items_json(str(path))[0]
        assert (item.id, item.start_time, item.end_time, item.translated) == (1, "00:00:01,500", "00:00:02,000", "")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_items_json(str(tmp_path / "absent.json"))

    @pytest.mark.parametrize("content", ['{"id": 1}', "not json", '[{"original": "no times"}]'])
    def test_invalid_content(self, tmp_path, content):
        path = tmp_path / "items.json"
        path.write_text(content)
        with pytest.raises(FormattingError):
            read_items_json(str(path))


class TestCliParsing:
    def test_batch_list(self):
        assert parse_batch_list("1,3,5-7") == [0, 2, 4, 5, 6]
        assert parse_batch_list(" 2 , ") == [1]

    def test_bad_batch_list(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_batch_list("1,x")

    def test_comments(self):
        assert parse_comments(["2=more formal", "5= names: Kenji "]) == {1: "more formal", 4: "names: Kenji"}
        assert parse_comments(None) == {}

    def test_bad_comment(self):
        with pytest.raises(ConfigurationError):
            parse_comments(["formal please"])


class FakeLoop:
    def __init__(self, supported=True):
        self.supported = supported
        self.handlers = {}

    def add_signal_handler(self, sig, callback):
        if not self.supported:
            raise NotImplementedError
        self.handlers[sig] = callback

    def remove_signal_handler(self, sig):
        return self.handlers.pop(sig, None) is not None


class TestInterruptHandler:
    def test_first_interrupt_cancels_and_unbinds(self):
        loop, cancel = FakeLoop(), threading.Event()
        assert install_interrupt_handler(loop, cancel)

        loop.handlers[signal.SIGINT]()

        assert cancel.is_set()
        # nothing bound any more: the next Ctrl+C reaches the default KeyboardInterrupt handler
        assert signal.SIGINT not in loop.handlers

    def test_unsupported_loop(self):
        cancel = threading.Event()
        assert not install_interrupt_handler(FakeLoop(supported=False), cancel)
        assert not cancel.is_set()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    for handler in handlers:
        root.removeHandler(handler)
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_writes_console_and_rotating_file(tmp_path, restore_root_logger):
    console = io.StringIO()
    setup_logging(logging.INFO, str(tmp_path / "logs"), "run.log", console_stream=console, progress_bars=True)
    logging.getLogger("dualsub.test").info("chunk 1/3: 12 subtitles ready")

    handlers = restore_root_logger.handlers
    assert any(isinstance(h, TqdmConsoleHandler) for h in handlers)
    assert any(isinstance(h, RotatingFileHandler) for h in handlers)
    assert "chunk 1/3: 12 subtitles ready" in console.getvalue()
    assert "[dualsub.test:" in (tmp_path / "logs" / "run.log").read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING
