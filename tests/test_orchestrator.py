import asyncio
import json
import logging
from dataclasses import replace

import pytest

from dualsub.config_loader import PipelineSettings
from dualsub.exceptions import AudioProcessingError, ConfigurationError, TranscriptionError
from dualsub.models import BatchMode, ProgressStatus, SubtitleItem
from dualsub.orchestrator import PipelineOrchestrator
from dualsub.retry import RetryPolicy
from dualsub.schemas import BATCH_SCHEMA, TRANSLATION_SCHEMA
from dualsub.usage import UsageReporter
from dualsub.utils import format_time_srt, parse_time_srt

from fakes import (
    FakeAudioProcessor, FakeModelAdapter, FakeTranscriber, default_handler, has_audio, request_payload,
    request_text, segments,
)


def make_items(count):
    return [
        SubtitleItem(
            id=i, start_time=format_time_srt(i * 3), end_time=format_time_srt(i * 3 + 2),
            original=f"o{i}", translated=f"t{i}",
        )
        for i in range(1, count + 1)
    ]


def orchestrator(settings=None, handler=default_handler, transcriber=None, audio_processor=None, **kwargs):
    return PipelineOrchestrator(
        settings or PipelineSettings(),
        audio_processor or FakeAudioProcessor(duration=100),
        FakeModelAdapter(handler),
        transcriber=transcriber,
        policy=RetryPolicy(max_attempts=1),
        **kwargs,
    )


class TestGenerate:
    def test_failed_middle_chunk_keeps_chunk_order(self):
        updates, snapshots = [], []
        transcriber = FakeTranscriber(
            {0: segments(5, prefix="first"), 600: segments(3, prefix="third")},
            delays={0: 0.05},
            failures={300: TranscriptionError("decoder crashed")},
        )
        pipeline = orchestrator(
            PipelineSettings(chunk_duration=300),
            transcriber=transcriber,
            audio_processor=FakeAudioProcessor(duration=700),
            progress=updates.append,
            on_snapshot=snapshots.append,
        )

        result = asyncio.run(pipeline.generate("movie.mp4"))

        assert sorted(transcriber.calls) == [0, 300, 600]
        assert [i.id for i in result] == list(range(1, 9))
        assert [i.original for i in result] == [f"first {n}" for n in range(1, 6)] + [f"third {n}" for n in range(1, 4)]
        assert all(parse_time_srt(i.start_time) < 300 for i in result[:5])
        assert all(parse_time_srt(i.start_time) >= 600 for i in result[5:])
        assert result[5].start_time == "00:10:01,000"
        assert result[0].translated == "T:first 1"

        errors = [u for u in updates if u.status is ProgressStatus.ERROR]
        assert [u.id for u in errors] == [2]
        assert "decoder crashed" in errors[0].message

        # the short last chunk finishes first, the slow first chunk last
        assert [len(s) for s in snapshots] == [3, 8]
        assert [i.id for i in snapshots[0]] == [1, 2, 3]

    def test_requires_transcriber(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(orchestrator().generate("movie.mp4"))

    def test_cancel_returns_completed_chunks(self):
        cancel = asyncio.Event()

        def progress(update):
            if update.status is ProgressStatus.COMPLETED:
                cancel.set()

        transcriber = FakeTranscriber({0: segments(2), 300: segments(2), 600: segments(2)})
        pipeline = orchestrator(
            PipelineSettings(chunk_duration=300, concurrency_flash=1),
            transcriber=transcriber,
            audio_processor=FakeAudioProcessor(duration=900),
            progress=progress,
            cancel_event=cancel,
        )
        result = asyncio.run(pipeline.generate("movie.mp4"))

        assert transcriber.calls == [0]
        assert [i.id for i in result] == [1, 2]
        assert pipeline.cancelled


class TestRegenerate:
    def test_merged_group_replaces_its_batches_in_place(self):
        def merge(request):
            payload = request_payload(request)
            assert [entry["id"] for entry in payload] == [1, 2, 3, 4]
            return json.dumps([
                dict(payload[0], text_translated="merged a"),
                dict(payload[1], text_translated="merged b"),
            ])

        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), merge)
        result = asyncio.run(pipeline.regenerate(None, make_items(6), [0, 1], BatchMode.RETRANSLATE))

        assert [i.id for i in result] == [1, 2, 3, 4]
        assert [i.translated for i in result] == ["merged a", "merged b", "t5", "t6"]
        assert [i.original for i in result[2:]] == ["o5", "o6"]

    def test_proofread_slices_media_for_selected_batch(self):
        updates = []
        audio_processor = FakeAudioProcessor(duration=100)
        pipeline = orchestrator(
            PipelineSettings(proofread_batch_size=2), audio_processor=audio_processor, progress=updates.append,
        )
        items = make_items(6)
        result = asyncio.run(pipeline.regenerate("movie.mp4", items, [1], BatchMode.PROOFREAD))

        assert audio_processor.slices == [(8.0, 15.0)]
        request = pipeline.adapter.requests[0]
        assert has_audio(request)
        assert request.model == "gemini-2.5-pro"
        assert 'Previous batch ended at: "00:00:08,000"' in request_text(request)
        assert [(i.start_time, i.translated) for i in result] == [(i.start_time, i.translated) for i in items]
        assert {u.id for u in updates} == {"2"}

    def test_decode_failure_falls_back_to_text_only(self):
        class BrokenAudio(FakeAudioProcessor):
            def decode(self, media_path):
                raise AudioProcessingError("no audio stream")

        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), audio_processor=BrokenAudio())
        result = asyncio.run(pipeline.regenerate("movie.mp4", make_items(4), [0], BatchMode.PROOFREAD))

        assert len(result) == 4
        assert not has_audio(pipeline.adapter.requests[0])

    def test_fix_timestamps_translates_inserted_lines(self):
        updates = []

        def handler(request):
            if request.schema is BATCH_SCHEMA:
                payload = request_payload(request)
                payload.append({
                    "id": 99, "start": "00:00:20,000", "end": "00:00:21,000",
                    "text_original": "new line", "text_translated": "",
                })
                return json.dumps(payload)
            return default_handler(request)

        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), handler, progress=updates.append)
        result = asyncio.run(pipeline.regenerate(None, make_items(4), [1], BatchMode.FIX_TIMESTAMPS))

        assert [i.id for i in result] == [1, 2, 3, 4, 5]
        assert [i.translated for i in result] == ["t1", "t2", "t3", "t4", "T:new line"]
        assert any(u.id == "auto-translate" and u.status is ProgressStatus.COMPLETED for u in updates)

    def test_fix_timestamps_leaves_unselected_untranslated_lines_alone(self):
        def handler(request):
            if request.schema is BATCH_SCHEMA:
                payload = request_payload(request)
                payload.append({
                    "id": 99, "start": "00:00:20,000", "end": "00:00:21,000",
                    "text_original": "new line", "text_translated": "",
                })
                return json.dumps(payload)
            return default_handler(request)

        items = make_items(4)
        items[0] = replace(items[0], translated="")
        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), handler)
        result = asyncio.run(pipeline.regenerate(None, items, [1], BatchMode.FIX_TIMESTAMPS))

        assert [i.translated for i in result] == ["", "t2", "t3", "t4", "T:new line"]
        translations = pipeline.adapter.requests_for(TRANSLATION_SCHEMA)
        assert len(translations) == 1
        assert [entry["text_original"] for entry in request_payload(translations[0])] == ["new line"]

    def test_usage_is_summarized_and_cleared_after_each_run(self, caplog):
        usage = UsageReporter()
        usage.record("gemini-2.5-pro", prompt_tokens=10, output_tokens=5)
        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), usage=usage)
        with caplog.at_level(logging.INFO):
            asyncio.run(pipeline.regenerate(None, make_items(2), [0], BatchMode.PROOFREAD))
        assert "gemini-2.5-pro: 1 calls, 10 prompt + 5 output = 15 tokens" in caplog.text

        caplog.clear()
        with caplog.at_level(logging.INFO):
            usage.log_summary()
        assert "No model calls were made." in caplog.text

    def test_no_valid_selection_returns_renumbered_input(self):
        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2))
        items = make_items(3)
        result = asyncio.run(pipeline.regenerate(None, items, [7], BatchMode.PROOFREAD))
        assert result == items
        assert pipeline.adapter.requests == []

    def test_failed_group_keeps_original_batch(self):
        def explode(request):
            raise ValueError("model is down")

        pipeline = orchestrator(PipelineSettings(proofread_batch_size=2), explode)
        items = make_items(4)
        assert asyncio.run(pipeline.regenerate(None, items, [0, 1], BatchMode.RETRANSLATE)) == items
