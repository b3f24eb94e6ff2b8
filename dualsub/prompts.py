"""Prompt builders for the refinement, translation and batch regeneration calls."""

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import BatchMode, SubtitleItem

FILLER_WORDS = "uh, um, ah, er, hmm, you know, eto, ano"
MAX_SEGMENT_SECONDS = 4
MAX_SEGMENT_CHARACTERS = 25

GENRE_CONTEXT = {
    "anime": "Genre: Anime. Use a casual, emotive tone. Preserve the nuance of honorifics.",
    "movie": "Genre: Movie/TV. Natural dialogue, concise, easy to read.",
    "news": "Genre: News. Formal, objective, standard terminology.",
    "tech": "Genre: Tech. Precise terminology. Keep standard English acronyms.",
    "general": "Genre: General. Neutral and accurate.",
}


def genre_context(genre: str) -> str:
    return GENRE_CONTEXT.get(genre, f"Context: {genre}. Use tone and terminology appropriate for this context.")


def _split_rule() -> str:
    return (
        f"If a segment is longer than {MAX_SEGMENT_SECONDS} seconds or {MAX_SEGMENT_CHARACTERS} "
        "characters, split it into shorter, natural segments"
    )


TRANSLATING_STAGES = ("translation", BatchMode.RETRANSLATE.value, BatchMode.PROOFREAD.value)


def glossary_context(glossary: Optional[Mapping[str, str]]) -> str:
    if not glossary:
        return ""
    lines = [f"- {term}: {translation}" for term, translation in glossary.items()]
    return "GLOSSARY (use these translations consistently):\n" + "\n".join(lines)


def system_instruction(
    stage: str,
    genre: str,
    target_language: str,
    custom_prompt: str = "",
    glossary: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Returns the system instruction for a stage.

    Args:
        stage: ``refinement``, ``translation`` or a BatchMode value.
        genre: Genre or free-text context of the media.
        target_language: Language translations are written in.
        custom_prompt: User override, honoured for translation, retranslate
                       and proofread.
        glossary: Term to translation mapping appended for translation,
                  retranslate and proofread, custom prompt or not.

    Returns:
        The instruction text.
    """
    instruction = _stage_instruction(stage, genre, target_language, custom_prompt)
    if glossary and stage in TRANSLATING_STAGES:
        instruction = f"{instruction}\n\n{glossary_context(glossary)}"
    return instruction


def _stage_instruction(stage: str, genre: str, target_language: str, custom_prompt: str) -> str:
    if custom_prompt and custom_prompt.strip() and stage in TRANSLATING_STAGES:
        return custom_prompt.strip()

    if stage == "refinement":
        return f"""You are a professional subtitle QA specialist.
You will receive an audio clip and its raw JSON transcription.

TASKS:
1. Listen to the audio to verify the transcription.
2. If speech in the audio is missing from the transcription, add it.
3. Align start/end to the speech. Timestamps must stay within the clip duration.
4. Correct mishearings, typos and proper nouns.
5. Drop stuttering and filler words ({FILLER_WORDS}).
6. {_split_rule()}.
7. Keep the text in the language that is spoken. Do not translate.
8. Return a valid JSON array.

{genre_context(genre)}"""

    if stage in ("translation", BatchMode.RETRANSLATE.value):
        return f"""You are an expert subtitle translator for {genre} content.
Produce fluent, natural {target_language} while preserving the subtitle structure.

RULES (strict priority):
[P0 - USER DIRECTIVES] If an item has a "comment" field, follow it exactly.
[P1 - STRUCTURE] Exactly one output per input. Keep every "id" unchanged. Do not merge or split lines. Do not modify timestamps.
[P2 - QUALITY] Natural {target_language}, not translationese. Represent every meaningful part of the original. Do not invent content.
[P3 - CLEANUP] Ignore fillers ({FILLER_WORDS}) and stuttering. Keep lines concise.
[P4 - ABSOLUTE] Timestamps are frozen. Return them exactly as given.

{genre_context(genre)}"""

    if stage == BatchMode.FIX_TIMESTAMPS.value:
        return f"""You are a subtitle timing and synchronization specialist for {genre} content.

RULES (strict priority):
[P0 - USER DIRECTIVES] If an item has a "comment" field, follow it exactly.
[P1 - TIMING] Align start/end to the actual speech boundaries in the audio. Timestamps are relative to the provided clip unless stated otherwise.
[P2 - READABILITY] {_split_rule()}. Distribute timing by the audio.
[P3 - CONTENT] Add entries for speech missing from the subtitles. Remove fillers ({FILLER_WORDS}) from text_original.
[P4 - ABSOLUTE] Never modify text_translated of existing entries, even when it is wrong. New or split entries may leave text_translated empty.

Output timestamps as HH:MM:SS,mmm with start < end. Preserve ids; assign new ids only to inserted entries."""

    return f"""You are an expert subtitle translation quality specialist for {genre} content.

RULES (strict priority):
[P0 - USER DIRECTIVES] If an item has a "comment" field, follow it exactly.
[P1 - TRANSLATION] Fix mistranslations and missed meaning. Make every text_translated fluent {target_language}.
[P2 - CONTENT] Listen to the audio. Add entries for missed speech and make text_original match what is said.
[P3 - ABSOLUTE] Do not modify timestamps of existing subtitles. Only new entries get new timestamps.
[P4 - PRESERVATION] Leave lines without issues as they are.

Output timestamps as HH:MM:SS,mmm. Preserve ids; assign new ids only to inserted entries.
{genre_context(genre)}"""


def refinement_prompt(genre: str, raw_items: Sequence[SubtitleItem]) -> str:
    segments = [{"start": s.start_time, "end": s.end_time, "text": s.original} for s in raw_items]
    return f"""TRANSCRIPTION REFINEMENT TASK
Context: {genre}

Refine the raw speech-to-text output by listening to the attached audio.
- Fix misrecognized words and verify start/end.
- {_split_rule()}.
- Remove fillers ({FILLER_WORDS}), stuttering and false starts.
- Timestamps are HH:MM:SS,mmm relative to the attached audio, starting at 00:00:00,000.

Input transcription (JSON):
{json.dumps(segments, ensure_ascii=False)}"""


def translation_prompt(target_language: str, payload: List[Dict[str, Any]]) -> str:
    count = len(payload)
    return f"""TRANSLATION BATCH TASK
Translate {count} subtitle segments into {target_language}.

- One output item per input id. Output exactly {count} items and do not skip any id.
- text_translated must be written in {target_language}.
- Read neighbouring lines for context before translating each line.

Input JSON:
{json.dumps(payload, ensure_ascii=False)}"""


def specific_instruction(items: Sequence[SubtitleItem], batch_comment: str) -> str:
    """Describes how line comments and the group comment combine."""
    has_batch = bool(batch_comment and batch_comment.strip())
    has_lines = any(item.comment and item.comment.strip() for item in items)
    if has_lines and not has_batch:
        return (
            "USER LINE INSTRUCTIONS:\n"
            "1. Some lines have a \"comment\" field. Apply those corrections exactly.\n"
            "2. Lines WITHOUT a comment must be returned unchanged."
        )
    if has_lines and has_batch:
        return (
            "USER INSTRUCTIONS:\n"
            "1. First address the \"comment\" fields on individual lines.\n"
            f"2. Then apply this instruction to the whole batch: \"{batch_comment}\".\n"
            "3. Any line may change to satisfy either."
        )
    if has_batch:
        return f"USER BATCH INSTRUCTION (applies to every line): \"{batch_comment}\""
    return ""


def batch_prompt(
    mode: BatchMode,
    label: str,
    previous_end: str,
    payload: List[Dict[str, Any]],
    instruction: str,
    target_language: str,
    total_duration: Optional[float] = None,
    relative_timestamps: bool = False,
) -> str:
    """Builds the user turn of a regeneration request."""
    task = {
        BatchMode.PROOFREAD: "TRANSLATION QUALITY IMPROVEMENT TASK",
        BatchMode.FIX_TIMESTAMPS: "TIMESTAMP ALIGNMENT TASK",
        BatchMode.RETRANSLATE: "RETRANSLATION TASK",
    }[mode]
    lines = [f"Batch {label}.", task, f"Previous batch ended at: \"{previous_end}\""]
    if total_duration:
        lines.append(f"Total media duration: {total_duration:.1f}s")
    if relative_timestamps:
        lines.append("Timestamps below are relative to the attached audio clip (starting at 00:00:00,000).")
    if instruction:
        lines.append(instruction)

    if mode is BatchMode.FIX_TIMESTAMPS:
        lines.append("Re-align every start/end to the audio. Do NOT modify text_translated of existing entries.")
    elif mode is BatchMode.RETRANSLATE:
        lines.append(f"Re-translate text_original into {target_language}. Do NOT modify start or end.")
    else:
        lines.append(f"Improve text_translated ({target_language}) and add missed speech. Do NOT modify existing timestamps.")

    lines.append(f"Input JSON ({len(payload)} items):")
    lines.append(json.dumps(payload, ensure_ascii=False))
    return "\n".join(lines)
