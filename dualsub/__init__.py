"""DualSub: chunked transcription, refinement and translation of media into bilingual subtitles."""
