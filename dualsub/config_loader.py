"""Handles loading configuration from YAML files."""

import yaml
import os
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TRANSCRIBERS = ("openai", "whisper")
OUTPUT_MODES = ("bilingual", "target_only")


def _parse_glossary(value: Any) -> Dict[str, str]:
    """Reads a ``term: translation`` mapping, skipping entries with a blank side."""
    if not isinstance(value, dict):
        raise ConfigurationError(f"'glossary' must be a mapping of term to translation, got {type(value).__name__}.")
    glossary: Dict[str, str] = {}
    for term, translation in value.items():
        term_text = str(term or "").strip()
        translation_text = str(translation or "").strip()
        if not term_text or not translation_text:
            logger.warning(f"Ignoring incomplete glossary entry: {term!r}")
            continue
        glossary[term_text] = translation_text
    return glossary


@dataclass(frozen=True)
class PipelineSettings:
    """Immutable settings handed to the orchestrator and its components."""
    gemini_api_key: str = ""
    openai_api_key: str = ""
    transcriber: str = "openai"
    transcription_model: str = "whisper-1"
    whisper_model: str = "medium"
    device: str = "cuda"
    whisper_fp16: bool = True
    refinement_model: str = "gemini-2.5-flash"
    translation_model: str = "gemini-2.5-flash"
    proofread_model: str = "gemini-2.5-pro"
    fix_timestamps_model: str = "gemini-2.5-flash"
    retranslate_model: str = "gemini-2.5-flash"
    target_language: str = "Simplified Chinese"
    genre: str = "general"
    custom_translation_prompt: str = ""
    custom_proofreading_prompt: str = ""
    glossary: Dict[str, str] = field(default_factory=dict)
    chunk_duration: int = 300
    translation_batch_size: int = 20
    proofread_batch_size: int = 20
    concurrency_flash: int = 5
    concurrency_pro: int = 2
    transcription_concurrency: int = 0
    retry_attempts: int = 3
    retry_base_delay: float = 2.0
    continuation_attempts: int = 3
    output_mode: str = "bilingual"
    log_dir: str = "logs"
    log_file: str = "dualsub.log"

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineSettings":
        """
        Builds settings from a loaded configuration mapping.

        Unknown keys are ignored with a warning. API keys fall back to the
        ``GEMINI_API_KEY`` / ``OPENAI_API_KEY`` environment variables.

        Raises:
            ConfigurationError: If a value has the wrong type or is out of range.
        """
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (config or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            if value is None:
                continue
            if key == "glossary":
                values[key] = _parse_glossary(value)
                continue
            default = known[key].default
            try:
                if isinstance(default, bool):
                    values[key] = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
                elif isinstance(default, int):
                    values[key] = int(value)
                elif isinstance(default, float):
                    values[key] = float(value)
                else:
                    values[key] = str(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for '{key}': {value!r}") from e

        values.setdefault("gemini_api_key", os.environ.get("GEMINI_API_KEY", ""))
        values.setdefault("openai_api_key", os.environ.get("OPENAI_API_KEY", ""))
        settings = cls(**values)
        settings.validate()
        return settings

    def with_overrides(self, **overrides: Any) -> "PipelineSettings":
        """Returns a copy with the non-None overrides applied (used for CLI flags)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> None:
        for name in (
            "chunk_duration",
            "translation_batch_size",
            "proofread_batch_size",
            "concurrency_flash",
            "concurrency_pro",
            "retry_attempts",
            "continuation_attempts",
        ):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {getattr(self, name)}.")
        if self.transcription_concurrency < 0:
            raise ConfigurationError("'transcription_concurrency' cannot be negative.")
        if self.retry_base_delay < 0:
            raise ConfigurationError("'retry_base_delay' cannot be negative.")
        if self.transcriber not in TRANSCRIBERS:
            raise ConfigurationError(f"Unknown transcriber '{self.transcriber}'. Choose one of {TRANSCRIBERS}.")
        if self.output_mode not in OUTPUT_MODES:
            raise ConfigurationError(f"Unknown output_mode '{self.output_mode}'. Choose one of {OUTPUT_MODES}.")

    @property
    def effective_transcription_concurrency(self) -> int:
        return self.transcription_concurrency or self.concurrency_flash


class ConfigLoader:
    """Loads configuration settings from a YAML file."""

    def load_config(self, config_path: str) -> dict:
        """
        Loads configuration from the specified YAML file path.

        Args:
            config_path: The path to the YAML configuration file.

        Returns:
            A dictionary containing the loaded configuration settings.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            ConfigurationError: If the file cannot be parsed as YAML or
                              if there are other reading errors.
        """
        logger.info(f"Attempting to load configuration from: {config_path}")
        if not os.path.exists(config_path):
            logger.error(f"Configuration file not found at path: {config_path}")
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        if not os.path.isfile(config_path):
             logger.error(f"Configuration path is not a file: {config_path}")
             raise ConfigurationError(f"Configuration path is not a file: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid YAML format in {config_path}: {e}") from e
        except IOError as e:
            logger.error(f"Error reading configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Could not read configuration file {config_path}: {e}") from e

        if config is None:
            logger.warning(f"Configuration file {config_path} is empty, using defaults.")
            return {}
        if not isinstance(config, dict):
            logger.error(f"Configuration file {config_path} did not load as a dictionary (root object).")
            raise ConfigurationError(f"Invalid YAML structure in {config_path}. Root must be a mapping (dictionary).")
        logger.info(f"Configuration loaded successfully from {config_path}")
        return config

    def load_settings(self, config_path: Optional[str]) -> PipelineSettings:
        """Loads the YAML file (when given) and builds ``PipelineSettings`` from it."""
        config = self.load_config(config_path) if config_path else {}
        return PipelineSettings.from_dict(config)
