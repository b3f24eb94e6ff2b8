import logging

import pytest

from dualsub.config_loader import ConfigLoader, PipelineSettings
from dualsub.exceptions import ConfigurationError


@pytest.fixture
def write_config(tmp_path):
    def write(text):
        path = tmp_path / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return str(path)
    return write


@pytest.fixture(autouse=True)
def no_env_keys(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


class TestConfigLoader:
    def test_loads_settings_from_yaml(self, write_config):
        path = write_config(
            "gemini_api_key: abc\n"
            "target_language: French\n"
            "chunk_duration: 120\n"
            "retry_base_delay: 0.5\n"
            "whisper_fp16: no\n"
        )
        settings = ConfigLoader().load_settings(path)
        assert settings.gemini_api_key == "abc"
        assert settings.target_language == "French"
        assert settings.chunk_duration == 120
        assert settings.retry_base_delay == 0.5
        assert settings.whisper_fp16 is False
        assert settings.proofread_model == "gemini-2.5-pro"

    def test_loads_glossary_mapping(self, write_config):
        path = write_config(
            "glossary:\n"
            "  Kenji: 健二\n"
            "  \"Tokyo Tower\": \" 东京塔 \"\n"
            "  Unfinished:\n"
        )
        settings = ConfigLoader().load_settings(path)
        assert settings.glossary == {"Kenji": "健二", "Tokyo Tower": "东京塔"}

    def test_empty_file_gives_defaults(self, write_config):
        assert ConfigLoader().load_config(write_config("")) == {}
        assert ConfigLoader().load_settings(write_config("")) == PipelineSettings()

    def test_no_path_gives_defaults(self):
        assert ConfigLoader().load_settings(None) == PipelineSettings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader().load_config(str(tmp_path / "absent.yaml"))

    def test_directory_is_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(str(tmp_path))

    def test_invalid_yaml(self, write_config):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(write_config("target_language: [unclosed\n"))

    def test_root_must_be_a_mapping(self, write_config):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(write_config("- just\n- a list\n"))


class TestPipelineSettings:
    def test_unknown_keys_are_ignored_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            settings = PipelineSettings.from_dict({"chunk_size": 10, "genre": "anime"})
        assert settings.genre == "anime"
        assert "chunk_size" in caplog.text

    def test_null_values_keep_defaults(self):
        assert PipelineSettings.from_dict({"genre": None}).genre == "general"

    def test_wrong_type_is_rejected(self):
        with pytest.raises(ConfigurationError):
            PipelineSettings.from_dict({"chunk_duration": "five minutes"})

    def test_glossary_must_be_a_mapping(self):
        with pytest.raises(ConfigurationError):
            PipelineSettings.from_dict({"glossary": ["Kenji", "健二"]})

    def test_glossary_defaults_to_empty(self):
        assert PipelineSettings.from_dict({"glossary": None}).glossary == {}
        assert PipelineSettings().glossary == {}

    @pytest.mark.parametrize("config", [
        {"translation_batch_size": 0},
        {"concurrency_pro": -1},
        {"transcription_concurrency": -2},
        {"transcriber": "vosk"},
        {"output_mode": "original_only"},
    ])
    def test_out_of_range_values_are_rejected(self, config):
        with pytest.raises(ConfigurationError):
            PipelineSettings.from_dict(config)

    def test_api_keys_fall_back_to_environment(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "from-env")
        assert PipelineSettings.from_dict({}).gemini_api_key == "from-env"
        assert PipelineSettings.from_dict({"gemini_api_key": "from-file"}).gemini_api_key == "from-file"

    def test_overrides_skip_none_and_validate(self):
        settings = PipelineSettings()
        assert settings.with_overrides(target_language=None) is settings
        assert settings.with_overrides(target_language="German").target_language == "German"
        with pytest.raises(ConfigurationError):
            settings.with_overrides(chunk_duration=0)

    def test_transcription_concurrency_defaults_to_flash_concurrency(self):
        assert PipelineSettings(concurrency_flash=4).effective_transcription_concurrency == 4
        assert PipelineSettings(transcription_concurrency=2).effective_transcription_concurrency == 2
