import pytest

from aitotype import (
    DEFAULT_ENHANCEMENT_PROMPT,
    BackendError,
    Config,
    ConfigSynchronizer,
    Preferences,
    Provider,
    RecordMode,
)


def test_build_config_fills_defaults(config_sync):
    config = config_sync.build_config()

    assert config.provider is Provider.OPENROUTER
    assert config.model == "google/gemini-3-flash-preview"
    assert config.base_url == "https://openrouter.ai/api/v1"
    assert config.api_key == ""
    assert config.record_mode is RecordMode.TOGGLE
    assert config.enhancement.model == Provider.OPENROUTER.default_enhancement_model
    assert config.enhancement.prompt == DEFAULT_ENHANCEMENT_PROMPT


def test_provider_switch_keeps_each_credential(config_sync, preferences):
    config_sync.on_api_key_input("or-key")
    config_sync.on_provider_change("siliconflow")
    assert config_sync.form.api_key == ""

    config_sync.on_api_key_input("sf-key")
    config_sync.on_provider_change("openrouter")

    assert config_sync.form.api_key == "or-key"
    assert preferences.get_api_key(Provider.SILICONFLOW) == "sf-key"
    assert preferences.get_api_key(Provider.OPENROUTER) == "or-key"


def test_credential_namespaces_are_separate(config_sync):
    config_sync.on_api_key_input("transcribe-key")
    config_sync.on_enhancement_api_key_input("enhance-key")

    config = config_sync.build_config()

    assert config.api_key == "transcribe-key"
    assert config.enhancement.api_key == "enhance-key"
    assert config_sync.api_key_for(Provider.OPENROUTER) == "transcribe-key"
    assert config_sync.api_key_for(Provider.OPENROUTER, enhancement=True) == "enhance-key"


def test_unknown_provider_normalizes_to_openrouter(config_sync):
    config_sync.on_provider_change("siliconflow")
    config_sync.on_provider_change("whatever")

    assert config_sync.form.provider is Provider.OPENROUTER


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("", "TeleAI/TeleSpeechASR"),
        ("google/gemini-3-flash-preview", "TeleAI/TeleSpeechASR"),
        ("my/custom-model", "my/custom-model"),
    ],
)
def test_model_reset_on_provider_switch(config_sync, model, expected):
    config_sync.form.model = model

    config_sync.on_provider_change(Provider.SILICONFLOW)

    assert config_sync.form.model == expected


def test_enhancement_model_reset_on_provider_switch(config_sync):
    config_sync.form.enhancement_model = Provider.OPENROUTER.default_enhancement_model

    config_sync.on_enhancement_provider_change("siliconflow")

    assert config_sync.form.enhancement_model == "Qwen/Qwen2.5-7B-Instruct"


async def test_commit_failure_propagates(config_sync, backend):
    backend.failures["save_stt_config"] = BackendError("store rejected")

    with pytest.raises(BackendError, match="store rejected"):
        await config_sync.sync_before_session()
    assert config_sync.snapshot is None


async def test_sync_before_session_sets_snapshot(config_sync, backend):
    config_sync.form.model = "  custom/model  "

    config = await config_sync.sync_before_session()

    assert config_sync.snapshot == config
    assert backend.stored == config
    assert config.model == "custom/model"


async def test_save_settings_reports_status(config_sync, backend):
    assert await config_sync.save_settings() == "Saved"
    assert "get_stt_config" in backend.names()

    backend.failures["save_stt_config"] = BackendError("nope")
    assert await config_sync.save_settings() == "Save failed"


async def test_load_populates_form_and_seeds_credentials(config_sync, backend, preferences):
    backend.stored = Config.Stt.from_payload(
        {
            "provider": "siliconflow",
            "api_key": "stored-key",
            "model": "FunAudioLLM/SenseVoiceSmall",
            "auto_write": True,
            "record_mode": "hold",
            "enhancement": {"enabled": True, "provider": "openrouter", "api_key": "enh-key"},
        }
    )

    await config_sync.load()

    form = config_sync.form
    assert form.provider is Provider.SILICONFLOW
    assert form.api_key == "stored-key"
    assert form.model == "FunAudioLLM/SenseVoiceSmall"
    assert form.auto_write is True
    assert form.record_mode is RecordMode.HOLD
    assert form.enhancement_enabled is True
    assert form.enhancement_api_key == "enh-key"
    assert preferences.get_api_key(Provider.SILICONFLOW) == "stored-key"
    assert config_sync.auto_write_enabled is True


async def test_provider_switch_after_load_targets_new_provider(config_sync, backend):
    backend.stored = Config.Stt.default()
    await config_sync.load()
    assert config_sync.form.base_url == ""

    config_sync.on_provider_change("siliconflow")

    config = config_sync.build_config()
    assert config.provider is Provider.SILICONFLOW
    assert config.base_url == "https://api.siliconflow.cn/v1"


@pytest.mark.parametrize(
    ("base_url", "expected"),
    [
        ("https://openrouter.ai/api/v1/", "https://api.siliconflow.cn/v1"),
        ("https://proxy.example.test/v1", "https://proxy.example.test/v1"),
    ],
)
def test_base_url_reset_on_provider_switch(config_sync, base_url, expected):
    config_sync.form.base_url = base_url

    config_sync.on_provider_change(Provider.SILICONFLOW)

    assert config_sync.build_config().base_url == expected


async def test_load_failure_keeps_defaults(config_sync, backend):
    backend.failures["get_stt_config"] = BackendError("unavailable")

    assert await config_sync.load() is None
    assert config_sync.form.provider is Provider.OPENROUTER


async def test_auto_write_is_enabled_by_form_or_snapshot(config_sync):
    assert config_sync.auto_write_enabled is False

    config_sync.form.auto_write = True
    assert config_sync.auto_write_enabled is True

    await config_sync.sync_before_session()
    config_sync.form.auto_write = False
    assert config_sync.auto_write_enabled is True


async def test_enabling_auto_write_requests_accessibility(config_sync, backend):
    backend.accessibility = False

    assert await config_sync.set_auto_write(True) is False

    assert "request_accessibility_permissions" in backend.names()
    assert config_sync.accessibility_hint == ConfigSynchronizer.ACCESSIBILITY_MISSING
    assert backend.stored.auto_write is True


async def test_check_accessibility_hint(config_sync):
    assert await config_sync.check_accessibility() is True
    assert config_sync.accessibility_hint == "Accessibility Permission OK"


async def test_test_connection(config_sync, backend):
    result = await config_sync.test_connection()
    assert result.success is True

    backend.failures["save_stt_config"] = BackendError("disk full")
    result = await config_sync.test_connection()
    assert result.success is False
    assert result.message == "disk full"


def test_apply_overrides(config_sync):
    config_sync.apply_overrides({"provider": "siliconflow", "api_key": "cli-key", "record_mode": "hold", "enhancement_enabled": True})

    config = config_sync.build_config()
    assert config.provider is Provider.SILICONFLOW
    assert config.api_key == "cli-key"
    assert config.record_mode is RecordMode.HOLD
    assert config.enhancement.enabled is True


def test_preferences_persist_and_preserve_unknown_lines(tmp_path):
    path = tmp_path / Preferences.FILE_NAME
    path.write_text("# my notes\nOTHER=value\n", encoding="utf-8")

    preferences = Preferences(path)
    preferences.shortcut = "Control+Shift+Space"
    preferences.set_api_key(Provider.OPENROUTER, "secret key")
    preferences.auto_copy = False

    reloaded = Preferences(path)
    assert reloaded.shortcut == "Control+Shift+Space"
    assert reloaded.get_api_key(Provider.OPENROUTER) == "secret key"
    assert reloaded.auto_copy is False

    reloaded.set_api_key(Provider.OPENROUTER, "")
    content = path.read_text(encoding="utf-8")
    assert "AITOTYPE_API_KEY_OPENROUTER" not in content
    assert "# my notes" in content
    assert "OTHER=value" in content


def test_stt_config_payload_normalization():
    config = Config.Stt.from_payload({"provider": "SiliconFlow ", "model": "  ", "base_url": "https://example.test/v1/"})

    assert config.provider is Provider.SILICONFLOW
    assert config.model == "TeleAI/TeleSpeechASR"
    assert config.base_url == "https://example.test/v1"
    assert Config.Stt.from_payload(config.to_payload()) == config
