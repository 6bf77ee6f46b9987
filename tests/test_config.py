import json

import pytest
from pydantic import ValidationError

from config import EngineConfig


def test_defaults():
    config = EngineConfig()
    assert config.endpointer.tick_interval_ms == 100
    assert config.endpointer.silence_threshold_ms == 5000
    assert config.endpointer.final_transcript_buffer_ms == 1500
    assert config.endpointer.wait_after_final_ms == 2000
    assert config.endpointer.max_wait_ms == 5000
    assert config.transcript.new_utterance_ratio == 0.5
    assert config.transcript.edge_overlap_chars == 10
    assert config.booking.action_name == "book_appointment"
    assert "receptionist" in config.system_prompt


def test_merge_patch_is_nested_and_non_destructive():
    base = EngineConfig()
    patched = base.merge_patch({"endpointer": {"silence_threshold_ms": 3000}, "groq": {"temperature": 0.2}})
    assert patched.endpointer.silence_threshold_ms == 3000
    assert patched.endpointer.max_wait_ms == 5000
    assert patched.groq.temperature == 0.2
    assert patched.groq.model == base.groq.model
    assert base.endpointer.silence_threshold_ms == 5000


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        EngineConfig().merge_patch({"transcript": {"new_utterance_ratio": 0}})


def test_save_and_load(tmp_path):
    path = tmp_path / "engine_config.json"
    EngineConfig().merge_patch({"booking": {"placeholder_message": "Booking now."}}).save(path)
    loaded = EngineConfig.load(path)
    assert loaded.booking.placeholder_message == "Booking now."


def test_load_missing_file_gives_defaults(tmp_path):
    assert EngineConfig.load(tmp_path / "nope.json") == EngineConfig()


def test_load_corrupt_file_gives_defaults(tmp_path):
    path = tmp_path / "engine_config.json"
    path.write_text("{ not json", encoding="utf-8")
    assert EngineConfig.load(path) == EngineConfig()

    path.write_text(json.dumps({"endpointer": {"max_wait_ms": -1}}), encoding="utf-8")
    assert EngineConfig.load(path) == EngineConfig()


def test_deepgram_query_params():
    config = EngineConfig().merge_patch({"deepgram": {"endpointing": 300}})
    params = config.deepgram.query_params()
    assert params["model"] == "nova-2"
    assert params["encoding"] == "linear16"
    assert params["sample_rate"] == "16000"
    assert params["interim_results"] == "true"
    assert params["endpointing"] == "300"
    assert "punctuate" not in params


def test_merge_patch_replaces_scalars_and_keeps_sibling_sections():
    base = EngineConfig()
    updated = base.merge_patch({"system_prompt": "Be brief.", "deepgram": {"endpointing": 300}})
    assert updated.system_prompt == "Be brief."
    assert updated.deepgram.endpointing == 300
    assert updated.deepgram.model == base.deepgram.model
    assert updated.groq == base.groq
    assert base.deepgram.endpointing is None
