from timelog_bot.services.timelog.blocks import (
    NEW_PROJECT_VALUE,
    build_new_project_modal,
    build_project_picker_blocks,
    decode_modal_metadata,
    decode_selection_block_id,
    encode_selection_block_id,
)


def test_selection_block_id_carries_message_ts():
    assert decode_selection_block_id(encode_selection_block_id("1700000000.000100")) == "1700000000.000100"


def test_foreign_block_ids_decode_to_none():
    assert decode_selection_block_id("some_other_block") is None
    assert decode_selection_block_id("project_selection_") is None
    assert decode_selection_block_id(None) is None


def test_modal_metadata_round_trips_through_view():
    view = build_new_project_modal(message_ts="100.1", suggested_name="Beta")
    assert decode_modal_metadata(view["private_metadata"]) == "100.1"


def test_garbled_modal_metadata_decodes_to_none():
    assert decode_modal_metadata("not-json") is None
    assert decode_modal_metadata('["100.1"]') is None
    assert decode_modal_metadata('{"message_ts": ""}') is None
    assert decode_modal_metadata("") is None


def test_picker_sorts_caps_and_appends_create_option():
    names = [f"Project {i:03d}" for i in range(150)] + ["alpha"]
    blocks = build_project_picker_blocks(names, message_ts="100.1", suggested_project="Alpha")

    options = blocks[1]["elements"][0]["options"]
    assert len(options) == 100
    assert options[0]["value"] == "alpha"
    assert options[-1]["value"] == NEW_PROJECT_VALUE
    assert "Alpha" in blocks[0]["text"]["text"]


def test_modal_without_suggestion_has_no_initial_value():
    view = build_new_project_modal(message_ts="100.1")
    assert "initial_value" not in view["blocks"][0]["element"]
