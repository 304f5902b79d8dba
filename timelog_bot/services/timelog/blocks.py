"""Block Kit payloads for the project-selection protocol.

The triggering message ts travels through Slack twice: in the picker's
``block_id`` and in the modal's ``private_metadata``. Both encodings are
reversible and opaque to everything but this module.
"""

from __future__ import annotations

import json
from typing import Any, Optional

SELECT_PROJECT_ACTION_ID = "select_project"
PROJECT_SELECTION_BLOCK_PREFIX = "project_selection_"
NEW_PROJECT_VALUE = "__NEW_PROJECT__"

CREATE_PROJECT_CALLBACK_ID = "create_project_modal"
PROJECT_NAME_BLOCK_ID = "project_name_block"
PROJECT_NAME_ACTION_ID = "project_name_input"

# static_select accepts at most 100 options; one is reserved for "create new".
_MAX_PROJECT_OPTIONS = 99


def encode_selection_block_id(message_ts: str) -> str:
    return f"{PROJECT_SELECTION_BLOCK_PREFIX}{message_ts}"


def decode_selection_block_id(block_id: str | None) -> Optional[str]:
    if not block_id or not block_id.startswith(PROJECT_SELECTION_BLOCK_PREFIX):
        return None
    message_ts = block_id[len(PROJECT_SELECTION_BLOCK_PREFIX):]
    return message_ts or None


def encode_modal_metadata(message_ts: str) -> str:
    return json.dumps({"message_ts": message_ts})


def decode_modal_metadata(private_metadata: str | None) -> Optional[str]:
    if not private_metadata:
        return None
    try:
        data = json.loads(private_metadata)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    message_ts = str(data.get("message_ts") or "").strip()
    return message_ts or None


def _option(text: str, value: str) -> dict[str, Any]:
    return {"text": {"type": "plain_text", "text": text[:75]}, "value": value[:150]}


def build_project_picker_blocks(
    project_names: list[str],
    *,
    message_ts: str,
    suggested_project: str | None = None,
) -> list[dict[str, Any]]:
    names = sorted(project_names, key=lambda n: n.lower())[:_MAX_PROJECT_OPTIONS]
    options = [_option(name, name) for name in names]
    options.append(_option("➕ Create New Project", NEW_PROJECT_VALUE))

    hint = f" (did you mean *{suggested_project}*?)" if suggested_project else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"I'm not sure which project you meant{hint}. Please select one:",
            },
        },
        {
            "type": "actions",
            "block_id": encode_selection_block_id(message_ts),
            "elements": [
                {
                    "type": "static_select",
                    "placeholder": {"type": "plain_text", "text": "Select a project..."},
                    "action_id": SELECT_PROJECT_ACTION_ID,
                    "options": options,
                }
            ],
        },
    ]


def build_new_project_modal(*, message_ts: str, suggested_name: str | None = None) -> dict[str, Any]:
    element: dict[str, Any] = {
        "type": "plain_text_input",
        "action_id": PROJECT_NAME_ACTION_ID,
        "placeholder": {"type": "plain_text", "text": "Enter project name..."},
    }
    if suggested_name:
        element["initial_value"] = suggested_name

    return {
        "type": "modal",
        "callback_id": CREATE_PROJECT_CALLBACK_ID,
        "private_metadata": encode_modal_metadata(message_ts),
        "title": {"type": "plain_text", "text": "Create New Project"},
        "submit": {"type": "plain_text", "text": "Create"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            {
                "type": "input",
                "block_id": PROJECT_NAME_BLOCK_ID,
                "label": {"type": "plain_text", "text": "Project Name"},
                "element": element,
            }
        ],
    }


def build_notice_modal(text: str) -> dict[str, Any]:
    return {
        "type": "modal",
        "title": {"type": "plain_text", "text": "Timelog"},
        "close": {"type": "plain_text", "text": "Close"},
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
    }
