"""Versioned JSON payloads written to stdout in ``--json`` mode."""

from __future__ import annotations

import json
import sys
from typing import Any

from pydantic import BaseModel

PAYLOAD_VERSION = 1


def build_payload(command: str, *, ok: bool = True, **fields: Any) -> dict[str, Any]:
    """Return the envelope shared by every command payload.

    Pydantic models among *fields* are dumped in JSON mode.
    """
    payload: dict[str, Any] = {"payload_version": PAYLOAD_VERSION, "ok": ok, "command": command}
    for key, value in fields.items():
        payload[key] = value.model_dump(mode="json") if isinstance(value, BaseModel) else value
    return payload


def error_payload(command: str, exc: BaseException) -> dict[str, Any]:
    return build_payload(command, ok=False, error=str(exc), error_type=type(exc).__name__)


def emit_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")
