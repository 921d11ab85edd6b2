"""Parsing of `terraform output -json` reports.

The report is a JSON object keyed by output name:

    {"url": {"value": "https://x", "type": "string", "sensitive": false}}

Each entry becomes an Output. Sensitive outputs only go to the connection
secret; non-sensitive ones are also mirrored into workspace status.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from .config import MAX_OUTPUT_REPORT_BYTES
from .errors import OutputParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Output:
    """A single named output."""

    key: str
    value: Any
    sensitive: bool = False

    def as_string(self) -> str:
        """Render the value as a plain string.

        Strings are returned unchanged; anything else (numbers, bools, lists,
        maps, null) is rendered as compact JSON.
        """
        if isinstance(self.value, str):
            return self.value
        return json.dumps(self.value, separators=(",", ":"), sort_keys=True)


def extract(stdout: str) -> dict[str, Output]:
    """Parse an output report into named outputs.

    Args:
        stdout: Standard output of `terraform output -json`.

    Returns:
        Mapping of output name to Output. `{}` yields an empty mapping.

    Raises:
        OutputParseError: If the report is empty, not JSON, not an object, or
            an entry is missing its value.
    """
    if not stdout or not stdout.strip():
        raise OutputParseError("Output report is empty")

    if len(stdout.encode("utf-8")) > MAX_OUTPUT_REPORT_BYTES:
        raise OutputParseError(f"Output report exceeds {MAX_OUTPUT_REPORT_BYTES} bytes")

    try:
        document = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise OutputParseError(f"Output report is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise OutputParseError(
            f"Output report must be a JSON object, got {type(document).__name__}"
        )

    outputs: dict[str, Output] = {}
    for key, entry in document.items():
        if not isinstance(entry, dict) or "value" not in entry:
            raise OutputParseError(f"Output {key!r} has no value")
        sensitive = entry.get("sensitive", False)
        if not isinstance(sensitive, bool):
            raise OutputParseError(f"Output {key!r} has a non-boolean sensitive flag")
        outputs[key] = Output(key=key, value=entry["value"], sensitive=sensitive)

    logger.debug(
        "Parsed outputs",
        extra={
            "output_count": len(outputs),
            "sensitive_count": sum(1 for o in outputs.values() if o.sensitive),
        },
    )
    return outputs


def connection_details(outputs: dict[str, Output]) -> dict[str, str]:
    """All outputs, as strings, for the connection secret."""
    return {key: output.as_string() for key, output in outputs.items()}


def status_outputs(outputs: dict[str, Output]) -> dict[str, str]:
    """Non-sensitive outputs, as strings, for workspace status."""
    return {key: output.as_string() for key, output in outputs.items() if not output.sensitive}
