# ensemble/Domain/schemas.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EnsembleSettings(BaseModel):
    """
    Configuration surface read by the scheduler on every pass.

    Owned by the host (settings UI / store); the core only reads it.
    """

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    # Master switch for automatic turn-taking. Operator directives ignore it.
    enabled: bool = Field(
        False,
        description="Whether automatic turn selection runs after each generation.",
    )

    # The winner must score strictly above this to speak on its own.
    threshold: float = Field(
        50,
        description="Minimum score (exclusive) a candidate needs to take an automatic turn.",
    )

    # Applied to the full summed score, penalties included.
    talkativeness: float = Field(
        1.0,
        gt=0.0,
        description="Score multiplier; >1 amplifies eagerness, <1 dampens it.",
    )

    # Automatic turns allowed between two human messages.
    max_turns: int = Field(
        5,
        ge=0,
        description="Automatic turns allowed before a human message resets the budget.",
    )


def settings_from_dict(d: Optional[Dict[str, Any]]) -> EnsembleSettings:
    """
    Build settings from a stored dict, filling defaults for missing keys.
    Raises ValueError when the stored value is not an object at all.
    """
    if d is None:
        d = {}
    if not isinstance(d, dict):
        raise ValueError(f"settings must be an object, got {type(d).__name__}")
    data = {k: v for k, v in d.items() if v is not None}
    return EnsembleSettings.model_validate(data)


def coerce_setting(key: str, raw: str) -> Any:
    """
    Parse a textual setting value (REPL / UI input) into the field's type.
    Raises ValueError on unknown keys or unparsable values.
    """
    fields = EnsembleSettings.model_fields
    if key not in fields:
        raise ValueError(f"unknown setting: {key!r} (known: {', '.join(fields)})")

    s = raw.strip()
    ann = fields[key].annotation
    if ann is bool:
        v = s.lower()
        if v in ("on", "true", "1", "yes"):
            return True
        if v in ("off", "false", "0", "no"):
            return False
        raise ValueError(f"{key} expects on/off, got {raw!r}")
    if ann is int:
        return int(s)
    if ann is float:
        return float(s)
    return s
