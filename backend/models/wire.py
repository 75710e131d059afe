"""Lenient pydantic models for decoding remote-model JSON.

Model replies drift: numbers arrive as strings, single strings arrive where a
list was asked for, confidences come back out of range. These helpers accept
that drift at the wire boundary so the domain models stay strict.
"""

import logging
import math
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


def _as_text(value):
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _as_text_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return value


Text = Annotated[str | None, BeforeValidator(_as_text)]
TextList = Annotated[list[str], BeforeValidator(_as_text_list)]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def clamp_confidence(value: float | None, label: str, warnings: list[str], default: float = 0.0) -> float:
    """Bring a model-reported confidence into [0, 1], recording any anomaly."""
    if value is None:
        warnings.append(f"{label} missing from model response; using {default}")
        return default
    if not math.isfinite(value):
        warnings.append(f"{label} {value} from model response is not a number; using {default}")
        logger.warning("Replaced non-finite %s (%s) with %s", label, value, default)
        return default
    if value < 0.0 or value > 1.0:
        clamped = min(max(value, 0.0), 1.0)
        warnings.append(f"{label} {value} outside [0, 1]; clamped to {clamped}")
        logger.warning("Clamped %s from %s to %s", label, value, clamped)
        return clamped
    return value
