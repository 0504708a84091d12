"""Frequency code lookup: maps a dosing frequency code to an hour increment."""

from __future__ import annotations

import logging
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from config import FREQUENCY_TABLE_FILE
from services.derivation.errors import UnknownFrequencyCode

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


class FrequencyDefinition(BaseModel):
    code: str
    hours: float = Field(ge=0)
    label: str = ""
    aliases: list[str] = []


def normalize_code(code) -> str:
    return _WS_RE.sub(" ", str(code or "").strip().upper())


def build_frequency_table(definitions: list[FrequencyDefinition]) -> dict[str, float]:
    """Flatten definitions (codes and aliases) into a code -> hours lookup."""
    table: dict[str, float] = {}
    for d in definitions:
        for key in [d.code, *d.aliases]:
            norm = normalize_code(key)
            if norm in table and table[norm] != d.hours:
                logger.warning("Frequency code %s redefined (%s -> %s)", norm, table[norm], d.hours)
            table[norm] = d.hours
    return table


def load_frequency_table(path: Path | None = None) -> dict[str, float]:
    """Load the frequency lookup YAML (``frequencies:`` list of definitions)."""
    yaml_file = path or FREQUENCY_TABLE_FILE
    with open(yaml_file, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    definitions = [FrequencyDefinition(**d) for d in data.get("frequencies", [])]
    table = build_frequency_table(definitions)
    logger.info("Loaded %d frequency codes from %s", len(table), yaml_file)
    return table


def frequency_increment(table: dict[str, float], code) -> float:
    """Hours between administrations for *code*; raises UnknownFrequencyCode."""
    norm = normalize_code(code)
    if norm not in table:
        # Tables passed in directly may not be normalized
        for key, hours in table.items():
            if normalize_code(key) == norm:
                return float(hours)
        raise UnknownFrequencyCode(f"no increment for frequency code '{code}'", variable="frequency")
    return float(table[norm])
