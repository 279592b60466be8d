"""Bitrate parsing and adaptive bitrate planning."""

from __future__ import annotations

import re
from typing import Dict, Optional

from hvc.domain.models import QualityPreset

MIN_BITRATE_KBPS = 300

# (max height, factor) checked in order; taller sources fall through to the last factor
HEIGHT_FACTORS = (
    (720, 0.50),
    (1080, 0.60),
    (1440, 0.65),
)
TALL_FACTOR = 0.70

_RATE_PATTERN = re.compile(r"^(?P<number>\d+(?:\.\d+)?)(?P<suffix>[A-Za-z]*)$")
_SUFFIX_MULTIPLIERS: Dict[str, float] = {
    "": 1.0,
    "bps": 1.0,
    "k": 1_000.0,
    "kbps": 1_000.0,
    "m": 1_000_000.0,
    "mbps": 1_000_000.0,
}


def _format_float(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def format_bps_human(bps: int) -> str:
    if bps >= 1_000_000:
        return f"{_format_float(bps / 1_000_000)} Mbps"
    if bps >= 1_000:
        return f"{_format_float(bps / 1_000)} kbps"
    return f"{bps} bps"


def parse_rate_value(raw_value) -> int:
    """Parses '6000k', '6M', '6Mbps' or '6000000' into bits per second."""
    text = str(raw_value).strip()
    if not text:
        raise ValueError("Rate value cannot be empty.")

    match = _RATE_PATTERN.fullmatch(text.replace(" ", ""))
    if not match:
        raise ValueError(
            f"Invalid rate value '{text}'. Use numeric bps or suffixes like k, M, Mbps."
        )

    suffix = match.group("suffix").lower()
    if suffix not in _SUFFIX_MULTIPLIERS:
        raise ValueError(
            f"Unsupported bitrate suffix '{suffix}' in '{text}'. Supported: k, M, Mbps, bps."
        )

    bitrate_bps = int(round(float(match.group("number")) * _SUFFIX_MULTIPLIERS[suffix]))
    if bitrate_bps <= 0:
        raise ValueError(f"Bitrate must be > 0 (got '{text}').")
    return bitrate_bps


def format_rate_kbps(bps: int) -> str:
    """Rate string handed to ffmpeg, floored at MIN_BITRATE_KBPS."""
    return f"{max(MIN_BITRATE_KBPS, bps // 1000)}k"


def factor_for_height(height: int) -> float:
    for max_height, factor in HEIGHT_FACTORS:
        if height <= max_height:
            return factor
    return TALL_FACTOR


def plan_bitrate(
    source_bps: Optional[int],
    height: Optional[int],
    preset: QualityPreset,
    fallback_rate: str,
) -> str:
    """Target video bitrate for one input.

    Only the default preset is adaptive: it scales the probed source bitrate by
    a resolution-dependent factor. Every other preset, and any input whose
    bitrate or height could not be probed, gets the fixed fallback rate. The
    result is never below 300k.
    """
    fallback = str(fallback_rate).strip()
    if parse_rate_value(fallback) < MIN_BITRATE_KBPS * 1000:
        fallback = f"{MIN_BITRATE_KBPS}k"
    if preset != QualityPreset.DEFAULT:
        return fallback
    if not source_bps or source_bps <= 0 or not height or height <= 0:
        return fallback

    target = round(source_bps * factor_for_height(height))
    return format_rate_kbps(target)
