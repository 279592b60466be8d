"""Encoder selection and quality-preset intents.

An intent says what a preset wants (speed, rate control, ceiling, lookahead);
`infrastructure/ffmpeg.py` turns it into flags for a concrete encoder family.
"""

from typing import Optional

from hvc.domain.models import EncodeIntent, EncoderChoice, GpuVendor, HostCapabilities, QualityPreset
from hvc.infrastructure.capabilities import VENDOR_ENCODERS

# Auto mode without a matching installed vendor
AUTO_PRIORITY = ("hevc_nvenc", "hevc_amf", "hevc_qsv")

_CHOICE_VENDOR = {
    EncoderChoice.NVIDIA: GpuVendor.NVIDIA,
    EncoderChoice.INTEL: GpuVendor.INTEL,
    EncoderChoice.AMD: GpuVendor.AMD,
}

# Order in which installed vendors are consulted in auto mode
_VENDOR_PREFERENCE = (GpuVendor.NVIDIA, GpuVendor.AMD, GpuVendor.INTEL)

# Encoders that can take explicit B-frame counts for HEVC
_BFRAME_ENCODERS = {"hevc_nvenc", "hevc_qsv", None}

# Encoders with a true zero-quantization HEVC mode; QSV only goes down to global_quality 1
LOSSLESS_ENCODERS = {"hevc_nvenc", "hevc_amf", None}


def select_encoder(choice: EncoderChoice, capabilities: HostCapabilities) -> Optional[str]:
    """Resolves the user's choice into an encoder id, or None for CPU.

    An explicit vendor whose encoder is unavailable silently becomes CPU.
    """
    if choice == EncoderChoice.CPU:
        return None

    if choice in _CHOICE_VENDOR:
        encoder_id = VENDOR_ENCODERS[_CHOICE_VENDOR[choice]]
        return encoder_id if capabilities.is_available(encoder_id) else None

    for vendor in _VENDOR_PREFERENCE:
        if vendor in capabilities.vendors:
            encoder_id = VENDOR_ENCODERS[vendor]
            if capabilities.is_available(encoder_id):
                return encoder_id

    for encoder_id in AUTO_PRIORITY:
        if capabilities.is_available(encoder_id):
            return encoder_id
    return None


def encoder_for_preset(encoder_id: Optional[str], preset: QualityPreset) -> Optional[str]:
    """Drops a hardware encoder that cannot honour the preset, leaving libx265 (None)."""
    if preset == QualityPreset.LOSSLESS and encoder_id not in LOSSLESS_ENCODERS:
        return None
    return encoder_id


def preset_intent(encoder_id: Optional[str], preset: QualityPreset) -> EncodeIntent:
    """Maps (encoder, preset) to an intent. encoder_id None means libx265."""
    supports_bframes = encoder_id in _BFRAME_ENCODERS

    if preset == QualityPreset.LOSSLESS:
        return EncodeIntent(speed="medium", rate_mode="quality", quality=0, lossless=True)

    if preset == QualityPreset.GPU_HQ:
        return EncodeIntent(
            speed="slow",
            rate_mode="bitrate",
            ceiling=True,
            lookahead=32,
            b_frames=4 if supports_bframes else None,
            high_quality_tune=True,
        )

    if preset == QualityPreset.SMALLER:
        return EncodeIntent(speed="slow", rate_mode="quality", quality=28, ceiling=True)

    if preset == QualityPreset.FASTER:
        return EncodeIntent(speed="fast", rate_mode="bitrate", ceiling=False)

    return EncodeIntent(speed="medium", rate_mode="bitrate", ceiling=True)
