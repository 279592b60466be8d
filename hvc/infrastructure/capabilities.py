"""Host capability probing: which HEVC hardware encoders ffmpeg can drive and
which GPU vendors are installed.

Detection never raises. Anything that cannot be determined is reported as
unavailable and the pipeline degrades to CPU-only encoding.
"""

import logging
import platform
import re
import shutil
import subprocess
from typing import Dict, FrozenSet, Iterable, List, Set
from hvc.domain.errors import ToolMissingError
from hvc.domain.models import EncoderCapability, GpuVendor, HostCapabilities

CPU_ENCODER = "libx265"

VENDOR_ENCODERS: Dict[GpuVendor, str] = {
    GpuVendor.NVIDIA: "hevc_nvenc",
    GpuVendor.INTEL: "hevc_qsv",
    GpuVendor.AMD: "hevc_amf",
}

_VENDOR_PATTERNS = (
    (GpuVendor.NVIDIA, re.compile(r"nvidia|geforce|quadro|tesla", re.IGNORECASE)),
    (GpuVendor.AMD, re.compile(r"\bamd\b|advanced micro devices|radeon|\bati\b", re.IGNORECASE)),
    (GpuVendor.INTEL, re.compile(r"intel", re.IGNORECASE)),
)
_DISPLAY_CLASS = re.compile(r"vga compatible controller|3d controller|display controller", re.IGNORECASE)


def require_tools(*binaries: str) -> None:
    """Raises ToolMissingError naming every binary that is not on PATH."""
    missing = [b for b in binaries if shutil.which(b) is None]
    if missing:
        raise ToolMissingError(f"Required tool(s) not found: {', '.join(missing)}")


def vendors_from_text(lines: Iterable[str]) -> Set[GpuVendor]:
    found: Set[GpuVendor] = set()
    for line in lines:
        for vendor, pattern in _VENDOR_PATTERNS:
            if pattern.search(line):
                found.add(vendor)
    return found


class CapabilityProber:
    """Detects hardware HEVC encoders once per session."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", verify: bool = True, timeout: float = 15.0):
        self.ffmpeg_binary = ffmpeg_binary
        self.verify = verify
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)

    def list_encoders(self) -> Set[str]:
        """Encoder names compiled into ffmpeg (`ffmpeg -encoders`)."""
        try:
            result = self._run([self.ffmpeg_binary, "-hide_banner", "-encoders"])
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"CAPS: ffmpeg -encoders failed: {e}")
            return set()
        if result.returncode != 0:
            return set()
        encoders = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            # Rows look like " V....D hevc_nvenc   NVIDIA NVENC hevc encoder"; legend rows use "="
            if len(parts) >= 2 and parts[0][:1] == "V" and parts[1] != "=":
                encoders.add(parts[1])
        return encoders

    def test_encode(self, encoder_id: str) -> bool:
        """Encodes a few frames of a synthetic source to prove the device works."""
        cmd = [
            self.ffmpeg_binary, "-hide_banner", "-loglevel", "error",
            "-f", "lavfi", "-i", "nullsrc=s=256x256:d=0.2",
            "-frames:v", "3", "-c:v", encoder_id, "-f", "null", "-",
        ]
        try:
            result = self._run(cmd)
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.debug(f"CAPS: test encode {encoder_id} raised {e}")
            return False
        return result.returncode == 0

    def detect_vendors(self) -> FrozenSet[GpuVendor]:
        vendors: Set[GpuVendor] = set()

        if shutil.which("nvidia-smi"):
            try:
                result = self._run(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"])
                if result.returncode == 0 and result.stdout.strip():
                    vendors.add(GpuVendor.NVIDIA)
            except (OSError, subprocess.SubprocessError):
                pass

        system = platform.system()
        if system == "Linux" and shutil.which("lspci"):
            try:
                result = self._run(["lspci"])
                if result.returncode == 0:
                    display_lines = [l for l in result.stdout.splitlines() if _DISPLAY_CLASS.search(l)]
                    vendors |= vendors_from_text(display_lines)
            except (OSError, subprocess.SubprocessError):
                pass
        elif system == "Windows":
            cmd = [
                "powershell", "-NoProfile", "-Command",
                "Get-CimInstance Win32_VideoController | Select-Object -ExpandProperty Name",
            ]
            try:
                result = self._run(cmd)
                if result.returncode == 0:
                    vendors |= vendors_from_text(result.stdout.splitlines())
            except (OSError, subprocess.SubprocessError):
                pass

        return frozenset(vendors)

    def detect(self) -> HostCapabilities:
        compiled = self.list_encoders()
        capabilities = set()
        for vendor, encoder_id in VENDOR_ENCODERS.items():
            available = encoder_id in compiled
            if available and self.verify:
                available = self.test_encode(encoder_id)
            capabilities.add(EncoderCapability(vendor=vendor, encoder_id=encoder_id, available=available))

        vendors = self.detect_vendors()
        caps = HostCapabilities(encoders=frozenset(capabilities), vendors=vendors)
        self.logger.info(
            f"CAPS: encoders={list(caps.available_encoders) or 'none'} "
            f"vendors={sorted(v.value for v in vendors) or 'none'}"
        )
        return caps
