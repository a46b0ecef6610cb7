"""
Output parsers.

Parsers for copy-tool progress chatter and for the device listings of
lsblk (Linux) and diskutil (macOS).
"""

from __future__ import annotations

import json
import plistlib
import re
from dataclasses import dataclass
from typing import Any
from xml.parsers.expat import ExpatError

import humanize

from sdforge.core.models import Device

# "31914983424 bytes (32 GB, 30 GiB) copied, 512 s, 62.3 MB/s"
BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kKMGT]?i?B/s|bytes/sec)")
COPIED_PATTERN = re.compile(r"bytes.*(?:copied|transferred)")
RECORDS_PATTERN = re.compile(r"records (?:in|out)")
LINE_SPLIT_PATTERN = re.compile(r"[\r\n]+")


@dataclass(frozen=True)
class ProgressInfo:
    """Structured reading of one progress chunk."""

    bytes: int | None = None
    rate_text: str | None = None
    is_error_line: bool = False


def parse_progress(chunk: str) -> ProgressInfo:
    """
    Parse a chunk of copy-tool output.

    Extracts the byte count and transfer rate when present and classifies
    the chunk as an error line when it is neither a bytes-copied summary nor
    a records in/out count.
    """
    text = chunk.strip()
    if not text:
        return ProgressInfo()

    bytes_match = BYTES_PATTERN.search(text)
    rate_match = RATE_PATTERN.search(text)
    is_error = not COPIED_PATTERN.search(text) and not RECORDS_PATTERN.search(text)

    return ProgressInfo(
        bytes=int(bytes_match.group(1)) if bytes_match else None,
        rate_text=f"{rate_match.group(1)} {rate_match.group(2)}" if rate_match else None,
        is_error_line=is_error,
    )


def split_lines(buffer: str) -> tuple[list[str], str]:
    """
    Split buffered output into complete lines and a trailing partial line.

    Both carriage returns and newlines end a line, since copy tools redraw
    their progress line with a bare carriage return.
    """
    parts = LINE_SPLIT_PATTERN.split(buffer)
    return parts[:-1], parts[-1]


# ==================== Linux ====================


def parse_lsblk_json(output: str) -> list[dict[str, Any]]:
    """Parse JSON output from lsblk."""
    try:
        data = json.loads(output)
        return data.get("blockdevices", [])
    except json.JSONDecodeError:
        return []


def _is_truthy(value: Any) -> bool:
    # Older lsblk emits "1"/"0" strings, newer releases emit booleans
    if isinstance(value, str):
        return value.strip() in ("1", "true")
    return bool(value)


def build_device_from_lsblk(block: dict[str, Any]) -> Device:
    """Build a Device from an lsblk block device entry."""
    name = block["name"]
    size = block.get("size")
    model = (block.get("model") or "").strip() or "Unknown"
    removable = _is_truthy(block.get("rm"))

    if isinstance(size, int) or (isinstance(size, str) and size.isdigit()):
        size_text = humanize.naturalsize(int(size), binary=True)
    else:
        size_text = size or "Unknown"

    label = f"{name} - {model} ({size_text})"
    if removable:
        label += " [Removable]"

    return Device(
        identifier=name,
        raw_path=block.get("path") or f"/dev/{name}",
        display_label=label,
        removable=removable,
    )


def parse_lsblk_devices(output: str) -> list[Device]:
    """
    Parse `lsblk -J -b -d` output into candidate devices.

    Keeps removable disks plus SCSI/USB (sd*) and SD-card (mmcblk*) disks.
    """
    devices: list[Device] = []
    for block in parse_lsblk_json(output):
        if block.get("type", "disk") != "disk" or not block.get("name"):
            continue
        device = build_device_from_lsblk(block)
        if device.removable or device.identifier.startswith(("sd", "mmcblk")):
            devices.append(device)
    return devices


# ==================== macOS ====================

DISK_ID_PATTERN = re.compile(r"^disk\d+$")


def parse_diskutil_list_plist(output: bytes) -> list[str]:
    """
    Parse `diskutil list -plist external` into whole-disk identifiers.

    Raises ValueError when the output is not a property list.
    """
    try:
        data = plistlib.loads(output)
    except (ValueError, ExpatError) as e:
        raise ValueError(f"Invalid diskutil output: {e}") from e

    disks = data.get("WholeDisks")
    if disks is None:
        disks = [d for d in data.get("AllDisks", []) if DISK_ID_PATTERN.match(d)]

    # Preserve order, drop duplicates
    return list(dict.fromkeys(disks))


def parse_diskutil_info_plist(output: bytes) -> dict[str, Any]:
    """
    Parse `diskutil info -plist <disk>` into media name and size.

    Returns an empty dict when the output cannot be parsed.
    """
    try:
        data = plistlib.loads(output)
    except (ValueError, ExpatError):
        return {}

    name = (data.get("MediaName") or data.get("IORegistryEntryName") or "").strip()
    size = data.get("TotalSize", data.get("Size"))
    return {"name": name or "Unknown", "size_bytes": size}


def build_diskutil_label(identifier: str, info: dict[str, Any]) -> str:
    """Human-readable label for a macOS disk."""
    if not info:
        return identifier
    size = info.get("size_bytes")
    size_text = humanize.naturalsize(size) if isinstance(size, int) else "Unknown size"
    return f"{identifier} - {info.get('name', 'Unknown')} ({size_text})"
