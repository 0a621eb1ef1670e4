"""Final response extraction from captured agent output.

``scan_output`` is pure: it picks the headline text and finds media payloads
in tool results. ``extract_response`` runs the scan and writes each payload
to the media directory.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path
import re

import structlog

from agent_relay.media import MediaFile, save_media_bytes
from agent_relay.stream import AssistantText, FinalResult, ToolResultText, iter_events

logger = structlog.get_logger(__name__)

EMPTY_RESPONSE = "Agent returned an empty response."

_DATA_URL_RE = re.compile(r"data:image/([a-z]+);base64,([A-Za-z0-9+/=]+)", re.IGNORECASE)
_RAW_BASE64_RE = re.compile(r"[A-Za-z0-9+/]{500,}={0,2}")
_LOCAL_FILE_RE = re.compile(r"([a-zA-Z0-9_-]+\.(?:png|jpg|jpeg|wav|mp4|mp3|obj|mov|avi|mkv|webm))")

_PNG_MAGIC = b"\x89PNG"
_JPEG_MAGIC = b"\xff\xd8\xff"


@dataclass(frozen=True)
class MediaPayload:
    data: bytes
    ext: str


@dataclass
class OutputScan:
    """What the captured output contains, before anything is written."""

    headline: str | None = None
    tool_results: list[str] = field(default_factory=list)
    payloads: list[MediaPayload] = field(default_factory=list)
    local_file_hint: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.headline is None and not self.payloads


@dataclass
class ExtractedResponse:
    text: str
    saved_files: list[str] = field(default_factory=list)
    local_file_hint: str | None = None
    files: list[MediaFile] = field(default_factory=list)

    def render(self) -> str:
        """Headline plus a stable summary of saved files and the local hint."""
        out = self.text
        if self.saved_files:
            out += "\n\n📎 Generated files:\n"
            out += "".join(f"{name}\n" for name in self.saved_files)
        if self.local_file_hint:
            out += f"\n💾 Local file: {self.local_file_hint}"
        return out


def _b64decode(data: str) -> bytes:
    data = data.rstrip("=")
    return base64.b64decode(data + "=" * (-len(data) % 4))


def _image_ext(data: bytes) -> str | None:
    if data.startswith(_PNG_MAGIC):
        return "png"
    if data.startswith(_JPEG_MAGIC):
        return "jpg"
    return None


def find_media_payloads(text: str) -> list[MediaPayload]:
    """Decode data-URL images, then bare base64 runs that sniff as PNG/JPEG."""
    payloads: list[MediaPayload] = []
    for match in _DATA_URL_RE.finditer(text):
        try:
            payloads.append(MediaPayload(_b64decode(match.group(2)), match.group(1).lower()))
        except (binascii.Error, ValueError) as exc:
            logger.debug("data_url_undecodable", error=str(exc))

    # Data-URL bodies are already handled; blank them so they are not saved twice.
    remainder = _DATA_URL_RE.sub(" ", text)
    for match in _RAW_BASE64_RE.finditer(remainder):
        candidate = match.group(0)
        try:
            if _image_ext(_b64decode(candidate[:8])) is None:
                continue
            data = _b64decode(candidate)
        except (binascii.Error, ValueError) as exc:
            logger.debug("raw_base64_undecodable", error=str(exc))
            continue
        ext = _image_ext(data)
        if ext is not None:
            payloads.append(MediaPayload(data, ext))
    return payloads


def scan_output(output: str) -> OutputScan:
    """Classify captured output. FinalResult beats the last assistant text."""
    scan = OutputScan()
    final_result: str | None = None
    last_assistant: str | None = None

    for event in iter_events(output):
        if isinstance(event, FinalResult):
            final_result = event.text
        elif isinstance(event, AssistantText):
            last_assistant = event.text
        elif isinstance(event, ToolResultText):
            scan.tool_results.append(event.text)
            scan.payloads.extend(find_media_payloads(event.text))
            hints = _LOCAL_FILE_RE.findall(event.text)
            if hints:
                scan.local_file_hint = hints[-1]

    scan.headline = final_result or last_assistant
    return scan


def extract_response(output: str, *, media_dir: Path) -> ExtractedResponse:
    """Select the response text and persist any embedded images."""
    scan = scan_output(output)
    response = ExtractedResponse(
        text=scan.headline or EMPTY_RESPONSE,
        local_file_hint=scan.local_file_hint,
    )
    for payload in scan.payloads:
        try:
            media = save_media_bytes(payload.data, payload.ext, media_dir)
        except OSError as exc:
            logger.error("media_save_failed", ext=payload.ext, error=str(exc))
            continue
        response.files.append(media)
        response.saved_files.append(media.name)

    logger.debug(
        "response_extracted",
        chars=len(output),
        has_headline=scan.headline is not None,
        tool_results=len(scan.tool_results),
        saved=len(response.saved_files),
    )
    return response
