"""
extract.py - Vision extraction boundary for the quality-control agent.

This module converts a raw packaging image into an `ExtractedRecord`.

Pipeline role:
- It is the only module that knows what the vision model is asked for.
- It issues exactly one multimodal call per image and parses the reply.
- Downstream modules never see the model text; they only consume
  `ExtractedRecord` (the raw reply is kept on `ExtractionResult` for debugging).

Design notes:
- Absence is not failure. A reply whose fields are all null still produces
  a record; the validator turns the gaps into violations.
- An unparseable reply, an empty image, or a transport error IS failure and
  raises `ExtractionError`. There is no retry and no partial record.
- When no API key is configured, `mock_vision_response` supplies canned
  replies keyed on the image filename, so the full pipeline runs offline.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from json_recovery import JSONRecoveryError, recover_json
from llm_client import ModelCallError, ModelClient
from logging_config import get_logger
from models import ExtractedRecord, ExtractionResult

logger = get_logger(__name__)

# -- Configuration --

DEFAULT_MIME_TYPE = "image/jpeg"

# Maximum image size (bytes) before warning
MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB

SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}

VISION_PROMPT = """Analyze this snack bag image. Extract ALL visible text and assess print quality.

Code date format:
- Line 1: Date (e.g., "22FEB2022")
- Line 2: Day/Plant/Shift/Day-of-year/Line - all concatenated (e.g., "137133193")
- Line 3: PMO number and Time (e.g., "37 13:08")

Quality checks:
- Position: The code date MUST be directly below the bellmark (quality seal), within about 0.5 inches.
  If it is significantly off-center horizontally or displaced vertically by more than half an inch,
  mark it "off_mark". If it overlaps the bellmark itself, mark it "on_mark".
- Print quality: Is the code clear and readable, or faded?
- Product code: Is this an 84-day or a 90-day code? Is a retail price printed on the bag?

Return JSON only:
{
  "full_text": "all visible text",
  "date": "date string or null",
  "code_date_line": "day/plant/shift/day-of-year/line string or null",
  "time": "time string or null",
  "plant_code": "2-digit plant code or null",
  "line_number": "line number or null",
  "position": "correct" | "off_mark" | "on_mark",
  "print_quality": "good" | "faded" | "unreadable",
  "code_type": "84_day" | "90_day" | null,
  "price_marked": true | false | null
}"""


class ExtractionError(RuntimeError):
    """Vision extraction produced no usable record. Fatal for the run."""


def sniff_mime_type(image_bytes: bytes) -> str:
    """Guess the image MIME type from magic bytes, defaulting to JPEG."""
    if image_bytes.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if image_bytes.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return DEFAULT_MIME_TYPE


async def extract_code_date(
    client: ModelClient,
    image_bytes: bytes,
    mime_type: Optional[str] = None,
) -> ExtractionResult:
    """Extract the printed code date and quality assessment from one image.

    This is the ONLY extraction entry point. The orchestrator calls it once
    per run and never retries.

    Args:
        client: Any `ModelClient` (OpenAI-backed or scripted).
        image_bytes: Raw image content. Must not be empty.
        mime_type: Optional MIME type; sniffed from magic bytes when omitted.

    Returns:
        ExtractionResult with the parsed record and the model's raw reply.

    Raises:
        ExtractionError: empty image, model transport failure, reply that
            contains no JSON object, or JSON that does not fit the record.
    """
    if not image_bytes:
        raise ExtractionError("image is empty (0 bytes)")

    if len(image_bytes) > MAX_IMAGE_BYTES:
        logger.warning(
            "extract_image_size_warning | size_mb=%.1f | note='provider may reject large images'",
            len(image_bytes) / 1024 / 1024,
        )

    mime = (mime_type or "").strip() or sniff_mime_type(image_bytes)
    logger.info("extract_start | mime=%s | bytes=%d", mime, len(image_bytes))

    try:
        raw_response = await client.complete_vision(VISION_PROMPT, image_bytes, mime)
    except ModelCallError as exc:
        logger.error("extract_model_error | error=%s", exc, exc_info=True)
        raise ExtractionError(f"Vision extraction failed: {exc}") from exc

    try:
        payload = recover_json(raw_response)
        record = ExtractedRecord.model_validate(payload)
    except (JSONRecoveryError, ValidationError) as exc:
        logger.error(
            "extract_parse_error | error_type=%s | raw=%r",
            type(exc).__name__,
            (raw_response or "")[:200],
            exc_info=True,
        )
        raise ExtractionError(f"Vision extraction failed - invalid JSON response: {exc}") from exc

    logger.info(
        "extract_complete | date=%s | time=%s | plant=%s | line=%s | position=%s | quality=%s",
        record.date,
        record.time,
        record.plant_code,
        record.line_number,
        record.position.value if record.position else None,
        record.print_quality.value if record.print_quality else None,
    )
    return ExtractionResult(record=record, raw_response=raw_response)


def load_image(image_path: str) -> bytes:
    """Read an image file for extraction, with the same input checks as the API.

    Raises:
        FileNotFoundError: path does not exist.
        ValueError: path is blank or the file is empty.
    """
    if image_path is None or not str(image_path).strip():
        raise ValueError("image_path cannot be empty")

    path = Path(str(image_path).strip())
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}\nResolved path: {path.resolve()}")

    if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
        logger.warning(
            "extract_extension_warning | extension=%s | file=%s | supported=%s | fallback=continue",
            path.suffix,
            path.name,
            ", ".join(sorted(SUPPORTED_EXTENSIONS)),
        )

    data = path.read_bytes()
    if not data:
        raise ValueError(f"Image is empty (0 bytes): {image_path}")
    return data


# -- Mock fixtures --

_GOOD = {
    "full_text": "22FEB2022\n137133193\n37 13:08",
    "date": "22FEB2022",
    "code_date_line": "137133193",
    "time": "13:08",
    "plant_code": "37",
    "line_number": "3",
    "position": "correct",
    "print_quality": "good",
    "code_type": "84_day",
    "price_marked": False,
}


def _fixture(**overrides: object) -> str:
    payload = dict(_GOOD)
    payload.update(overrides)
    return "```json\n" + json.dumps(payload, indent=2) + "\n```"


# Checked in order; first substring found in the filename wins.
MOCK_FIXTURES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("missing_date",), _fixture(date=None, full_text="137133193\n37 13:08")),
    (("missing_time",), _fixture(time=None, full_text="22FEB2022\n137133193\n37")),
    (("missing_pmo",), _fixture(plant_code=None, full_text="22FEB2022\n137133193\n13:08")),
    (("missing_price",), _fixture(code_type="84_day", price_marked=False)),
    (("wrong_price",), _fixture(code_type="84_day", price_marked=True)),
    (("wrong_type",), _fixture(code_type="90_day")),
    (("on_mark", "on_bellmark"), _fixture(position="on_mark")),
    (("off_mark", "off_bellmark"), _fixture(position="off_mark")),
    (("unreadable",), _fixture(print_quality="unreadable", date=None, time=None, full_text="")),
    (("faded",), _fixture(print_quality="faded")),
    (("good",), _fixture()),
)

UNPARSEABLE_MOCK_REPLY = "I'm sorry, I can't make out a code date in this image."


def mock_vision_response(image_name: str) -> str:
    """Return canned vision-model text for an image, chosen by filename pattern.

    Recognized patterns (lowercase basename substring): good, on_mark /
    on_bellmark, off_mark / off_bellmark, faded, unreadable, missing_date,
    missing_time, missing_pmo, wrong_type, missing_price, wrong_price.

    Unknown names get a reply with no JSON in it, which exercises the
    extraction-failure path end to end.
    """
    filename = Path(str(image_name or "")).name.lower()
    for patterns, reply in MOCK_FIXTURES:
        if any(pattern in filename for pattern in patterns):
            logger.info("mock_vision_reply | file=%s | pattern=%s", filename, patterns[0])
            return reply

    logger.warning(
        "mock_vision_fallback | file=%s | fallback='unparseable reply' | patterns=%s",
        filename,
        ", ".join(patterns[0] for patterns, _ in MOCK_FIXTURES),
    )
    return UNPARSEABLE_MOCK_REPLY
