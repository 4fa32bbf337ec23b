"""
test_extract.py - Vision extraction tests.

Tests MIME sniffing, reply parsing (fenced, bare, camelCase keys), the
fatal failure paths, image loading, and the filename-keyed mock replies.

Usage: pytest test_extract.py

Requires: No API key needed (uses ScriptedModelClient).
"""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from extract import (
    UNPARSEABLE_MOCK_REPLY,
    VISION_PROMPT,
    ExtractionError,
    extract_code_date,
    load_image,
    mock_vision_response,
    sniff_mime_type,
)
from llm_client import ModelCallError, ScriptedModelClient
from models import CodePosition, CodeType, PrintQuality

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 16


def _extract(reply, image: bytes = JPEG_BYTES, mime_type=None):
    client = ScriptedModelClient(vision_replies=[reply])
    return asyncio.run(extract_code_date(client, image, mime_type)), client


@pytest.mark.parametrize(
    "data, expected",
    [
        (PNG_BYTES, "image/png"),
        (JPEG_BYTES, "image/jpeg"),
        (b"GIF89a" + b"\x00" * 8, "image/gif"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"plain bytes", "image/jpeg"),
    ],
)
def test_sniff_mime_type(data: bytes, expected: str) -> None:
    assert sniff_mime_type(data) == expected


def test_extract_fenced_reply() -> None:
    reply = (
        "```json\n"
        '{"full_text": "22FEB2022\\n137133193\\n37 13:08", "date": "22FEB2022", '
        '"code_date_line": "137133193", "time": "13:08", "plant_code": "37", '
        '"line_number": "3", "position": "correct", "print_quality": "good"}\n'
        "```"
    )
    result, client = _extract(reply)
    record = result.record

    assert record.date == "22FEB2022"
    assert record.time == "13:08"
    assert record.plant_code == "37"
    assert record.position is CodePosition.CORRECT
    assert record.print_quality is PrintQuality.GOOD
    assert result.raw_response == reply
    assert client.vision_prompts == [VISION_PROMPT]


def test_extract_accepts_camel_case_and_legacy_position_names() -> None:
    reply = (
        'Sure! {"fullText": "37 13:08", "date": null, "time": "13:08", "plantCode": "37", '
        '"lineNumber": "3", "positioning": "on_bellmark", "printQuality": "faded", "codeType": "90 day"}'
    )
    record = _extract(reply)[0].record

    assert record.date is None
    assert record.plant_code == "37"
    assert record.line_number == "3"
    assert record.position is CodePosition.ON_MARK
    assert record.print_quality is PrintQuality.FADED
    assert record.code_type is CodeType.DAY_90


def test_null_tokens_and_unknown_values_become_none() -> None:
    reply = '{"date": "null", "time": "  ", "plant_code": "N/A", "position": "sideways", "print_quality": "blurry"}'
    record = _extract(reply)[0].record

    assert record.date is None
    assert record.time is None
    assert record.plant_code is None
    assert record.position is None
    assert record.print_quality is None


def test_unparseable_reply_is_fatal() -> None:
    with pytest.raises(ExtractionError, match="invalid JSON"):
        _extract("I cannot read this image.")


def test_model_error_is_fatal() -> None:
    client = ScriptedModelClient(vision_replies=[ModelCallError("timeout")])
    with pytest.raises(ExtractionError, match="timeout"):
        asyncio.run(extract_code_date(client, JPEG_BYTES))


def test_empty_image_rejected_before_model_call() -> None:
    client = ScriptedModelClient(vision_replies=['{"date": "x"}'])
    with pytest.raises(ExtractionError, match="empty"):
        asyncio.run(extract_code_date(client, b""))
    assert client.vision_prompts == []


def test_load_image_checks(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_image(str(tmp_path / "missing.jpg"))

    empty = tmp_path / "empty.jpg"
    empty.write_bytes(b"")
    with pytest.raises(ValueError):
        load_image(str(empty))

    with pytest.raises(ValueError):
        load_image("   ")

    good = tmp_path / "bag.png"
    good.write_bytes(PNG_BYTES)
    assert load_image(str(good)) == PNG_BYTES


@pytest.mark.parametrize(
    "name, field, expected",
    [
        ("bag_good.jpg", "position", CodePosition.CORRECT),
        ("bag_on_mark.jpg", "position", CodePosition.ON_MARK),
        ("BAG_ON_BELLMARK.JPG", "position", CodePosition.ON_MARK),
        ("bag_off_bellmark.png", "position", CodePosition.OFF_MARK),
        ("bag_faded.jpg", "print_quality", PrintQuality.FADED),
        ("bag_unreadable.jpg", "print_quality", PrintQuality.UNREADABLE),
        ("bag_missing_date.jpg", "date", None),
        ("bag_missing_time.jpg", "time", None),
        ("bag_missing_pmo.jpg", "plant_code", None),
        ("bag_wrong_type.jpg", "code_type", CodeType.DAY_90),
        ("bag_wrong_price.jpg", "price_marked", True),
    ],
)
def test_mock_fixtures_parse(name: str, field: str, expected) -> None:
    record = _extract(mock_vision_response(name))[0].record
    assert getattr(record, field) == expected


def test_mock_unknown_name_is_unparseable() -> None:
    assert mock_vision_response("mystery.jpg") == UNPARSEABLE_MOCK_REPLY
    with pytest.raises(ExtractionError):
        _extract(mock_vision_response("mystery.jpg"))
