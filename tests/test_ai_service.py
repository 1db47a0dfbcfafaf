"""Tests for parsing and validating the diagnosis model's answer.

Run with:  python -m pytest tests/test_ai_service.py -v
"""

import asyncio

import pytest

from pashucare.core.ai_service import AIRequest, GeminiDiagnosisService, parse_ai_response
from pashucare.core.errors import AIResponseInvalid, UpstreamUnavailable
from pashucare.models.schemas import AnimalType


class StubClient:
    def __init__(self, reply, available=True):
        self.reply = reply
        self.is_available = available
        self.prompts = []

    async def generate(self, system_prompt, user_prompt, image_bytes=None, image_mime_type=None, **kwargs):
        self.prompts.append((system_prompt, user_prompt, image_bytes, image_mime_type))
        return self.reply


def _request(text="cow not eating", image=None):
    return AIRequest(
        animal_type=AnimalType.BOVINE,
        text=text,
        image_bytes=image,
        image_mime_type="image/png" if image else None,
        language="en",
    )


@pytest.mark.parametrize("raw", [
    '{"conditions": [{"condition_name": "Ketosis", "confidence": 0.7}]}',
    '```json\n{"conditions": [{"condition_name": "Ketosis", "confidence": 0.7}]}\n```',
    '  {"conditions": [{"condition_name": "Ketosis", "confidence": 0.7, "extra": 1}]}  ',
])
def test_parse_valid(raw):
    guesses = parse_ai_response(raw)
    assert [(g.condition_name, g.confidence) for g in guesses] == [("Ketosis", 0.7)]


def test_parse_empty_list_is_valid():
    assert parse_ai_response('{"conditions": []}') == []


@pytest.mark.parametrize("raw", [
    "The cow probably has ketosis.",
    '{"conditions": "ketosis"}',
    '{"conditions": [{"condition_name": "Ketosis", "confidence": 1.7}]}',
    '{"conditions": [{"condition_name": "", "confidence": 0.5}]}',
    '{"conditions": [{"name": "Ketosis", "confidence": 0.5}]}',
    '[{"condition_name": "Ketosis", "confidence": 0.5}]',
    "",
])
def test_parse_invalid(raw):
    with pytest.raises(AIResponseInvalid):
        parse_ai_response(raw)


def test_service_sends_text_and_image():
    client = StubClient('{"conditions": [{"condition_name": "Lumpy Skin Disease", "confidence": 0.8}]}')
    service = GeminiDiagnosisService(client)

    guesses = asyncio.run(service.diagnose(_request(image=b"\x89PNG")))

    assert guesses[0].condition_name == "Lumpy Skin Disease"
    _system, user_prompt, image, mime = client.prompts[0]
    assert "bovine" in user_prompt
    assert "cow not eating" in user_prompt
    assert image == b"\x89PNG"
    assert mime == "image/png"


def test_service_unavailable_without_credentials():
    service = GeminiDiagnosisService(StubClient("{}", available=False))
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(service.diagnose(_request()))


def test_service_empty_reply_is_unavailable():
    service = GeminiDiagnosisService(StubClient(None))
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(service.diagnose(_request()))
