"""Tests for the vision LLM service."""

import base64

import pytest

from conftest import make_png
from ekotaka.ai.classifier import PlasticClassifier
from ekotaka.ai.llm_service import LLMService


@pytest.mark.asyncio
async def test_call_vision_live():
    """Live classification call (requires API key)."""
    import os
    if not os.getenv("OPENAI_API_KEY"):
        pytest.skip("OpenAI API key not configured")

    service = LLMService()
    result = await service.call_vision_structured(
        prompt='Describe the main colour as JSON: {"colour": "..."}',
        image_b64=base64.b64encode(make_png()).decode("ascii"),
        mime_type="image/png",
    )
    assert isinstance(result, dict)


@pytest.mark.asyncio
async def test_missing_api_key_is_an_error():
    with pytest.raises(ValueError):
        await LLMService().call_vision(prompt="x", image_b64="", mime_type="image/png")


@pytest.mark.asyncio
async def test_missing_api_key_degrades_classification():
    result = await PlasticClassifier(LLMService()).classify(make_png())
    assert result.fallback is True
    assert result.manual_review_required is True


@pytest.mark.asyncio
async def test_structured_output_tolerates_fences(monkeypatch):
    service = LLMService()

    async def fake_call_vision(**kwargs):
        return '```json\n{"detectedCategory": "PP", "confidence": 0.8}\n```'

    monkeypatch.setattr(service, "call_vision", fake_call_vision)
    result = await service.call_vision_structured(prompt="p", image_b64="", mime_type="image/png")
    assert result == {"detectedCategory": "PP", "confidence": 0.8}


@pytest.mark.asyncio
async def test_structured_output_rejects_non_objects(monkeypatch):
    service = LLMService()

    async def fake_call_vision(**kwargs):
        return "[1, 2, 3]"

    monkeypatch.setattr(service, "call_vision", fake_call_vision)
    with pytest.raises(ValueError):
        await service.call_vision_structured(prompt="p", image_b64="", mime_type="image/png")


def test_get_stats():
    stats = LLMService().get_stats()

    assert isinstance(stats, dict)
    assert "call_count" in stats
    assert "daily_cost" in stats
