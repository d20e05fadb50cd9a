import asyncio
import base64
from io import BytesIO

import pytest
from PIL import Image

from bananaflow.core import operations as ops
from bananaflow.core.media import clean_base64, format_data_url, mark_point, mime_type_of
from bananaflow.providers.base import (
    AuthenticationError,
    GenerationError,
    GenerationRequest,
    OutputFormat,
    ProviderConfig,
    RateLimitError,
    ServiceOverloadedError,
)
from bananaflow.providers.gemini import DEFAULT_IMAGE_MODEL, GeminiService


def _jpeg_base64() -> str:
    buf = BytesIO()
    Image.new("RGB", (4, 4), (255, 0, 0)).save(buf, format="JPEG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _service(**kwargs) -> GeminiService:
    return GeminiService(ProviderConfig(api_key="test-key", **kwargs))


def test_media_helpers():
    assert clean_base64("data:image/png;base64,AAAA") == "AAAA"
    assert clean_base64("AAAA") == "AAAA"
    assert format_data_url("AAAA") == "data:image/png;base64,AAAA"
    assert format_data_url("data:image/webp;base64,AAAA") == "data:image/webp;base64,AAAA"
    assert mime_type_of("data:image/webp;base64,AAAA") == "image/webp"


def test_mime_type_sniffed_from_bytes():
    assert mime_type_of(_jpeg_base64()) == "image/jpeg"
    assert mime_type_of("not an image") == "image/png"


def test_mark_point():
    marked = mark_point(_jpeg_base64(), 50, 50)

    assert marked.startswith("data:image/png;base64,")
    with Image.open(BytesIO(base64.b64decode(clean_base64(marked)))) as img:
        assert img.size == (4, 4)
        assert img.convert("RGB").getpixel((2, 2)) == (255, 0, 0)


def test_mark_point_position():
    buf = BytesIO()
    Image.new("RGB", (200, 100), (255, 255, 255)).save(buf, format="PNG")
    source = base64.b64encode(buf.getvalue()).decode("ascii")

    marked = mark_point(source, 25, 50)

    with Image.open(BytesIO(base64.b64decode(clean_base64(marked)))) as img:
        assert img.getpixel((50, 50)) == (255, 0, 0)
        assert img.getpixel((150, 50)) == (255, 255, 255)


def test_mark_point_rejects_garbage():
    with pytest.raises(ValueError):
        mark_point("not an image", 10, 10)


def test_identify_element_request():
    request = ops.identify_element(_jpeg_base64(), 30, 70, language="Deutsch")

    assert request.output is OutputFormat.TEXT
    assert "RED CIRCLE" in request.prompt
    assert "Deutsch" in request.prompt
    assert mime_type_of(request.images[0]) == "image/png"


def test_build_body_image_request():
    service = _service()
    request = GenerationRequest(
        prompt="A cat",
        images=["data:image/png;base64,AAAA"],
        aspect_ratio="16:9",
    )

    body = service.build_body(request)

    parts = body["contents"][0]["parts"]
    assert parts[0] == {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}
    assert parts[-1] == {"text": "A cat"}
    assert body["generationConfig"] == {"imageConfig": {"aspectRatio": "16:9"}}


def test_build_body_json_request():
    service = _service()
    schema = {"type": "OBJECT", "properties": {"style": {"type": "STRING"}}}
    request = GenerationRequest(prompt="Analyze", output=OutputFormat.JSON, response_schema=schema)

    body = service.build_body(request)

    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["responseSchema"] == schema


def test_build_body_text_request_has_no_config():
    body = _service().build_body(GenerationRequest(prompt="Describe", output=OutputFormat.TEXT))
    assert "generationConfig" not in body


def test_parse_response():
    data = {
        "candidates": [{
            "content": {"parts": [
                {"text": "Here "},
                {"inlineData": {"mimeType": "image/jpeg", "data": "BBBB"}},
                {"text": "you go"},
            ]}
        }]
    }

    result = _service().parse_response(data)

    assert result.images == ["data:image/jpeg;base64,BBBB"]
    assert result.first_image == "data:image/jpeg;base64,BBBB"
    assert result.text == "Here you go"


def test_parse_empty_response():
    result = _service().parse_response({})
    assert result.images == []
    assert result.text is None


@pytest.mark.parametrize("status, error_type", [
    (401, AuthenticationError),
    (403, AuthenticationError),
    (429, RateLimitError),
    (503, ServiceOverloadedError),
    (400, GenerationError),
    (500, GenerationError),
])
def test_check_error(status, error_type):
    with pytest.raises(error_type):
        _service().check_error(status, {"error": {"message": "nope"}})


def test_check_error_retry_after():
    with pytest.raises(RateLimitError) as info:
        _service().check_error(429, {}, retry_after="12")
    assert info.value.retry_after == 12.0


def test_check_error_ok():
    _service().check_error(200, {})


def test_models():
    assert _service().image_model == DEFAULT_IMAGE_MODEL
    assert _service(text_model="custom-text").text_model == "custom-text"


def test_generate_requires_api_key():
    service = GeminiService(ProviderConfig())
    assert not service.is_configured
    with pytest.raises(AuthenticationError):
        asyncio.run(service.generate(GenerationRequest(prompt="A cat")))
