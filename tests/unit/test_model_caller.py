"""Unit tests for single model calls.

Tests for carousel_proxy/services/imagen/model_caller.py - chain building,
request payloads and HTTP error mapping.

Run with:
    pytest tests/unit/test_model_caller.py -v -m fast
"""

import httpx
import orjson
import pytest

from carousel_proxy.core.config import GOOGLE_API_KEY_HEADER
from carousel_proxy.services.imagen import (
    EndpointKind,
    ErrorKind,
    GenerationRequest,
    ModelCallError,
    build_model_chain,
    call_model,
)
from carousel_proxy.services.imagen.model_caller import (
    NETWORK_ERROR_MESSAGE,
    build_conversational_payload,
    build_legacy_predict_payload,
    build_model_url,
    parse_json_body,
)
from tests.fixtures.mock_responses import (
    API_KEY,
    MODEL_IDS,
    error_payload,
    gemini_image_response,
    imagen_predict_response,
)

GEMINI_MODEL, IMAGEN_MODEL, _ = MODEL_IDS


@pytest.mark.fast
class TestModelChain:
    """Tests for build_model_url and build_model_chain."""

    def test_model_url(self):
        url = build_model_url("imagen-4.0-generate-001", "predict", "https://example.test/", "v1beta")
        assert url == "https://example.test/v1beta/models/imagen-4.0-generate-001:predict"

    def test_chain_kinds_and_order(self, model_chain):
        assert [a.model_id for a in model_chain] == list(MODEL_IDS)
        assert [a.sequence_index for a in model_chain] == [0, 1, 2]
        assert model_chain[0].endpoint_kind == EndpointKind.CONVERSATIONAL
        assert model_chain[1].endpoint_kind == EndpointKind.LEGACY_PREDICT
        assert model_chain[0].url.endswith(f"/models/{GEMINI_MODEL}:generateContent")

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError, match="Unsupported endpoint method"):
            build_model_chain([("some-model", "streamGenerateContent")])

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            build_model_chain([])


@pytest.mark.fast
class TestPayloads:
    """Tests for request body shapes."""

    def test_conversational_payload_appends_negative_prompt(self, generation_request):
        payload = build_conversational_payload(generation_request)
        text = payload["contents"][0]["parts"][0]["text"]
        assert payload["contents"][0]["role"] == "user"
        assert text.startswith(generation_request.prompt)
        assert f"Restrições: {generation_request.negative_prompt}" in text

    def test_conversational_payload_without_negative_prompt(self):
        request = GenerationRequest(prompt="a red fox", api_key=API_KEY)
        payload = build_conversational_payload(request)
        assert payload["contents"][0]["parts"][0]["text"] == "a red fox"

    def test_legacy_payload_has_both_key_styles(self, generation_request):
        """Test parameters are sent in camelCase and snake_case."""
        payload = build_legacy_predict_payload(generation_request, sample_count=2, aspect_ratio="4:5")
        instance = payload["instances"][0]
        params = payload["parameters"]
        assert instance["prompt"]["text"] == generation_request.prompt
        assert instance["negativePrompt"] == instance["negative_prompt"] == {"text": generation_request.negative_prompt}
        assert params["sampleCount"] == params["sample_count"] == 2
        assert params["aspectRatio"] == params["aspect_ratio"] == "4:5"
        assert "personGeneration" in params and "person_generation" in params

    def test_request_validation(self):
        with pytest.raises(ValueError):
            GenerationRequest(prompt="  ", api_key=API_KEY)
        with pytest.raises(ValueError):
            GenerationRequest(prompt="a fox", api_key="")

    @pytest.mark.parametrize("content", [b"", b"<html>bad gateway</html>", b"{truncated"])
    def test_unparseable_body_is_empty_object(self, content):
        assert parse_json_body(content) == {}


@pytest.mark.fast
class TestCallModel:
    """Tests for call_model against the stubbed API."""

    @pytest.mark.asyncio
    async def test_success_returns_parsed_body(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 200, gemini_image_response())
        body = await call_model(stub_client, model_chain[0], generation_request)
        assert body == gemini_image_response()

    @pytest.mark.asyncio
    async def test_api_key_in_query_and_header(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())
        await call_model(stub_client, model_chain[1], generation_request)

        sent = google_stub.calls[0]
        assert sent.method == "POST"
        assert sent.url.params["key"] == API_KEY
        assert sent.headers[GOOGLE_API_KEY_HEADER] == API_KEY
        assert sent.headers["Content-Type"] == "application/json"
        assert "instances" in orjson.loads(sent.content)

    @pytest.mark.asyncio
    async def test_non_2xx_raises_classified_error(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 400, error_payload(400, "INVALID_ARGUMENT", "API key not valid."))
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        error = exc_info.value.error
        assert error.kind == ErrorKind.FATAL
        assert error.http_status == 400
        assert error.message == "API key not valid."
        assert error.model_id == GEMINI_MODEL

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, google_stub, stub_client, model_chain, generation_request):
        """Test an HTML 502 page is still classified."""
        google_stub.on_model(GEMINI_MODEL, 502, content=b"<html>Bad Gateway</html>")
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        error = exc_info.value.error
        assert error.kind == ErrorKind.RETRYABLE
        assert error.raw_payload == {}
        assert "502" in error.message

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model_raise(GEMINI_MODEL, httpx.ConnectError("connection refused"))
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        error = exc_info.value.error
        assert error.kind == ErrorKind.RETRYABLE
        assert error.http_status is None
        assert error.message.startswith(NETWORK_ERROR_MESSAGE)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model_raise(GEMINI_MODEL, httpx.ReadTimeout("read timed out"))
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        assert exc_info.value.error.kind == ErrorKind.RETRYABLE

    @pytest.mark.asyncio
    async def test_corrupt_gzip_body_is_retryable(self, google_stub, stub_client, model_chain, generation_request):
        """Test a body that fails to decompress is a network error, not a crash."""
        google_stub.on_model(GEMINI_MODEL, 200, headers={"Content-Encoding": "gzip"}, content=b"not gzip at all")
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        error = exc_info.value.error
        assert error.kind == ErrorKind.RETRYABLE
        assert error.http_status is None
        assert "DecodingError" in error.message

    @pytest.mark.asyncio
    async def test_redirect_loop_is_retryable(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model_raise(GEMINI_MODEL, httpx.TooManyRedirects("loop"))
        with pytest.raises(ModelCallError) as exc_info:
            await call_model(stub_client, model_chain[0], generation_request)
        assert exc_info.value.error.kind == ErrorKind.RETRYABLE
        assert "TooManyRedirects" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_2xx_with_invalid_json(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 200, content=b"not json")
        assert await call_model(stub_client, model_chain[0], generation_request) == {}
