"""Unit tests for the model fallback orchestrator.

Tests for carousel_proxy/services/imagen/orchestrator.py - walking the
model chain, terminal errors, exhaustion and cancellation.

Run with:
    pytest tests/unit/test_orchestrator.py -v -m fast
"""

import asyncio

import httpx
import pytest

from carousel_proxy.services.imagen import ErrorKind, GenerationCancelled, GenerationRequest, generate_image
from carousel_proxy.services.imagen.orchestrator import NO_IMAGE_STATUS
from tests.fixtures.mock_responses import (
    API_KEY,
    MODEL_IDS,
    OTHER_BASE64,
    PNG_BASE64,
    error_payload,
    gemini_file_response,
    gemini_image_response,
    gemini_safety_response,
    gemini_text_only_response,
    imagen_predict_response,
    not_found_payload,
    quota_payload,
)

GEMINI_MODEL, IMAGEN_MODEL, IMAGEN_ULTRA_MODEL = MODEL_IDS


@pytest.mark.fast
class TestSuccessPaths:
    """Images produced by the first or a later tier."""

    @pytest.mark.asyncio
    async def test_first_tier_success_makes_one_call(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 200, gemini_image_response(PNG_BASE64))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.ok
        assert outcome.image == PNG_BASE64
        assert outcome.model_used == GEMINI_MODEL
        assert outcome.error is None
        assert outcome.fallback_used is False
        assert google_stub.model_calls == [GEMINI_MODEL]

    @pytest.mark.asyncio
    async def test_not_found_falls_back_to_predict(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 404, not_found_payload(GEMINI_MODEL))
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response(OTHER_BASE64))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.image == OTHER_BASE64
        assert outcome.model_used == IMAGEN_MODEL
        assert outcome.fallback_used is True
        assert [s.outcome for s in outcome.steps] == ["retryable", "success"]
        assert google_stub.model_calls == [GEMINI_MODEL, IMAGEN_MODEL]

    @pytest.mark.asyncio
    async def test_http_200_without_image_advances(self, google_stub, stub_client, model_chain, generation_request):
        """Test a text-only answer moves on to the next model."""
        google_stub.on_model(GEMINI_MODEL, 200, gemini_text_only_response())
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.model_used == IMAGEN_MODEL
        assert outcome.steps[0].http_status == NO_IMAGE_STATUS

    @pytest.mark.asyncio
    async def test_network_error_advances(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model_raise(GEMINI_MODEL, httpx.ConnectTimeout("connect timed out"))
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.model_used == IMAGEN_MODEL
        assert outcome.steps[0].http_status is None

    @pytest.mark.asyncio
    async def test_corrupt_body_advances(self, google_stub, stub_client, model_chain, generation_request):
        """Test an undecodable gzip body falls back instead of escaping."""
        google_stub.on_model(GEMINI_MODEL, 200, headers={"Content-Encoding": "gzip"}, content=b"not gzip at all")
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response(OTHER_BASE64))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.image == OTHER_BASE64
        assert outcome.model_used == IMAGEN_MODEL
        assert google_stub.model_calls == [GEMINI_MODEL, IMAGEN_MODEL]

    @pytest.mark.asyncio
    async def test_redirect_loop_advances(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model_raise(GEMINI_MODEL, httpx.TooManyRedirects("loop"))
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.model_used == IMAGEN_MODEL

    @pytest.mark.asyncio
    async def test_file_uri_is_downloaded(self, google_stub, stub_client, model_chain, generation_request):
        """Test a fileUri response is resolved into base64."""
        path = "/v1beta/files/img-1:download"
        uri = f"https://generativelanguage.googleapis.com{path}?alt=media"
        google_stub.on_model(GEMINI_MODEL, 200, gemini_file_response(uri))
        google_stub.on_file(path, b"ABC")

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.image == "QUJD"
        assert outcome.file_uri == uri
        assert outcome.model_used == GEMINI_MODEL
        assert google_stub.file_calls[0].url.params["key"] == API_KEY

    @pytest.mark.asyncio
    async def test_failed_file_download_advances(self, google_stub, stub_client, model_chain, generation_request):
        uri = "https://generativelanguage.googleapis.com/v1beta/files/missing:download"
        google_stub.on_model(GEMINI_MODEL, 200, gemini_file_response(uri))
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.model_used == IMAGEN_MODEL
        assert outcome.file_uri is None


@pytest.mark.fast
class TestTerminalErrors:
    """Safety, quota and fatal errors stop the chain."""

    @pytest.mark.asyncio
    async def test_safety_block_on_200_stops(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 200, gemini_safety_response())
        google_stub.on_model(IMAGEN_MODEL, 200, imagen_predict_response())

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert not outcome.ok
        assert outcome.error.kind == ErrorKind.SAFETY
        assert outcome.error.details == "sexually explicit"
        assert google_stub.model_calls == [GEMINI_MODEL]

    @pytest.mark.asyncio
    async def test_safety_block_on_400_stops(self, google_stub, stub_client, model_chain, generation_request):
        payload = error_payload(400, "INVALID_ARGUMENT", "Request blocked.")
        payload["promptFeedback"] = {"blockReason": "SAFETY"}
        google_stub.on_model(GEMINI_MODEL, 400, payload)

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.error.kind == ErrorKind.SAFETY
        assert outcome.error.http_status == 400
        assert len(google_stub.model_calls) == 1

    @pytest.mark.asyncio
    async def test_quota_stops_with_retry_after(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 429, quota_payload("30s"))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.error.kind == ErrorKind.QUOTA
        assert outcome.error.retry_after_seconds == 30.0
        assert google_stub.model_calls == [GEMINI_MODEL]

    @pytest.mark.asyncio
    async def test_quota_after_fallback_keeps_cause(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 503, error_payload(503, "UNAVAILABLE", "overloaded"))
        google_stub.on_model(IMAGEN_MODEL, 500, error_payload(500, "RESOURCE_EXHAUSTED", "Resource exhausted."))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.error.kind == ErrorKind.QUOTA
        assert [link.model_id for link in outcome.error.chain()] == [GEMINI_MODEL, IMAGEN_MODEL]
        assert google_stub.model_calls == [GEMINI_MODEL, IMAGEN_MODEL]

    @pytest.mark.asyncio
    async def test_invalid_key_is_fatal(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 400, error_payload(400, "INVALID_ARGUMENT", "API key not valid."))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        assert outcome.error.kind == ErrorKind.FATAL
        assert outcome.error.exhausted is False
        assert google_stub.model_calls == [GEMINI_MODEL]

    @pytest.mark.asyncio
    async def test_custom_predicate_disables_fallback(self, google_stub, stub_client, model_chain, generation_request):
        google_stub.on_model(GEMINI_MODEL, 503, error_payload(503, "UNAVAILABLE", "overloaded"))

        outcome = await generate_image(
            stub_client, generation_request, chain=model_chain, predicate=lambda status, message: False,
        )

        assert outcome.error.kind == ErrorKind.FATAL
        assert google_stub.model_calls == [GEMINI_MODEL]


@pytest.mark.fast
class TestExhaustion:
    """Every tier fails with a fallback-eligible error."""

    @pytest.mark.asyncio
    async def test_all_tiers_fail(self, google_stub, stub_client, model_chain, generation_request):
        for model_id in MODEL_IDS:
            google_stub.on_model(model_id, 503, error_payload(503, "UNAVAILABLE", f"{model_id} overloaded"))

        outcome = await generate_image(stub_client, generation_request, chain=model_chain)

        error = outcome.error
        assert error.kind == ErrorKind.FATAL
        assert error.exhausted is True
        assert error.http_status == 503
        chain = error.chain()
        assert len(chain) == len(model_chain)
        assert [link.model_id for link in chain] == list(MODEL_IDS)
        assert chain[0].message == f"{GEMINI_MODEL} overloaded"
        assert google_stub.model_calls == list(MODEL_IDS)
        assert len(outcome.steps) == 3

    @pytest.mark.asyncio
    async def test_empty_chain(self, stub_client, generation_request):
        outcome = await generate_image(stub_client, generation_request, chain=[])
        assert outcome.error.kind == ErrorKind.FATAL
        assert outcome.steps == []


@pytest.mark.fast
class TestCancellation:
    """Tests for cancel_event handling."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, google_stub, stub_client, model_chain, generation_request):
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(GenerationCancelled):
            await generate_image(stub_client, generation_request, chain=model_chain, cancel_event=cancel_event)
        assert google_stub.model_calls == []

    @pytest.mark.asyncio
    async def test_cancelled_during_call(self, google_stub, stub_client, model_chain, generation_request):
        """Test an in-flight request is abandoned and no later tier is tried."""
        cancel_event = asyncio.Event()

        async def slow(request):
            cancel_event.set()
            await asyncio.sleep(10)
            return httpx.Response(200, json=gemini_image_response())

        google_stub.on_model_call(GEMINI_MODEL, slow)

        with pytest.raises(GenerationCancelled):
            await asyncio.wait_for(
                generate_image(stub_client, generation_request, chain=model_chain, cancel_event=cancel_event),
                timeout=5,
            )
        assert google_stub.model_calls == [GEMINI_MODEL]


@pytest.mark.fast
class TestScenarios:
    """End-to-end scenarios with literal provider documents."""

    @pytest.mark.asyncio
    async def test_red_circle_round_trip(self, google_stub, stub_client, model_chain):
        google_stub.on_model(GEMINI_MODEL, 200, {"candidates": [{"content": {"parts": [{"inlineData": {"data": "QUJD"}}]}}]})
        request = GenerationRequest(prompt="a red circle", api_key=API_KEY)

        outcome = await generate_image(stub_client, request, chain=model_chain)

        assert outcome.image == "QUJD"
        assert len(google_stub.model_calls) == 1

    @pytest.mark.asyncio
    async def test_file_uri_on_other_host(self, google_stub, stub_client, model_chain):
        google_stub.on_model(
            GEMINI_MODEL, 200, {"candidates": [{"content": {"parts": [{"fileData": {"fileUri": "https://host/img"}}]}}]},
        )
        google_stub.on_file("/img", bytes([0x41, 0x42, 0x43]))
        request = GenerationRequest(prompt="a red circle", api_key=API_KEY)

        outcome = await generate_image(stub_client, request, chain=model_chain)

        assert outcome.image == "QUJD"
        assert google_stub.file_calls[0].url.host == "host"
