"""
Pytest configuration and fixtures for Carousel Image Proxy tests.

Nothing here talks to the real Google API: model calls go through
``GoogleApiStub`` mounted on an ``httpx.MockTransport``.
"""
import sys
from pathlib import Path

import httpx
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carousel_proxy.services.imagen import GenerationRequest, build_model_chain
from tests.fixtures.mock_responses import API_KEY, MODEL_IDS, GoogleApiStub

GEMINI_MODEL, IMAGEN_MODEL, IMAGEN_ULTRA_MODEL = MODEL_IDS


@pytest.fixture
def model_chain():
    """Three-tier chain: one conversational model, two legacy predict models."""
    return build_model_chain([
        (GEMINI_MODEL, "generateContent"),
        (IMAGEN_MODEL, "predict"),
        (IMAGEN_ULTRA_MODEL, "predict"),
    ])


@pytest.fixture
def google_stub() -> GoogleApiStub:
    return GoogleApiStub()


@pytest.fixture
async def stub_client(google_stub):
    """httpx.AsyncClient whose every request is answered by ``google_stub``."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(google_stub.handler)) as client:
        yield client


@pytest.fixture
def generation_request() -> GenerationRequest:
    return GenerationRequest(
        prompt="Ilustração minimalista de uma banana geométrica",
        api_key=API_KEY,
        negative_prompt="texto, marca d'água",
    )
