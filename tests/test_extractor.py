import json

import httpx
import pytest

from exercise_vault.ingestion import (
    AssetIOError,
    ExerciseType,
    GeminiExtractor,
    SchemaMismatch,
    UpstreamServiceError,
    normalize_tags,
)

from conftest import png_data_url


def gemini_reply(exercises) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": json.dumps({"exercises": exercises})}]}}]}


def make_extractor(handler, seen=None):
    def recording(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return GeminiExtractor(model="test-model", base_url="https://gemini.test/v1beta", client=client)


def test_normalize_tags_puts_classification_first():
    assert normalize_tags("homework", ["limits", "calculus", "limits", "homework", "  "]) == [
        "homework",
        "calculus",
        "limits",
    ]
    assert normalize_tags("exercise", []) == ["exercise"]


@pytest.mark.asyncio
async def test_extract_page_sends_bare_base64_and_key():
    seen = []
    extractor = make_extractor(
        lambda request: httpx.Response(
            200, json=gemini_reply([{"name": "Ex 1 Limits", "exerciseType": "homework", "tags": ["limits", "calculus"]}])
        ),
        seen,
    )

    image = png_data_url(b"page")
    candidates = await extractor.extract_page(page_image=image, api_key="secret")

    assert len(seen) == 1
    request = seen[0]
    assert request.url.path == "/v1beta/models/test-model:generateContent"
    assert request.url.params["key"] == "secret"
    body = json.loads(request.content)
    inline = body["contents"][0]["parts"][0]["inline_data"]
    assert inline["mime_type"] == "image/png"
    assert inline["data"] == image.split("base64,", 1)[1]
    assert body["generationConfig"]["response_mime_type"] == "application/json"

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.name == "Ex 1 Limits"
    assert candidate.classification is ExerciseType.HOMEWORK
    assert candidate.tags == ["homework", "calculus", "limits"]


@pytest.mark.asyncio
async def test_every_candidate_gets_fresh_id_and_timestamp():
    extractor = make_extractor(
        lambda request: httpx.Response(
            200,
            json=gemini_reply(
                [
                    {"name": "Q1 Matrix Rank", "exerciseType": "exercise", "tags": []},
                    {"name": "Q2 Code Solver", "exerciseType": "programming", "tags": ["python"]},
                ]
            ),
        )
    )
    candidates = await extractor.extract_page(page_image=png_data_url(), api_key="k")
    assert len({c.id for c in candidates}) == 2
    assert all(c.created_at > 0 for c in candidates)
    assert candidates[1].tags == ["programming", "python"]


@pytest.mark.asyncio
async def test_empty_page_yields_no_candidates():
    extractor = make_extractor(lambda request: httpx.Response(200, json=gemini_reply([])))
    assert await extractor.extract_page(page_image=png_data_url(), api_key="k") == []


@pytest.mark.asyncio
async def test_non_success_status_raises_upstream_error():
    extractor = make_extractor(lambda request: httpx.Response(429, text="quota exceeded"))
    with pytest.raises(UpstreamServiceError) as excinfo:
        await extractor.extract_page(page_image=png_data_url(), api_key="k")
    assert excinfo.value.status_code == 429
    assert "quota exceeded" in excinfo.value.body


@pytest.mark.asyncio
async def test_transport_failure_raises_upstream_error_without_status():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    extractor = make_extractor(refuse)
    with pytest.raises(UpstreamServiceError) as excinfo:
        await extractor.extract_page(page_image=png_data_url(), api_key="k")
    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_unparseable_model_output_raises_schema_mismatch():
    broken = {"candidates": [{"content": {"parts": [{"text": "not json at all"}]}}]}
    extractor = make_extractor(lambda request: httpx.Response(200, json=broken))
    with pytest.raises(SchemaMismatch):
        await extractor.extract_page(page_image=png_data_url(), api_key="k")


@pytest.mark.asyncio
async def test_unknown_exercise_type_raises_schema_mismatch():
    extractor = make_extractor(
        lambda request: httpx.Response(
            200, json=gemini_reply([{"name": "Q1", "exerciseType": "quiz", "tags": []}])
        )
    )
    with pytest.raises(SchemaMismatch):
        await extractor.extract_page(page_image=png_data_url(), api_key="k")


@pytest.mark.asyncio
async def test_missing_text_part_raises_schema_mismatch():
    extractor = make_extractor(lambda request: httpx.Response(200, json={"candidates": []}))
    with pytest.raises(SchemaMismatch):
        await extractor.extract_page(page_image=png_data_url(), api_key="k")


@pytest.mark.asyncio
async def test_page_image_path_input(tmp_path):
    seen = []
    extractor = make_extractor(lambda request: httpx.Response(200, json=gemini_reply([])), seen)
    page = tmp_path / "page.jpg"
    page.write_bytes(b"jpeg-bytes")

    await extractor.extract_page(page_image_path=str(page), api_key="k")

    inline = json.loads(seen[0].content)["contents"][0]["parts"][0]["inline_data"]
    assert inline["mime_type"] == "image/jpeg"

    with pytest.raises(AssetIOError):
        await extractor.extract_page(page_image_path=str(tmp_path / "missing.png"), api_key="k")


@pytest.mark.asyncio
async def test_invalid_arguments():
    extractor = make_extractor(lambda request: httpx.Response(200, json=gemini_reply([])))
    with pytest.raises(ValueError):
        await extractor.extract_page(page_image=png_data_url(), api_key="")
    with pytest.raises(ValueError):
        await extractor.extract_page(api_key="k")
    with pytest.raises(ValueError):
        await extractor.extract_page(page_image=png_data_url(), page_image_path="/tmp/x.png", api_key="k")
