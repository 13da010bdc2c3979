"""Retrieval, reranking, passage resolution and answer generation."""

import re

import pytest
from sqlalchemy.exc import OperationalError

from docchat import retrieval
from docchat.models import namespace_for
from docchat.retrieval import NO_RESULTS_ANSWER, answer, dedupe_sources, select_candidates, stream_answer

QUESTION = "install the CLI with pip"


def prompt_of(openai_client) -> str:
    return openai_client.chat_calls[-1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_empty_namespace_returns_fixed_answer(make_assistant, openai_client) -> None:
    assistant_id = make_assistant(ready=True)

    result = await answer(namespace_for(assistant_id), QUESTION)

    assert result.text == NO_RESULTS_ANSWER
    assert result.sources == []
    assert result.tokens_used == 0
    assert openai_client.chat_calls == []


@pytest.mark.asyncio
async def test_many_passing_matches_are_reranked(make_assistant, index_documents, rerank_calls, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [
            {
                "url": f"https://docs.example.com/install-{k}",
                "title": f"Install {k}",
                "chunks": [f"Install the CLI with pip. Variant {k}."],
            }
            for k in range(8)
        ],
    )

    result = await answer(namespace_for(assistant_id), QUESTION)

    assert len(rerank_calls) == 1
    assert len(rerank_calls[0]["passages"]) == 8
    assert rerank_calls[0]["query"] == QUESTION
    assert len(result.sources) == 5
    assert result.text == "Here is the answer."
    assert result.tokens_used == 42

    prompt = prompt_of(openai_client)
    assert prompt.count("[Source ") == 5
    labels = [float(x) for x in re.findall(r"Relevance: ([\d.]+)%", prompt)]
    assert labels and all(50.0 <= x <= 100.0 for x in labels)


@pytest.mark.asyncio
async def test_few_passing_matches_skip_rerank(make_assistant, index_documents, rerank_calls, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [
            {"url": "https://docs.example.com/install", "title": "Install", "chunks": [
                "Install the CLI with pip.", "Install the CLI with pip on Windows."]},
            {"url": "https://docs.example.com/billing", "title": "Billing", "chunks": [
                "Invoices arrive monthly by email.", "Refunds take five business days."]},
        ],
    )

    matches = await select_candidates(namespace_for(assistant_id), QUESTION)

    assert rerank_calls == []
    assert [m.metadata["title"] for m in matches] == ["Install", "Install"]
    assert all(m.similarity is None for m in matches)


@pytest.mark.asyncio
async def test_below_threshold_uses_raw_top_results(make_assistant, index_documents, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [
            {"url": f"https://docs.example.com/billing-{i}", "title": f"Billing {i}",
             "chunks": [f"Invoices arrive monthly by email number {i}."]}
            for i in range(7)
        ],
    )

    matches = await select_candidates(namespace_for(assistant_id), QUESTION)
    assert len(matches) == 5

    result = await answer(namespace_for(assistant_id), QUESTION)
    assert result.text == "Here is the answer."
    assert len(openai_client.chat_calls) == 1


@pytest.mark.asyncio
async def test_prompt_uses_full_document_text(make_assistant, index_documents, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [{
            "url": "https://docs.example.com/install",
            "title": "Install",
            "chunks": ["Install the CLI with pip."],
            "content": "Install the CLI with pip. FULL PAGE TEXT with every flag explained.",
        }],
    )

    await answer(namespace_for(assistant_id), QUESTION)

    prompt = prompt_of(openai_client)
    assert "FULL PAGE TEXT" in prompt
    assert "Title: Install" in prompt
    assert "URL: https://docs.example.com/install" in prompt
    assert prompt.endswith(f"Question: {QUESTION}")


@pytest.mark.asyncio
async def test_missing_documents_fall_back_to_preview(make_assistant, index_documents, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [{"url": "https://docs.example.com/install", "title": "Install", "chunks": ["Install the CLI with pip."]}],
        store_documents=False,
    )

    await answer(namespace_for(assistant_id), QUESTION)
    assert "Install the CLI with pip." in prompt_of(openai_client)


@pytest.mark.asyncio
async def test_document_store_errors_fall_back_to_preview(
    monkeypatch, make_assistant, index_documents, openai_client
) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [{
            "url": "https://docs.example.com/install",
            "title": "Install",
            "chunks": ["Install the CLI with pip."],
            "content": "FULL PAGE TEXT that cannot be loaded.",
        }],
    )

    def broken(db, ids):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(retrieval, "get_documents_by_ids", broken)
    result = await answer(namespace_for(assistant_id), QUESTION)

    prompt = prompt_of(openai_client)
    assert "FULL PAGE TEXT" not in prompt
    assert "Install the CLI with pip." in prompt
    assert result.sources[0]["url"] == "https://docs.example.com/install"


@pytest.mark.asyncio
async def test_sources_are_deduplicated_by_url(make_assistant, index_documents) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [
            {"url": "https://docs.example.com/install", "title": "Install", "chunks": [
                "Install the CLI with pip.", "Install the CLI with pip on Linux."]},
            {"url": "https://docs.example.com/cli", "title": "CLI", "chunks": ["The CLI with pip install steps."]},
        ],
    )

    result = await answer(namespace_for(assistant_id), QUESTION)

    urls = [s["url"] for s in result.sources]
    assert sorted(urls) == ["https://docs.example.com/cli", "https://docs.example.com/install"]
    assert all(set(s) == {"url", "title", "preview"} for s in result.sources)


def test_dedupe_sources_keeps_first_occurrence() -> None:
    sources = dedupe_sources(
        [
            {"source_url": "https://a", "title": "A1", "preview": "one"},
            {"source_url": "https://b", "title": "B", "preview": "two"},
            {"source_url": "https://a", "title": "A2", "preview": "three"},
            {"source_url": None, "title": "none"},
        ]
    )
    assert sources == [
        {"url": "https://a", "title": "A1", "preview": "one"},
        {"url": "https://b", "title": "B", "preview": "two"},
    ]


@pytest.mark.asyncio
async def test_stream_answer_yields_reply_and_sources(make_assistant, index_documents, openai_client) -> None:
    assistant_id = make_assistant(ready=True)
    await index_documents(
        assistant_id,
        [{"url": "https://docs.example.com/install", "title": "Install", "chunks": ["Install the CLI with pip."]}],
    )

    stream, sources = await stream_answer(namespace_for(assistant_id), QUESTION)
    text = "".join([piece async for piece in stream])

    assert text == "Here is the answer."
    assert [s["url"] for s in sources] == ["https://docs.example.com/install"]
    assert openai_client.chat_calls[-1]["stream"] is True


@pytest.mark.asyncio
async def test_stream_answer_without_matches(make_assistant, openai_client) -> None:
    assistant_id = make_assistant(ready=True)

    stream, sources = await stream_answer(namespace_for(assistant_id), QUESTION)
    text = "".join([piece async for piece in stream])

    assert text == NO_RESULTS_ANSWER
    assert sources == []
    assert openai_client.chat_calls == []
