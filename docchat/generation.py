"""Answer generation utilities using OpenAI chat completions.

Provides:
- get_client: Cached AsyncOpenAI client
- build_context: Formatting of retrieved passages into a ranked context block
- build_messages: System instruction + recent history + final user turn
- complete: Single non-streaming completion returning text and token usage
- stream_completion: Streaming completion yielding text deltas

Configuration is read from docchat.config.settings.
"""
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from docchat.config import settings
from docchat.errors import GenerationError

SYSTEM_PROMPT = (
    "You are a documentation assistant. Answer the user's question using ONLY the "
    "documentation context provided in the last message. Do not rely on outside knowledge.\n\n"
    "Formatting:\n"
    "- Use markdown. Put code, commands and configuration in fenced code blocks with a language tag.\n"
    "- Use `inline code` for identifiers, file names and options.\n"
    "- Use short sections or bullet lists for multi-step answers.\n\n"
    "Rules:\n"
    "- If the context does not contain enough information to answer, say so clearly "
    "instead of guessing.\n"
    "- Do not include citation markers; sources are attached separately.\n"
    "- Do not end with offers of further help or follow-up questions."
)

_client: AsyncOpenAI | None = None


@dataclass
class Completion:
    text: str
    tokens_used: int = 0


def get_client() -> AsyncOpenAI:
    """Return a cached OpenAI Chat Completions client using the configured API key.

    Returns:
        AsyncOpenAI: Client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


def build_context(passages: Sequence[Dict]) -> str:
    """Create an enumerated context block from resolved passages.

    Args:
        passages: Items with ``text``, ``title``, ``source_url`` and ``score`` (0-1).

    Returns:
        str: Blocks headed ``[Source n] (Relevance: x%)`` separated by rules.
    """
    blocks: List[str] = []
    for i, p in enumerate(passages, start=1):
        relevance = max(0.0, min(1.0, float(p.get("score") or 0.0))) * 100
        header = f"[Source {i}] (Relevance: {relevance:.1f}%)"
        title = p.get("title") or "Untitled"
        url = p.get("source_url") or ""
        blocks.append(f"{header}\nTitle: {title}\nURL: {url}\n\n{p.get('text', '')}")
    return "\n\n---\n\n".join(blocks)


def build_messages(question: str, context: str, history: Optional[Sequence[Dict]] = None) -> List[Dict[str, str]]:
    """Assemble chat messages: system instruction, last N history turns (oldest first), question.

    Args:
        question: The literal user question.
        context: Output of build_context.
        history: Prior turns as {"role", "content"} dicts in chronological order.
    """
    turns = list(history or [])[-settings.CHAT_HISTORY_TURNS:] if settings.CHAT_HISTORY_TURNS > 0 else []
    messages: List[Dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend({"role": t["role"], "content": t["content"]} for t in turns)
    messages.append(
        {
            "role": "user",
            "content": (
                f"Documentation context:\n\n{context}\n\n"
                f"Question: {question}"
            ),
        }
    )
    return messages


async def complete(messages: List[Dict[str, str]], max_tokens: Optional[int] = None) -> Completion:
    """Run one non-streaming chat completion.

    Raises:
        GenerationError: If the OpenAI request fails.
    """
    client = get_client()
    try:
        resp = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=messages,
            temperature=0.2,
            max_tokens=max_tokens or settings.MAX_OUTPUT_TOKENS,
        )
    except OpenAIError as e:
        raise GenerationError(f"Generation request failed: {e}") from e
    content = resp.choices[0].message.content or ""
    tokens = resp.usage.total_tokens if resp.usage is not None else 0
    return Completion(text=content.strip(), tokens_used=tokens)


async def stream_completion(messages: List[Dict[str, str]], max_tokens: Optional[int] = None) -> AsyncIterator[str]:
    """Yield text deltas from a streaming chat completion."""
    client = get_client()
    try:
        stream = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=messages,
            temperature=0.2,
            max_tokens=max_tokens or settings.MAX_OUTPUT_TOKENS,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta
    except OpenAIError as e:
        raise GenerationError(f"Generation request failed: {e}") from e
