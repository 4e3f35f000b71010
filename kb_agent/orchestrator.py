"""Agent orchestration: one conversation turn from prompt to cited answer.

Flow of send_message:
1. Validate input (before any external call).
2. Resolve the thread: continue the given one or create a new one.
3. Admission: global limit, then the per-conversation limit (kb_agent.rate_limit).
4. Run the LLM tool loop, with the article search exposed as a tool, and, when an
   allowlist is given, the sponsored search concurrently.
5. Merge: sources come from the last search tool call, sponsored sources from the
   sponsored search. A sponsored failure or timeout degrades to an empty list.

Blocking collaborators (database, Redis, OpenAI) run in the default thread pool so
the two branches of step 4 overlap.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from kb_agent.conversations import ConversationStore
from kb_agent.errors import ConversationResolutionFailed, GenerationFailed, InputValidationError, StoreError
from kb_agent.generation import GenerationResult, Tool, ToolCallingGenerator
from kb_agent.obs import Trace
from kb_agent.rate_limit import RateLimiter
from kb_agent.retrieval import ArticleRetriever, SponsoredRetriever
from kb_agent.schemas import MAX_SEARCH_LIMIT, ArticleResult, SendMessageResponse, SourceRef

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "search_articles"

SYSTEM_INSTRUCTIONS = (
    "You answer questions using a knowledge base of articles. "
    f"For every question, call the '{SEARCH_TOOL_NAME}' tool to find relevant articles before answering. "
    "Only set 'filter_channel' when the user explicitly asks for a specific channel, for example "
    "'what does the <channel> channel say about X' or 'search <channel> for Y'. A topic that merely "
    "resembles a channel name is not a channel request; when in doubt, leave 'filter_channel' empty. "
    "Each result has a 'title', 'content' and 'reconstructed_link'. Base your answer on the content "
    "of the most relevant articles, name each article you use by its title and include its full "
    "reconstructed_link (also present in the content as \"(Source: URL)\"). "
    "If the search returns nothing relevant, say that the knowledge base has no information on the topic. "
    "Do not invent facts that are not in the articles."
)

SEARCH_TOOL_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "The user's question or keywords to search for."},
        "filter_channel": {
            "type": "string",
            "description": "Channel slug, only when the user explicitly and unambiguously asks for one channel.",
        },
        "filter_status": {"type": "string", "description": "Optional numeric status code to filter by."},
        "limit": {"type": "integer", "description": "Optional maximum number of articles to return (1-50)."},
    },
    "required": ["query"],
}


def truncate_content(content: str, max_chars: int = 300) -> str:
    """First max_chars characters, with "..." appended when anything was cut."""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "..."


def to_source_refs(items: Sequence[Any], max_chars: int = 300) -> List[SourceRef]:
    """Map search results (models or their dict form) to citations.

    Items without a title or reconstructed link are skipped.
    """
    refs: List[SourceRef] = []
    for item in items:
        data = item.model_dump() if isinstance(item, ArticleResult) else item
        if not isinstance(data, dict):
            continue
        title, link = data.get("title"), data.get("reconstructed_link")
        if not title or not link:
            continue
        refs.append(
            SourceRef(title=title, link=link, truncated_content=truncate_content(data.get("content") or "", max_chars))
        )
    return refs


def clamp_limit(limit: Any) -> Optional[int]:
    """Model-supplied result limit forced into [1, MAX_SEARCH_LIMIT]; unparseable means default."""
    if limit is None:
        return None
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric search limit %r", limit)
        return None
    return min(max(limit, 1), MAX_SEARCH_LIMIT)


async def _run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


class AgentOrchestrator:
    """Runs one agent turn; every collaborator is injected."""

    def __init__(
        self,
        conversations: ConversationStore,
        limiter: RateLimiter,
        generator: ToolCallingGenerator,
        article_retriever: ArticleRetriever,
        sponsored_retriever: SponsoredRetriever,
        max_steps: int = 5,
        recent_messages: int = 10,
        thread_title: str = "New Article Agent Thread",
        snippet_chars: int = 300,
        generation_timeout: Optional[float] = None,
        sponsored_timeout: Optional[float] = None,
    ):
        self.conversations = conversations
        self.limiter = limiter
        self.generator = generator
        self.article_retriever = article_retriever
        self.sponsored_retriever = sponsored_retriever
        self.max_steps = max_steps
        self.recent_messages = recent_messages
        self.thread_title = thread_title
        self.snippet_chars = snippet_chars
        self.generation_timeout = generation_timeout
        self.sponsored_timeout = sponsored_timeout

    def search_tool(self) -> Tool:
        def handler(query: str, filter_channel: Optional[str] = None, filter_status: Optional[str] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
            limit = clamp_limit(limit)
            results = self.article_retriever.retrieve(query, channel=filter_channel, status=filter_status, limit=limit)
            logger.info("Search tool returned %d articles for %r", len(results), query)
            return [r.model_dump() for r in results]

        return Tool(
            name=SEARCH_TOOL_NAME,
            description=(
                "Searches the knowledge base for articles relevant to the user's query or keywords. "
                "Use it to find the information needed to answer the user."
            ),
            parameters=SEARCH_TOOL_PARAMETERS,
            handler=handler,
        )

    @staticmethod
    def _validate(prompt: Any, conversation_id: Any, contributor_ids: Any) -> None:
        if not isinstance(prompt, str) or not prompt.strip():
            raise InputValidationError("prompt must be a non-empty string")
        if conversation_id is not None and (not isinstance(conversation_id, str) or not conversation_id):
            raise InputValidationError("conversation_id must be a non-empty string")
        if contributor_ids is not None:
            if not isinstance(contributor_ids, (list, tuple)) or not all(
                isinstance(c, int) and not isinstance(c, bool) for c in contributor_ids
            ):
                raise InputValidationError("sponsored_contributor_ids must be a list of integers")

    def _resolve_thread(self, conversation_id: Optional[str], owner_id: Optional[str]) -> str:
        try:
            if conversation_id is not None:
                if not self.conversations.exists(conversation_id):
                    raise ConversationResolutionFailed(f"conversation {conversation_id} not found")
                return conversation_id
            return self.conversations.create_conversation(owner_id=owner_id, title=self.thread_title)
        except StoreError as e:
            raise ConversationResolutionFailed(f"conversation store failed: {e}") from e

    def _load_history(self, thread_id: str) -> List[Dict[str, str]]:
        try:
            return self.conversations.recent_messages(thread_id, self.recent_messages)
        except StoreError as e:
            raise ConversationResolutionFailed(f"could not load history for {thread_id}: {e}") from e

    def _record_turn(self, thread_id: str, prompt: str, answer: str) -> None:
        try:
            self.conversations.append_message(thread_id, "user", prompt)
            self.conversations.append_message(thread_id, "assistant", answer)
        except StoreError:
            logger.exception("Could not save messages for thread %s", thread_id)

    async def _generate(self, prompt: str, history: List[Dict[str, str]]) -> GenerationResult:
        call = _run_sync(
            self.generator.generate,
            prompt,
            SYSTEM_INSTRUCTIONS,
            history=history,
            tools=[self.search_tool()],
            max_steps=self.max_steps,
        )
        try:
            return await asyncio.wait_for(call, timeout=self.generation_timeout)
        except asyncio.TimeoutError as e:
            raise GenerationFailed(f"generation timed out after {self.generation_timeout}s") from e

    async def _sponsored(self, prompt: str, contributor_ids: Sequence[int]) -> List[SourceRef]:
        try:
            results = await asyncio.wait_for(
                _run_sync(self.sponsored_retriever.retrieve, prompt, list(contributor_ids)),
                timeout=self.sponsored_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Sponsored search timed out after %ss; continuing without it", self.sponsored_timeout)
            return []
        except Exception:
            # Sponsored placement must never take the organic answer down with it
            logger.exception("Sponsored search failed; continuing without it")
            return []
        return to_source_refs(results, self.snippet_chars)

    async def send_message(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        sponsored_contributor_ids: Optional[Sequence[int]] = None,
    ) -> SendMessageResponse:
        """Answer prompt within a conversation.

        Raises:
            InputValidationError: Malformed arguments.
            ConversationResolutionFailed: The thread could not be found or created.
            AdmissionRejected: A rate limit refused the request; no LLM call was made.
            GenerationFailed: The LLM call errored or timed out.
        """
        self._validate(prompt, conversation_id, sponsored_contributor_ids)
        trace = Trace("agent_message", input={"prompt": prompt, "conversation_id": conversation_id})
        try:
            response = await self._turn(trace, prompt, conversation_id, owner_id, sponsored_contributor_ids)
        except BaseException as e:
            trace.end(output={"conversation_id": conversation_id}, error=f"{type(e).__name__}: {e}")
            raise
        trace.end(output={"thread_id": response.thread_id, "sources": len(response.sources or []),
                          "sponsored_sources": len(response.sponsored_sources or [])})
        return response

    async def _turn(
        self,
        trace: Trace,
        prompt: str,
        conversation_id: Optional[str],
        owner_id: Optional[str],
        sponsored_contributor_ids: Optional[Sequence[int]],
    ) -> SendMessageResponse:
        thread_id = await _run_sync(self._resolve_thread, conversation_id, owner_id)
        await _run_sync(self.limiter.admit, thread_id)
        trace.event("admitted", {"thread_id": thread_id})

        history = await _run_sync(self._load_history, thread_id)

        sponsored_task: Optional[asyncio.Task] = None
        if sponsored_contributor_ids is not None:
            sponsored_task = asyncio.ensure_future(self._sponsored(prompt, sponsored_contributor_ids))
        try:
            generation = await self._generate(prompt, history)
        except BaseException:
            if sponsored_task is not None:
                sponsored_task.cancel()
            raise
        sponsored_sources = await sponsored_task if sponsored_task is not None else None

        logger.info(
            "Agent usage thread=%s model=%s prompt_tokens=%s completion_tokens=%s total_tokens=%s",
            thread_id,
            self.generator.model,
            generation.usage.get("prompt_tokens"),
            generation.usage.get("completion_tokens"),
            generation.usage.get("total_tokens"),
        )

        sources: Optional[List[SourceRef]] = None
        search = generation.last_invocation(SEARCH_TOOL_NAME)
        if search is not None:
            items = search.result if isinstance(search.result, list) else []
            sources = to_source_refs(items, self.snippet_chars)

        trace.event("merge", {"sources": None if sources is None else len(sources),
                              "sponsored_sources": None if sponsored_sources is None else len(sponsored_sources)})
        await _run_sync(self._record_turn, thread_id, prompt, generation.text)

        trace.generation("answer", prompt=prompt, output=generation.text,
                         metadata={"tool_calls": len(generation.tool_invocations)})
        return SendMessageResponse(
            thread_id=thread_id,
            response_text=generation.text,
            sources=sources,
            sponsored_sources=sponsored_sources,
        )

    async def search_articles(
        self,
        query: str,
        filter_channel: Optional[str] = None,
        filter_status: Optional[str] = None,
        limit: Optional[int] = None,
        conversation_id: Optional[str] = None,
    ) -> List[ArticleResult]:
        """Direct article search behind the same admission gate as the agent."""
        if not isinstance(query, str) or not query.strip():
            raise InputValidationError("query must be a non-empty string")
        if limit is not None and (not isinstance(limit, int) or not 1 <= limit <= MAX_SEARCH_LIMIT):
            raise InputValidationError(f"limit must be an integer in [1, {MAX_SEARCH_LIMIT}]")
        await _run_sync(self.limiter.admit, conversation_id)
        return await _run_sync(
            self.article_retriever.retrieve, query, channel=filter_channel, status=filter_status, limit=limit
        )
