# services/chat_service.py
import logging
import time
from typing import Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from core.domain import (
    ChatContext, ChatResult, CompletionFailure, ContextBlock, ContextStatus,
    ConversationTurn, RetrievalDecision, UserProfile, UserRole
)
from core.interfaces import ICompletionProvider, IProfileRepository, ITaskRepository
from database.session import get_session
from infrastructure.repositories import SQLProfileRepository, SQLTaskRepository
from services.chat_heuristics import (
    build_system_prompt, classify_completion_failure, decide_retrieval,
    render_fallback, render_retrieval_block, render_task_block
)
from services.search_service import DocumentSearchService
from utils.common import utcnow

logger = logging.getLogger(settings.LOGGER_NAME)

RATE_LIMIT_MESSAGE = "AI service temporarily unavailable. Please try again in a moment."
EMPTY_REPLY_MESSAGE = "I apologize, but I could not generate a response. Please try again."


class ChatRateLimited(Exception):
    """The completion provider throttled us; the caller should answer 429"""

    def __init__(self, message: str = RATE_LIMIT_MESSAGE):
        self.message = message
        super().__init__(message)


class ChatService:
    """
    Context assembler for the chat assistant.

    Retrieval and task context are optional: a failure in either is logged
    and the prompt is built without that block. Only completion failures
    change the outcome of a request (fallback, 429, or propagate).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        search_service: DocumentSearchService,
        completion: ICompletionProvider,
        task_repo_factory: Callable[[AsyncSession], ITaskRepository] = SQLTaskRepository,
        profile_repo_factory: Callable[[AsyncSession], IProfileRepository] = SQLProfileRepository,
    ):
        self.session_factory = session_factory
        self.search_service = search_service
        self.completion = completion
        self.task_repo_factory = task_repo_factory
        self.profile_repo_factory = profile_repo_factory

    async def _load_profile(self, user_id: str) -> UserProfile:
        try:
            async with get_session(self.session_factory) as session:
                profile = await self.profile_repo_factory(session).get_profile(user_id)
        except Exception as e:
            logger.warning(f"Profile lookup failed for user {user_id}: {e}")
            profile = None
        if profile is None:
            return UserProfile(id=user_id, role=UserRole.from_string(settings.DEFAULT_USER_ROLE))
        return profile

    async def _retrieval_block(self, message: str) -> ContextBlock:
        try:
            hits = await self.search_service.search(
                message,
                threshold=settings.CHAT_SEARCH_THRESHOLD,
                limit=settings.CHAT_SEARCH_LIMIT,
            )
        except Exception as e:
            logger.warning(f"Document retrieval failed, answering without it: {e}", exc_info=True)
            return ContextBlock(status=ContextStatus.FAILED, reason=str(e))

        hits = hits[:settings.CHAT_SEARCH_LIMIT]
        if not hits:
            return ContextBlock(status=ContextStatus.EMPTY)
        return ContextBlock(status=ContextStatus.INCLUDED, text=render_retrieval_block(hits), hits=hits)

    async def _task_block(self, user_id: str) -> ContextBlock:
        try:
            async with get_session(self.session_factory) as session:
                tasks = await self.task_repo_factory(session).get_active_tasks(
                    user_id, limit=settings.CHAT_TASK_LIMIT
                )
        except Exception as e:
            logger.warning(f"Fetching active tasks failed for user {user_id}: {e}")
            return ContextBlock(status=ContextStatus.FAILED, reason=str(e))

        tasks = tasks[:settings.CHAT_TASK_LIMIT]
        if not tasks:
            return ContextBlock(status=ContextStatus.EMPTY)
        return ContextBlock(status=ContextStatus.INCLUDED, text=render_task_block(tasks))

    @staticmethod
    def _build_messages(
        system_prompt: str, history: Sequence[ConversationTurn], message: str
    ) -> List[dict]:
        messages = [{"role": "system", "content": system_prompt}]
        recent = list(history)[-settings.CHAT_HISTORY_LIMIT:] if settings.CHAT_HISTORY_LIMIT > 0 else []
        for turn in recent:
            messages.append({
                "role": "user" if turn.role == "user" else "assistant",
                "content": turn.content,
            })
        messages.append({"role": "user", "content": message})
        return messages

    async def respond(
        self,
        message: str,
        user_id: str,
        history: Optional[Sequence[ConversationTurn]] = None,
    ) -> ChatResult:
        profile = await self._load_profile(user_id)
        decision = decide_retrieval(message)

        if decision == RetrievalDecision.SEARCH:
            retrieval = await self._retrieval_block(message)
        else:
            retrieval = ContextBlock(status=ContextStatus.SKIPPED)
        tasks = await self._task_block(user_id)

        system_prompt = build_system_prompt(profile, tasks.text, retrieval.text)
        messages = self._build_messages(system_prompt, history or [], message)

        fallback = False
        try:
            response = await self.completion.complete(messages)
            if not response or not response.strip():
                logger.warning("Completion provider returned an empty reply")
                response = EMPTY_REPLY_MESSAGE
        except Exception as e:
            failure = classify_completion_failure(e)
            if failure == CompletionFailure.AUTH_OR_QUOTA:
                logger.warning(f"Completion provider unavailable ({e}), using fallback response")
                response = render_fallback(message, profile.role, tasks.text, retrieval.text)
                fallback = True
            elif failure == CompletionFailure.RATE_LIMITED:
                logger.warning(f"Completion provider rate limited: {e}")
                raise ChatRateLimited() from e
            else:
                logger.error(f"Completion failed: {e}", exc_info=True)
                raise

        context = ChatContext(
            user_role=profile.role,
            conversation_length=len(messages),
            rag_search_performed=decision == RetrievalDecision.SEARCH,
            rag_results_count=len(retrieval.hits),
            search_query=message if decision == RetrievalDecision.SEARCH else None,
            task_context_included=tasks.included,
            timestamp=utcnow(),
            fallback=fallback,
            retrieval_status=retrieval.status,
            task_context_status=tasks.status,
        )
        return ChatResult(
            response=response,
            context=context,
            search_hits=retrieval.hits,
            message_id=f"msg_{int(time.time() * 1000)}",
        )


def conversation_from_dicts(items: Optional[Sequence[dict]]) -> List[ConversationTurn]:
    turns: List[ConversationTurn] = []
    for item in items or []:
        if isinstance(item, dict) and isinstance(item.get("content"), str):
            turns.append(ConversationTurn(role=str(item.get("role", "user")), content=item["content"]))
    return turns
