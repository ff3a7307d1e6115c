"""Keyword heuristics and prompt/fallback templates for the chat assistant"""
from typing import List, Optional

from config import settings
from core.domain import (
    ActiveTask, CompletionFailure, FallbackTopic, ProviderErrorCode,
    RetrievalDecision, SearchHit, UserProfile, UserRole
)
from core.exceptions import ProviderError

SEARCH_KEYWORDS = (
    "find", "search", "what", "how", "when", "where",
    "document", "file", "procedure", "manual", "guide", "instruction",
)

# Checked in order; the first topic with a matching keyword wins
FALLBACK_KEYWORDS = (
    (FallbackTopic.TASKS, ("task", "assignment")),
    (FallbackTopic.SEARCH, ("search", "find", "document")),
    (FallbackTopic.HELP, ("help", "how")),
    (FallbackTopic.TROUBLESHOOTING, ("problem", "issue", "error")),
)

AUTH_OR_QUOTA_MARKERS = ("API key", "insufficient_quota")
AUTH_OR_QUOTA_CODES = (ProviderErrorCode.AUTHENTICATION, ProviderErrorCode.QUOTA_EXCEEDED)


def decide_retrieval(message: str) -> RetrievalDecision:
    lowered = message.lower()
    if any(keyword in lowered for keyword in SEARCH_KEYWORDS):
        return RetrievalDecision.SEARCH
    return RetrievalDecision.SKIP


def classify_fallback_topic(message: str) -> FallbackTopic:
    lowered = message.lower()
    for topic, keywords in FALLBACK_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return topic
    return FallbackTopic.GENERAL


def classify_completion_failure(error: Exception) -> CompletionFailure:
    """
    Sort a completion failure into the three outcomes the chat endpoint knows.

    Matches on the error text first, then on the provider-supplied code.
    """
    message = str(error)
    code = error.code if isinstance(error, ProviderError) else None

    if any(marker in message for marker in AUTH_OR_QUOTA_MARKERS) or code in AUTH_OR_QUOTA_CODES:
        return CompletionFailure.AUTH_OR_QUOTA
    if "rate limit" in message.lower() or code == ProviderErrorCode.RATE_LIMITED:
        return CompletionFailure.RATE_LIMITED
    return CompletionFailure.UNCLASSIFIED


def render_retrieval_block(hits: List[SearchHit], excerpt_length: int = settings.CHAT_EXCERPT_LENGTH) -> str:
    if not hits:
        return ""
    excerpts = [
        f'{index}. From "{hit.filename}": {hit.chunk.content[:excerpt_length]}...'
        for index, hit in enumerate(hits, start=1)
    ]
    return "\n\nRelevant document excerpts:\n" + "\n\n".join(excerpts)


def render_task_block(tasks: List[ActiveTask]) -> str:
    if not tasks:
        return ""
    lines = [f"- {task.title} ({task.status}, priority: {task.priority})" for task in tasks]
    return "\n\nUser's current active tasks:\n" + "\n".join(lines)


def build_system_prompt(profile: UserProfile, task_block: str = "", retrieval_block: str = "") -> str:
    if profile.role.is_elevated:
        capabilities = (
            "- You can help with team management, user assignments, and analytics\n"
            "- You have access to all system features and can provide administrative guidance"
        )
    else:
        capabilities = (
            "- You focus on individual task completion and field operations\n"
            "- You help with day-to-day service activities"
        )

    return f"""You are an AI assistant for a field service management application.

User Context:
- Name: {profile.full_name or 'User'}
- Role: {profile.role.value}
- Email: {profile.email or ''}

You help users with:
1. Task management and coordination
2. Document search and information retrieval
3. Field service best practices
4. System navigation and usage
5. Troubleshooting guidance
6. Creating and managing service tasks
7. Finding relevant documentation and procedures

Role-based capabilities:
{capabilities}
{task_block}
{retrieval_block}

Guidelines:
- Keep responses helpful, concise, and relevant to field service operations
- When referencing documents, mention the source filename
- If you suggest creating tasks or assignments, provide specific details
- For troubleshooting, ask clarifying questions to better understand the issue
- If you don't have enough information, ask the user for more details"""


def render_fallback(message: str, role: UserRole, task_block: str = "", retrieval_block: str = "") -> str:
    """Deterministic reply used when the completion provider rejects our credentials or quota"""
    topic = classify_fallback_topic(message)

    if topic == FallbackTopic.TASKS:
        if role.is_elevated:
            return ("I can help you manage tasks and assignments. You can create new tasks, assign them "
                    "to team members, and track their progress. Would you like me to help you create a "
                    "specific task or review existing ones?")
        return ("I can help you with your tasks. You can view your assigned tasks, update their status, "
                "and add comments. What specific task would you like to work on?")

    if topic == FallbackTopic.SEARCH:
        if retrieval_block:
            return (f"I found some relevant information in your documents:{retrieval_block}\n\n"
                    "Would you like me to search for more specific information?")
        return ("I can help you search through your uploaded documents and manuals. Try asking about "
                "specific procedures, equipment, or troubleshooting steps.")

    if topic == FallbackTopic.HELP:
        tasks_note = "\nI see you have some active tasks. Would you like help with any of them?" if task_block else ""
        return f"""I'm here to help you with field service operations! I can assist with:

• Task management and coordination
• Searching through documents and manuals
• Field service best practices
• System navigation
• Troubleshooting guidance

{tasks_note}

What would you like help with today?"""

    if topic == FallbackTopic.TROUBLESHOOTING:
        return ("I can help you troubleshoot issues. Please provide more details about the problem you're "
                "experiencing, including any error messages, equipment involved, and when the issue started.")

    tasks_note = "\nI notice you have some active tasks. Would you like to review them?" if task_block else ""
    return f"""Hello! I'm your AI assistant for field service management. I can help you with:

• Managing and creating tasks
• Searching through documentation
• Providing field service guidance
• System navigation help

{tasks_note}

How can I assist you today?"""


def snippet(content: str, length: Optional[int] = None) -> str:
    """Short preview of a chunk for API responses; always ends with an ellipsis"""
    length = length or settings.SNIPPET_LENGTH
    return content[:length] + "..."
