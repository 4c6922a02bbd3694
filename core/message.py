"""Upstream request construction

Builds the chat-completions body sent to the model for one topic.
"""
from typing import Any, Dict, List

from core.config import UpstreamConfig


def build_messages(question: str, system_prompt: str) -> List[Dict[str, str]]:
    """System prompt first, then the user's topic verbatim."""
    messages: List[Dict[str, str]] = []
    if system_prompt and system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": question})
    return messages


def build_chat_request(question: str, settings: UpstreamConfig) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": settings.model,
        "messages": build_messages(question, settings.system_prompt),
        "stream": True,
    }
    if settings.json_mode:
        body["response_format"] = {"type": "json_object"}
    return body
