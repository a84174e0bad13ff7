# /flowbot/workflows/classifier.py

"""
Decides what an inbound message means for the current session.

Precedence, first match wins:
1. a buttons node is awaiting a reply  -> button reply, or invalid button reply
2. a question is pending               -> answer for that question (raw text)
3. global button scan (optional)       -> any button anywhere in the graph
4. otherwise                           -> continue from the stored position, or start
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from flowbot.models.flow import FlowGraph, button_reply_id, normalize_label
from flowbot.services.session_store import AwaitingButtons, ConversationSession


class InputKind(str, Enum):
    BUTTON_REPLY = "button_reply"
    INVALID_BUTTON = "invalid_button"
    QUESTION_ANSWER = "question_answer"
    GLOBAL_BUTTON = "global_button"
    CONTINUATION = "continuation"


@dataclass
class ClassifiedInput:
    kind: InputKind
    raw_text: str
    token: str
    node_id: Optional[str] = None
    label: Optional[str] = None


def match_button(token: str, titles: List[str], ids: Optional[List[str]] = None) -> Optional[str]:
    """Return the title whose label, synthesized id or explicit id equals the normalized token."""
    ids = ids or []
    for index, title in enumerate(titles, start=1):
        candidates = {normalize_label(title), button_reply_id(index, title)}
        if index <= len(ids) and ids[index - 1]:
            candidates.add(normalize_label(ids[index - 1]))
        if token in candidates:
            return title
    return None


def scan_graph_buttons(token: str, graph: FlowGraph) -> Optional[ClassifiedInput]:
    """Match the token against every buttons node; only buttons with an outgoing edge count."""
    for node, index, button in graph.iter_buttons():
        candidates = {normalize_label(button.title), button_reply_id(index, button.title)}
        if button.id:
            candidates.add(normalize_label(button.id))
        if token in candidates and graph.next_node_id(node.id, button.title):
            return ClassifiedInput(InputKind.GLOBAL_BUTTON, raw_text="", token=token, node_id=node.id, label=button.title)
    return None


async def classify_input(text: str, session: ConversationSession, graph: FlowGraph,
                         global_button_scan: bool = True) -> ClassifiedInput:
    raw_text = text or ""
    token = normalize_label(raw_text)

    awaiting: Optional[AwaitingButtons] = await session.get_awaiting()
    if awaiting:
        matched = match_button(token, awaiting.buttons, awaiting.ids)
        if matched is not None:
            return ClassifiedInput(InputKind.BUTTON_REPLY, raw_text, token, node_id=awaiting.node_id, label=matched)
        return ClassifiedInput(InputKind.INVALID_BUTTON, raw_text, token, node_id=awaiting.node_id)

    question_node_id = await session.get_question_pending()
    if question_node_id:
        return ClassifiedInput(InputKind.QUESTION_ANSWER, raw_text, token, node_id=question_node_id)

    if global_button_scan:
        scanned = scan_graph_buttons(token, graph)
        if scanned:
            scanned.raw_text = raw_text
            return scanned

    return ClassifiedInput(InputKind.CONTINUATION, raw_text, token)
