# /flowbot/models/flow.py

import re
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowbot.config import strings
from flowbot.workflows.errors import StartNodeError

# Pydantic models for a project's flow graph as produced by the visual editor:
# nodes with type-specific properties and (optionally labeled) edges between them.


def normalize_label(label: str) -> str:
    """Canonical form used to compare button labels, reply ids and edge labels."""
    return re.sub(r"\s+", "_", str(label).strip().lower())


def button_reply_id(index: int, title: str) -> str:
    """Synthesized reply id for the button at 1-based position `index`."""
    return f"btn_{index}_{normalize_label(title)}"


class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    CONDITION = "condition"
    BUTTONS = "buttons"
    QUESTION = "question"
    MEDIA = "media"
    API = "api"
    END = "end"
    UNKNOWN = "unknown"


# Type names emitted by older versions of the editor
NODE_TYPE_ALIASES: Dict[str, NodeType] = {
    "keywordMatch": NodeType.CONDITION,
}


def parse_node_type(raw: Any) -> NodeType:
    if isinstance(raw, NodeType):
        return raw
    if isinstance(raw, str):
        if raw in NODE_TYPE_ALIASES:
            return NODE_TYPE_ALIASES[raw]
        try:
            return NodeType(raw)
        except ValueError:
            pass
    return NodeType.UNKNOWN


# ---------------- Buttons and smart actions ---------------- #

class ActionRequest(BaseModel):
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class ResponseMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response_key: Optional[str] = Field(default=None, alias="responseKey")
    media_url_field: str = Field(default="url", alias="mediaUrlField")
    caption_field: Optional[str] = Field(default=None, alias="captionField")
    media_type: str = Field(default="image", alias="mediaType")


class ButtonAction(BaseModel):
    """Self-contained action attached to a button, run regardless of flow position."""
    model_config = ConfigDict(populate_by_name=True)

    type: str
    request: ActionRequest
    response_mapping: ResponseMapping = Field(default_factory=ResponseMapping, alias="responseMapping")


class Button(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = None
    title: str
    action: Optional[ButtonAction] = None

    def reply_id(self, index: int) -> str:
        return self.id or button_reply_id(index, self.title)


# ---------------- Node properties ---------------- #

class BaseProperties(BaseModel):
    """Properties every node type may carry."""
    model_config = ConfigDict(populate_by_name=True)

    quick_reply: Optional[str] = Field(default=None, alias="quickReply")
    wait_for_user_reply: bool = Field(default=False, alias="waitForUserReply")


class MessageProperties(BaseProperties):
    message: str = strings.DEFAULT_MESSAGE


class ConditionProperties(BaseProperties):
    keywords: str | List[str] = ""

    def keyword_list(self) -> List[str]:
        raw = self.keywords.split(",") if isinstance(self.keywords, str) else self.keywords
        return [k.strip().lower() for k in raw if k and k.strip()]


class ButtonsProperties(BaseProperties):
    message: str = strings.DEFAULT_BUTTONS_PROMPT
    buttons: List[Button] = Field(default_factory=list)

    @field_validator("buttons", mode="before")
    @classmethod
    def coerce_plain_labels(cls, v):
        if isinstance(v, list):
            return [{"title": b} if isinstance(b, str) else b for b in v]
        return v


class QuestionProperties(BaseProperties):
    question: Optional[str] = None
    message: Optional[str] = None
    validation: Optional[str] = None
    property_name: Optional[str] = Field(default=None, alias="propertyName")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries", ge=1)

    @property
    def prompt(self) -> str:
        return self.question or self.message or strings.DEFAULT_QUESTION_PROMPT


class MediaProperties(BaseProperties):
    media_url: str = Field(alias="mediaUrl")
    media_type: str = Field(default="image", alias="mediaType")
    caption: Optional[str] = None
    filename: Optional[str] = None


class ApiProperties(BaseProperties):
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    response_key: Optional[str] = Field(default=None, alias="responseKey")
    response_type: str = Field(default="text", alias="responseType")
    response_template: Optional[str] = Field(default=None, alias="responseTemplate")
    media_url_field: str = Field(default="url", alias="mediaUrlField")
    caption_field: Optional[str] = Field(default=None, alias="captionField")
    media_type: str = Field(default="image", alias="mediaType")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    save_as: Optional[str] = Field(default=None, alias="saveAs")


class EndProperties(BaseProperties):
    message: Optional[str] = None


P = TypeVar("P", bound=BaseProperties)


# ---------------- Graph ---------------- #

class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    properties: Dict[str, Any] = Field(default_factory=dict)


class Node(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    type: NodeType = NodeType.UNKNOWN
    raw_type: Optional[str] = None
    data: NodeData = Field(default_factory=NodeData)

    @model_validator(mode="before")
    @classmethod
    def resolve_type(cls, values):
        if isinstance(values, dict):
            values = dict(values)
            raw = values.get("type")
            if values.get("raw_type") is None:
                values["raw_type"] = raw.value if isinstance(raw, NodeType) else raw if isinstance(raw, str) else None
            values["type"] = parse_node_type(raw)
        return values

    @property
    def properties(self) -> Dict[str, Any]:
        return self.data.properties

    def props(self, model: Type[P]) -> P:
        return model.model_validate(self.properties)


class Edge(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    source: str
    target: str
    label: Optional[str] = None


class FlowGraph(BaseModel):
    """A project's conversation graph. Read-only during execution."""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def next_node_id(self, source_id: str, label: Optional[str] = None) -> Optional[str]:
        """
        Resolve the transition out of `source_id`.
        With a label, only an edge whose normalized label matches is taken.
        Without one, the first unlabeled edge wins, falling back to any edge.
        """
        outgoing = [e for e in self.edges if e.source == source_id]
        if label is not None:
            wanted = normalize_label(label)
            return next((e.target for e in outgoing if e.label is not None and normalize_label(e.label) == wanted), None)
        default = next((e for e in outgoing if not e.label), None)
        if default:
            return default.target
        return outgoing[0].target if outgoing else None

    def start_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.type == NodeType.START]

    def start_node(self) -> Node:
        starts = self.start_nodes()
        if len(starts) != 1:
            raise StartNodeError(f"Flow must have exactly one start node, found {len(starts)}")
        return starts[0]

    def first_node_of_type(self, node_type: NodeType) -> Optional[Node]:
        return next((n for n in self.nodes if n.type == node_type), None)

    def iter_buttons(self) -> Iterator[Tuple[Node, int, Button]]:
        """Yield (node, 1-based index, button) for every well-formed buttons node."""
        for node in self.nodes:
            if node.type != NodeType.BUTTONS:
                continue
            try:
                props = node.props(ButtonsProperties)
            except ValueError:
                continue
            for index, button in enumerate(props.buttons, start=1):
                yield node, index, button

    def find_button(self, reply_id: str) -> Optional[Button]:
        for _node, index, button in self.iter_buttons():
            if button.id == reply_id or button.reply_id(index) == reply_id:
                return button
        return None
