# /flowbot/workflows/engine.py

"""
Resumable flow execution.

One call to `FlowEngine.process_message` handles exactly one inbound message:
it classifies the input against the stored session, resolves the node to run,
then executes nodes iteratively until one of them needs the user (buttons,
a freshly asked question, `waitForUserReply`) or the flow terminates.

Everything the engine remembers between messages lives in the state store via
ConversationSession; the engine itself is stateless and cheap to construct.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import structlog
from pydantic import ValidationError

from flowbot.config import strings
from flowbot.config.settings import settings
from flowbot.models.flow import (
    ApiProperties,
    BaseProperties,
    ButtonsProperties,
    ConditionProperties,
    EndProperties,
    FlowGraph,
    MediaProperties,
    MessageProperties,
    Node,
    NodeType,
    QuestionProperties,
)
from flowbot.services.http_service import ExternalApiClient, external_api_client
from flowbot.services.session_store import AwaitingButtons, ConversationSession, StateStore
from flowbot.services.whatsapp_service import MessagingGateway
from flowbot.utils.metrics import node_executions_counter, session_terminations_counter
from flowbot.workflows.classifier import ClassifiedInput, InputKind, classify_input
from flowbot.workflows.errors import (
    ExternalAPIError,
    FlowConfigurationError,
    NodeNotFoundError,
    StartNodeError,
    StepBudgetExceededError,
    UnsupportedNodeTypeError,
)
from flowbot.workflows.templating import (
    extract_field,
    render_response,
    render_template,
    render_value,
    stringify,
)
from flowbot.workflows.validator import is_known_validation, validate_answer

log = structlog.get_logger(__name__)


class Outcome(str, Enum):
    """How handling of one inbound message finished."""
    SUSPENDED = "suspended"   # waiting for the user's next message
    ENDED = "ended"           # session terminated normally
    ABORTED = "aborted"       # session terminated because of a flow or data error
    IGNORED = "ignored"       # nothing executed (no graph, bad start node, duplicate)
    ACTION = "action"         # handled by a smart button action


@dataclass
class ExecutionContext:
    graph: FlowGraph
    session: ConversationSession
    sender: str
    project_id: str
    input_text: str
    steps: int = 0


@dataclass
class Step:
    """Result of one node: where to go next, or stop because the node settled the session itself."""
    next_node_id: Optional[str] = None
    halt: bool = False


HALT = Step(halt=True)

NodeHandler = Callable[[Node, ExecutionContext], Awaitable[Step]]


class FlowEngine:
    def __init__(
        self,
        store: StateStore,
        gateway: MessagingGateway,
        api_client: Optional[ExternalApiClient] = None,
        session_ttl: int = settings.session_ttl_seconds,
        max_invalid_attempts: int = settings.max_invalid_button_attempts,
        max_question_retries: int = settings.max_question_retries,
        max_steps: int = settings.max_steps_per_event,
        max_buttons: int = settings.max_buttons,
        global_button_scan: bool = settings.global_button_scan,
    ):
        self.store = store
        self.gateway = gateway
        self.api_client = api_client or external_api_client
        self.session_ttl = session_ttl
        self.max_invalid_attempts = max_invalid_attempts
        self.max_question_retries = max_question_retries
        self.max_steps = max_steps
        self.max_buttons = max_buttons
        self.global_button_scan = global_button_scan

        self._handlers: Dict[NodeType, NodeHandler] = {
            NodeType.START: self._run_start,
            NodeType.MESSAGE: self._run_message,
            NodeType.CONDITION: self._run_condition,
            NodeType.BUTTONS: self._run_buttons,
            NodeType.QUESTION: self._run_question,
            NodeType.MEDIA: self._run_media,
            NodeType.API: self._run_api,
            NodeType.END: self._run_end,
            NodeType.UNKNOWN: self._run_unknown,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for node types: {sorted(t.value for t in missing)}")

    def session_for(self, project_id: str, sender: str) -> ConversationSession:
        return ConversationSession(self.store, project_id, sender, self.session_ttl)

    # ==================== Entry point ====================

    async def process_message(self, graph: FlowGraph, project_id: str, sender: str, text: str) -> Outcome:
        session = self.session_for(project_id, sender)
        ctx = ExecutionContext(graph=graph, session=session, sender=sender, project_id=project_id, input_text=text or "")
        bound = log.bind(project_id=project_id, sender=sender)

        classified = await classify_input(ctx.input_text, session, graph, self.global_button_scan)
        bound.info("input_classified", kind=classified.kind.value, node_id=classified.node_id)

        if classified.kind in (InputKind.BUTTON_REPLY, InputKind.GLOBAL_BUTTON):
            return await self._follow_button(classified, ctx)
        if classified.kind == InputKind.INVALID_BUTTON:
            return await self._handle_invalid_button(ctx)
        if classified.kind == InputKind.QUESTION_ANSWER:
            return await self._handle_answer(classified.node_id, ctx)
        return await self._continue(ctx)

    async def _continue(self, ctx: ExecutionContext) -> Outcome:
        position = await ctx.session.get_position()
        if position:
            return await self.run(position, ctx)
        try:
            start = ctx.graph.start_node()
        except StartNodeError as e:
            log.error("flow_configuration_error", project_id=ctx.project_id, error=str(e))
            return Outcome.IGNORED
        return await self.run(start.id, ctx)

    # ==================== Awaited input ====================

    async def _follow_button(self, classified: ClassifiedInput, ctx: ExecutionContext) -> Outcome:
        await ctx.session.clear_awaiting()
        next_node_id = ctx.graph.next_node_id(classified.node_id, classified.label)
        if not next_node_id:
            log.info("button_without_transition", node_id=classified.node_id, label=classified.label)
            return await self._terminate(ctx, "no_next_node")
        await ctx.session.set_position(next_node_id)
        return await self.run(next_node_id, ctx)

    async def _handle_invalid_button(self, ctx: ExecutionContext) -> Outcome:
        attempts = await ctx.session.increment_invalid_attempts()
        limit = self.max_invalid_attempts

        if attempts >= limit:
            log.warning("invalid_button_limit_reached", sender=ctx.sender, attempts=attempts)
            await self._send_text(ctx, strings.INVALID_BUTTON_TERMINATED.format(max_attempts=limit))
            end_node = ctx.graph.first_node_of_type(NodeType.END)
            if end_node:
                # the end node clears the session itself
                await self.run(end_node.id, ctx)
            else:
                await self._terminate(ctx, "invalid_button_replies")
            return Outcome.ENDED

        await self._send_text(ctx, strings.INVALID_BUTTON_RETRY.format(attempts=attempts, max_attempts=limit))
        return Outcome.SUSPENDED

    async def _handle_answer(self, node_id: Optional[str], ctx: ExecutionContext) -> Outcome:
        node = ctx.graph.get_node(node_id) if node_id else None
        if node is None or node.type != NodeType.QUESTION:
            log.warning("stale_question_marker", node_id=node_id)
            await ctx.session.clear_question()
            return await self._continue(ctx)

        try:
            props = node.props(QuestionProperties)
        except ValidationError as e:
            return await self._abort(ctx, "invalid_node_properties", FlowConfigurationError(str(e)))

        if not is_known_validation(props.validation):
            log.warning("unknown_validation_kind", node_id=node.id, validation=props.validation)

        answer = ctx.input_text.strip()
        result = validate_answer(props.validation, answer)
        limit = props.max_retries if props.max_retries is not None else self.max_question_retries

        if not result["is_valid"]:
            retries = await ctx.session.increment_retries()
            log.info("answer_rejected", node_id=node.id, error_code=result["error_code"], retries=retries)
            if retries >= limit:
                await self._send_text(ctx, strings.QUESTION_TERMINATED.format(max_attempts=limit))
                return await self._terminate(ctx, "question_retries")
            await self._send_text(ctx, strings.QUESTION_RETRY.format(
                validation=result["message"], attempts=retries, max_attempts=limit, question=props.prompt,
            ))
            return Outcome.SUSPENDED

        await ctx.session.set_variable(props.property_name or node.id, answer)
        await ctx.session.clear_question()

        next_node_id = ctx.graph.next_node_id(node.id)
        if not next_node_id:
            return await self._terminate(ctx, "no_next_node")
        await ctx.session.set_position(next_node_id)
        if props.wait_for_user_reply:
            return Outcome.SUSPENDED
        return await self.run(next_node_id, ctx)

    # ==================== Execution loop ====================

    async def run(self, node_id: str, ctx: ExecutionContext) -> Outcome:
        """Execute from `node_id` until a node suspends, the flow ends, or the step budget runs out."""
        current: Optional[str] = node_id
        while current:
            try:
                if ctx.steps >= self.max_steps:
                    raise StepBudgetExceededError(
                        f"More than {self.max_steps} nodes executed for one message (last: {current})"
                    )
                ctx.steps += 1

                node = ctx.graph.get_node(current)
                if node is None:
                    raise NodeNotFoundError(f"Node with ID {current} not found")

                node_executions_counter.labels(node_type=node.type.value).inc()
                log.info("executing_node", node_id=node.id, node_type=node.raw_type, step=ctx.steps)

                common = node.props(BaseProperties)
                if common.quick_reply:
                    await self._send_text(ctx, common.quick_reply)

                step = await self._handlers[node.type](node, ctx)
            except NodeNotFoundError as e:
                log.error("session_points_at_missing_node", node_id=current, error=str(e))
                return await self._terminate(ctx, "node_not_found", outcome=Outcome.ABORTED)
            except ValidationError as e:
                return await self._abort(ctx, "invalid_node_properties", FlowConfigurationError(str(e)))
            except (FlowConfigurationError, UnsupportedNodeTypeError) as e:
                reason = "step_budget_exceeded" if isinstance(e, StepBudgetExceededError) else (
                    "unsupported_node" if isinstance(e, UnsupportedNodeTypeError) else "flow_configuration_error"
                )
                return await self._abort(ctx, reason, e)

            if step.halt:
                return await self._settled_outcome(ctx)
            if not step.next_node_id:
                log.info("flow_ended_no_next_node", node_id=node.id)
                return await self._terminate(ctx, "no_next_node")

            await ctx.session.set_position(step.next_node_id)
            if common.wait_for_user_reply:
                log.info("waiting_for_user_reply", node_id=node.id, next_node_id=step.next_node_id)
                return Outcome.SUSPENDED
            current = step.next_node_id

        return await self._terminate(ctx, "no_next_node")

    async def _settled_outcome(self, ctx: ExecutionContext) -> Outcome:
        # A halting node either left a pending marker or ended the session
        if await ctx.session.get_position():
            return Outcome.SUSPENDED
        return Outcome.ENDED

    # ==================== Node handlers ====================

    async def _run_start(self, node: Node, ctx: ExecutionContext) -> Step:
        return Step(ctx.graph.next_node_id(node.id))

    async def _run_message(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(MessageProperties)
        await self._send_text(ctx, props.message)
        return Step(ctx.graph.next_node_id(node.id))

    async def _run_condition(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(ConditionProperties)
        text = ctx.input_text.lower()
        matched = any(keyword in text for keyword in props.keyword_list())
        log.info("condition_evaluated", node_id=node.id, matched=matched)
        return Step(ctx.graph.next_node_id(node.id, "true" if matched else "false"))

    async def _run_buttons(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(ButtonsProperties)
        if not props.buttons:
            raise FlowConfigurationError(f"Buttons node {node.id} defines no buttons")

        buttons = props.buttons[:self.max_buttons]
        if len(props.buttons) > self.max_buttons:
            log.warning("buttons_truncated", node_id=node.id, defined=len(props.buttons), sent=len(buttons))

        if not await self.gateway.send_buttons(ctx.sender, props.message, buttons):
            log.warning("send_failed", node_id=node.id, message_type="interactive")

        await ctx.session.set_position(node.id)
        await ctx.session.set_awaiting(AwaitingButtons(
            node_id=node.id,
            buttons=[b.title.strip().lower() for b in buttons],
            ids=[b.reply_id(index) for index, b in enumerate(buttons, start=1)],
        ))
        return HALT

    async def _run_question(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(QuestionProperties)
        await self._send_text(ctx, props.prompt)
        await ctx.session.set_position(node.id)
        await ctx.session.set_question_pending(node.id)
        return HALT

    async def _run_media(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(MediaProperties)
        if not await self.gateway.send_media(ctx.sender, props.media_url, props.media_type, props.caption, props.filename):
            log.warning("send_failed", node_id=node.id, message_type=props.media_type)
        return Step(ctx.graph.next_node_id(node.id))

    async def _run_api(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(ApiProperties)
        resolve = ctx.session.get_variable
        try:
            url = await render_template(props.url, resolve, url_encode=True)
            headers = {key: await render_template(value, resolve) for key, value in props.headers.items()}
            body = await render_value(props.body, resolve)
            payload = await self.api_client.request(props.method, url, headers, body, source="api_node")

            result = extract_field(payload, props.response_key)
            if props.save_as:
                await ctx.session.set_variable(props.save_as, stringify(result))

            if props.response_type == "media":
                media_url = stringify(extract_field(result, props.media_url_field))
                caption = stringify(extract_field(result, props.caption_field)) if props.caption_field else None
                if not await self.gateway.send_media(ctx.sender, media_url, props.media_type, caption):
                    log.warning("send_failed", node_id=node.id, message_type=props.media_type)
            else:
                text = render_response(props.response_template, result) if props.response_template else stringify(result)
                await self._send_text(ctx, text)
        except ExternalAPIError as e:
            log.warning("api_node_failed", node_id=node.id, error=str(e))
            await self._send_text(ctx, props.error_message or strings.API_FALLBACK)
        return Step(ctx.graph.next_node_id(node.id))

    async def _run_end(self, node: Node, ctx: ExecutionContext) -> Step:
        props = node.props(EndProperties)
        if props.message:
            await self._send_text(ctx, props.message)
        log.info("flow_ended_by_end_node", node_id=node.id)
        await self._terminate(ctx, "end_node")
        return HALT

    async def _run_unknown(self, node: Node, ctx: ExecutionContext) -> Step:
        raise UnsupportedNodeTypeError(f"Unsupported node type: {node.raw_type}")

    # ==================== Helpers ====================

    async def _send_text(self, ctx: ExecutionContext, text: str):
        if not await self.gateway.send_text(ctx.sender, text):
            log.warning("send_failed", sender=ctx.sender, message_type="text")

    async def _terminate(self, ctx: ExecutionContext, reason: str, outcome: Outcome = Outcome.ENDED) -> Outcome:
        await ctx.session.clear()
        session_terminations_counter.labels(reason=reason).inc()
        return outcome

    async def _abort(self, ctx: ExecutionContext, reason: str, error: Exception) -> Outcome:
        log.error("flow_aborted", project_id=ctx.project_id, sender=ctx.sender, reason=reason, error=str(error))
        await self._send_text(ctx, strings.GENERIC_FAILURE)
        return await self._terminate(ctx, reason, outcome=Outcome.ABORTED)
