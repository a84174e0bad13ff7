# /flowbot/services/conversation_service.py

from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from flowbot.config.settings import Settings, settings
from flowbot.models.events import InboundEvent
from flowbot.models.project import Project
from flowbot.services.cache_service import cache_service
from flowbot.services.http_service import ExternalApiClient, external_api_client
from flowbot.services.project_service import ProjectSource, project_repository
from flowbot.services.session_store import ConversationSession, StateStore
from flowbot.services.whatsapp_service import MessagingGateway, gateway_for_project
from flowbot.utils.metrics import flow_events_counter
from flowbot.workflows.actions import ActionResolver
from flowbot.workflows.engine import FlowEngine, Outcome
from flowbot.workflows.errors import MissingFlowGraphError

# Entry point for inbound chat events: resolves the project, separates smart
# button presses from ordinary input, and runs the flow engine under the
# per-session lock.

log = structlog.get_logger(__name__)

GatewayFactory = Callable[[Project], MessagingGateway]


def parse_webhook_payload(body: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    """Extract (phone_number_id, message) pairs from a WhatsApp webhook body. Status updates are skipped."""
    messages: List[Tuple[str, Dict[str, Any]]] = []
    for entry in body.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            if change.get("field", "messages") != "messages":
                continue
            value = change.get("value", {}) or {}
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            if not phone_number_id:
                continue
            for message in value.get("messages", []) or []:
                messages.append((str(phone_number_id), message))
    return messages


def event_from_message(message: Dict[str, Any], project_id: str) -> Optional[InboundEvent]:
    """Build an InboundEvent from a WhatsApp message object; None for unsupported message types."""
    sender = message.get("from")
    if not sender:
        return None
    common = {"sender_identity": str(sender), "project_id": project_id, "message_id": message.get("id")}
    message_type = message.get("type")

    if message_type == "text":
        return InboundEvent(text=(message.get("text") or {}).get("body", ""), **common)
    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply")
        if reply and (reply.get("id") or reply.get("title")):
            return InboundEvent(button_reply_id=reply.get("id"), button_reply_title=reply.get("title"), **common)
    if message_type == "button":
        button = message.get("button") or {}
        if button.get("payload") or button.get("text"):
            return InboundEvent(button_reply_id=button.get("payload"), button_reply_title=button.get("text"), **common)
    return None


class ConversationService:
    def __init__(
        self,
        store: StateStore,
        projects: ProjectSource,
        gateway_factory: GatewayFactory = gateway_for_project,
        api_client: Optional[ExternalApiClient] = None,
        config: Settings = settings,
    ):
        self.store = store
        self.projects = projects
        self.gateway_factory = gateway_factory
        self.api_client = api_client or external_api_client
        self.config = config

    def _engine(self, gateway: MessagingGateway) -> FlowEngine:
        return FlowEngine(
            self.store,
            gateway,
            self.api_client,
            session_ttl=self.config.session_ttl_seconds,
            max_invalid_attempts=self.config.max_invalid_button_attempts,
            max_question_retries=self.config.max_question_retries,
            max_steps=self.config.max_steps_per_event,
            max_buttons=self.config.max_buttons,
            global_button_scan=self.config.global_button_scan,
        )

    async def is_duplicate(self, event: InboundEvent) -> bool:
        if not event.message_id:
            return False
        key = f"processed:{event.project_id}:{event.message_id}"
        return not await self.store.set_if_absent(key, "1", self.config.dedupe_ttl_seconds)

    async def load_project(self, project_id: str, project: Optional[Project] = None) -> Project:
        """Return the project with its flow graph, or raise MissingFlowGraphError."""
        project = project or await self.projects.get_project(project_id)
        if project is None:
            raise MissingFlowGraphError(f"No project found for {project_id}")
        if project.flow is None:
            raise MissingFlowGraphError(f"Project {project_id} has no flow graph")
        return project

    async def handle_event(self, event: InboundEvent, project: Optional[Project] = None) -> Outcome:
        bound = log.bind(project_id=event.project_id, sender=event.sender_identity)
        try:
            project = await self.load_project(event.project_id, project)
        except MissingFlowGraphError as e:
            bound.error("missing_flow_graph", error=str(e))
            flow_events_counter.labels(outcome=Outcome.IGNORED.value).inc()
            return Outcome.IGNORED

        try:
            gateway = self.gateway_factory(project)
        except RuntimeError as e:
            bound.error("gateway_unavailable", error=str(e))
            flow_events_counter.labels(outcome=Outcome.IGNORED.value).inc()
            return Outcome.IGNORED

        graph = project.flow
        if event.is_button_reply and event.button_reply_id:
            button = graph.find_button(event.button_reply_id)
            if button is not None and button.action is not None:
                bound.info("smart_button_pressed", button_id=event.button_reply_id)
                await ActionResolver(gateway, self.api_client).handle_button_action(
                    button, event.sender_identity, event.project_id
                )
                flow_events_counter.labels(outcome=Outcome.ACTION.value).inc()
                return Outcome.ACTION

        engine = self._engine(gateway)
        if self.config.session_lock_enabled:
            session = ConversationSession(self.store, event.project_id, event.sender_identity, self.config.session_ttl_seconds)
            async with session.lock(self.config.session_lock_ttl_seconds, self.config.session_lock_wait_seconds):
                outcome = await engine.process_message(graph, event.project_id, event.sender_identity, event.input_text)
        else:
            outcome = await engine.process_message(graph, event.project_id, event.sender_identity, event.input_text)

        flow_events_counter.labels(outcome=outcome.value).inc()
        bound.info("event_processed", outcome=outcome.value)
        return outcome

    async def process_webhook_message(self, phone_number_id: str, message: Dict[str, Any]) -> Outcome:
        """Handle one raw WhatsApp message delivered to `phone_number_id`."""
        project = await self.projects.get_project_by_phone_number_id(phone_number_id)
        if project is None or not project.is_active:
            log.warning("no_active_project", phone_number_id=phone_number_id)
            return Outcome.IGNORED

        event = event_from_message(message, project.id)
        if event is None:
            log.info("unsupported_message_ignored", message_type=message.get("type"))
            return Outcome.IGNORED
        if await self.is_duplicate(event):
            log.info("duplicate_message_ignored", message_id=event.message_id)
            return Outcome.IGNORED

        try:
            return await self.handle_event(event, project)
        except Exception:
            log.exception("event_processing_failed", project_id=project.id, sender=event.sender_identity)
            flow_events_counter.labels(outcome="error").inc()
            return Outcome.ABORTED


conversation_service = ConversationService(cache_service, project_repository)
