# /flowbot/workflows/errors.py

"""
Failure taxonomy for flow execution.

Configuration errors describe a broken flow graph and are logged loudly.
External API errors are recovered locally with a fallback message.
Invalid answers and invalid button replies are ordinary outcomes handled by
bounded retry policies, so they have no exception type.
"""


class FlowError(Exception):
    """Base class for flow execution failures."""


class MissingFlowGraphError(FlowError):
    """The project has no flow graph (or no project exists for the event)."""


class FlowConfigurationError(FlowError):
    """The flow graph cannot be executed as authored."""


class StartNodeError(FlowConfigurationError):
    """The graph defines zero or several start nodes."""


class StepBudgetExceededError(FlowConfigurationError):
    """Too many nodes auto-advanced for a single inbound event; the graph likely loops."""


class NodeNotFoundError(FlowError):
    """A stored position or edge points at a node that no longer exists."""


class UnsupportedNodeTypeError(FlowError):
    """The node's type has no handler."""


class ExternalAPIError(FlowError):
    """An outbound HTTP call failed or returned an unusable response."""


class MissingTemplateVariableError(ExternalAPIError):
    """A `{{name}}` placeholder has no bound value."""

    def __init__(self, name: str):
        super().__init__(f"No value bound for template variable '{name}'")
        self.name = name
