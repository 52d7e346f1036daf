"""Exception hierarchy shared by the turn pipeline and its collaborators.

Each class also derives from the closest built-in exception so callers that
already handle ``ValueError``/``LookupError``/``ConnectionError`` keep working.
"""


class GoalDeskError(Exception):
    """Base class for all GoalDesk errors."""


class ValidationError(GoalDeskError, ValueError):
    """Bad caller input: empty session id/message, unsupported goal type, ..."""


class SchemaViolationError(GoalDeskError, ValueError):
    """A planner or specialist produced structurally invalid output."""


class NotFoundError(GoalDeskError, LookupError):
    """A referenced entity is absent."""


class SessionNotFoundError(NotFoundError):
    """No persisted state exists for the session id."""


class GoalNotFoundError(NotFoundError):
    """A goal id does not resolve in the session's goal map."""


class StateError(GoalDeskError, RuntimeError):
    """Session state is inconsistent or a transition is not allowed."""


class StackCorruptError(StateError):
    """The goal stack references a goal that does not exist."""


class InvalidTransitionError(StateError):
    """A goal status transition is not allowed."""


class NoActiveGoalError(StateError):
    """The pipeline reached a stage that needs a focused goal and has none."""


class ModelInvokeError(GoalDeskError, ConnectionError):
    """The language model call itself failed."""


class StoreError(GoalDeskError, ConnectionError):
    """The session or memory store failed."""
