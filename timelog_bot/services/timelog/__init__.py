from .command_handler import SlackCommandKind, handle_command
from .event_handler import SlackEventKind, handle_event
from .interaction_handler import SlackInteractionKind, handle_interaction
from .runtime_deps import TimelogRuntimeDeps

__all__ = [
    "handle_command",
    "handle_event",
    "handle_interaction",
    "SlackCommandKind",
    "SlackEventKind",
    "SlackInteractionKind",
    "TimelogRuntimeDeps",
]
