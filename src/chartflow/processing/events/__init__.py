from chartflow.processing.events.event_bus import EventBus, event_bus
from chartflow.processing.events.phase_events import JobPhase, PhaseEvent

__all__ = ["EventBus", "JobPhase", "PhaseEvent", "event_bus"]
