"""Background workers for chain event processing."""

from hakumint.workers.event_watcher import run_event_watcher

__all__ = ["run_event_watcher"]
