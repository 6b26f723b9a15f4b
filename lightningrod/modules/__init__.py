"""Capability modules exposed to the orchestrator over WAMP."""
