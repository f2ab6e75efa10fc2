"""Client side of NoteSync.

- gateway: async HTTP client for the session gateway and sync relay
- session_store: persisted session (tokens) and stable device id
- cycle: one pull-then-push sync cycle over a local change store
- orchestrator: sync state machine, periodic timer and status reporting
- bridge: envelope-normalized operations and events for a UI process
"""
