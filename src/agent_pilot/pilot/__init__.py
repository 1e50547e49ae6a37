"""Conversation orchestrator for streaming coding-agent CLIs.

The package drives an external coding agent (``agent -p --output-format=stream-json``)
through multi-turn conversations.  After every agent turn an LLM decision service
judges progress, keeps the task checklist current and writes the next
instruction.  Key pieces:

- ``backend`` spawns the agent process, parses its newline-delimited JSON event
  stream and reports completion exactly once per call.
- ``registry`` holds the process-wide active-call and abort registries.  They are
  plain objects injected into every component, so tests get fresh instances.
- ``conversation`` is the turn-based driver; ``dispatch`` is the tool-use loop
  that turns a free-form request into background conversations.
"""
