"""
OpenClaw - Engine Package

Shared infrastructure for the assembler and the Run Engine:

  - engine.exceptions:    error taxonomy (invocation / infrastructure / lifecycle)
  - engine.logging:       JSON-lines structured logging
  - engine.config_loader: layered YAML + environment configuration
  - engine.events:        lifecycle events and sinks
  - engine.invocation:    AgentInvoker interface and implementations
  - engine.state:         RunState accessor and reference resolution
  - engine.conditions:    step / tool-grant condition expressions
  - engine.retry:         backoff calculation

Import from the submodules directly.
"""
