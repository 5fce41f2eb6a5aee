"""
Core Protocol Interfaces

Ports for every collaborator the pipeline talks to: the record store, the
job queue, the notifier, the LLM client, the decision engine, the event
bus and action handlers. Concrete implementations live in
``opsagent.infrastructure`` and are injected at wiring time.
"""
