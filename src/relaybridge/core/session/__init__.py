"""Session lifecycle: models, protocol helpers, state machine, and registry."""
