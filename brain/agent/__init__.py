"""Agent identity: definitions, namespaces and scaffolding."""
