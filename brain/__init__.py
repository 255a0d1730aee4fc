"""
Brain: File-backed agent runtime for a local-first knowledge vault.

Agents live as plain Markdown and JSON files inside the vault. Each one has an
identity document, a durable memory document, a generated context digest,
conversational sessions with append-only transcripts, and a mailbox for
messages from other agents.

Layers (bottom to top):
    1. Agent definitions (identity documents, templates)
    2. Session & transcript store
    3. Agent memory
    4. Context generator
    5. Prompt assembler
    6. Chat orchestrator
    7. Inter-agent messaging
    8. Retry / self-correction harness
"""

__version__ = "0.1.0"
