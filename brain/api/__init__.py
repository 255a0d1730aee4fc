"""Language-model handlers."""
